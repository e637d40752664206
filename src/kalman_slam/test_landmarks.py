#!/usr/bin/env python3
"""
Tests for the injection of new landmarks into the state.
"""

import unittest

import numpy as np

from kalman_slam import NEW_LANDMARK, FilterState, InverseObservation, KFShapeError, add_new_landmarks
from kalman_slam.testing import LinearPointSLAM


class SkewedInverse(LinearPointSLAM):
    """Inverse model with a non-trivial dyn_dxv and a pre-combined noise term."""

    DYN_DXV = np.array([[1.0, 2.0], [0.0, 1.0]])
    NOISE = np.diag([0.5, 0.25])

    def __init__(self, R):
        super().__init__(R)
        self.added = []

    def on_inverse_observation_model(self, state, observation):
        return InverseObservation(
            landmark_mean=self.DYN_DXV @ state.x[:2] + observation,
            dyn_dxv=self.DYN_DXV,
            dyn_dhn_R_dyn_dhnT=self.NOISE,
            use_dyn_dhn_jacobian=False)

    def on_new_landmark_added_to_map(self, obs_index, landmark_index):
        self.added.append((obs_index, landmark_index))


class TestAddNewLandmarks(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(3)
        self.R = np.diag([0.05, 0.08])
        self.model = LinearPointSLAM(self.R)
        self.state = FilterState(2, 2, x0=np.array([1.0, -1.0]))
        self.state.append_landmark(np.array([4.0, 4.0]), np.zeros((2, 2)), np.eye(2))
        A = rng.normal(size=(4, 4))
        self.state.P[:] = A @ A.T + np.eye(4)

    def test_existing_entries_are_bit_identical(self):
        x_before = self.state.x.copy()
        P_before = self.state.P.copy()
        self.model.observations = [("a", np.array([1.0, 2.0])), ("b", np.array([-3.0, 0.5]))]

        added = add_new_landmarks(self.state, self.model,
                                  [z for _, z in self.model.observations],
                                  [NEW_LANDMARK, NEW_LANDMARK], self.R)

        self.assertEqual(added, [(0, 1), (1, 2)])
        self.assertEqual(self.state.state_length, 8)
        self.assertTrue(np.array_equal(self.state.x[:4], x_before))
        self.assertTrue(np.array_equal(self.state.P[:4, :4], P_before))
        self.state.check_invariants()

    def test_new_blocks(self):
        P_before = self.state.P.copy()
        self.model.observations = [("a", np.array([1.0, 2.0]))]
        add_new_landmarks(self.state, self.model, [np.array([1.0, 2.0])], [NEW_LANDMARK], self.R)

        self.assertTrue(np.allclose(self.state.get_landmark_mean(1), [2.0, 1.0]))
        # dyn_dxv = I, dyn_dhn = I
        self.assertTrue(np.allclose(self.state.P[4:, :4], P_before[:2, :]))
        self.assertTrue(np.allclose(self.state.P[:4, 4:], P_before[:, :2]))
        self.assertTrue(np.allclose(self.state.P[4:, 4:], P_before[:2, :2] + self.R))
        self.assertEqual(self.state.max_asymmetry(), 0.0)

    def test_precombined_noise_term(self):
        model = SkewedInverse(self.R)
        P_before = self.state.P.copy()
        G = SkewedInverse.DYN_DXV

        added = add_new_landmarks(self.state, model, [np.array([0.0, 0.0])], [NEW_LANDMARK], self.R)

        self.assertEqual(added, [(0, 1)])
        self.assertEqual(model.added, [(0, 1)])
        self.assertTrue(np.allclose(self.state.P[4:, :2], G @ P_before[:2, :2]))
        self.assertTrue(np.allclose(self.state.P[4:, 2:4], G @ P_before[:2, 2:4]))
        self.assertTrue(np.allclose(self.state.P[4:, 4:],
                                    G @ P_before[:2, :2] @ G.T + SkewedInverse.NOISE))

    def test_matched_observations_are_skipped(self):
        self.model.observations = [("x", np.zeros(2)), ("y", np.ones(2)), ("z", np.ones(2))]
        added = add_new_landmarks(self.state, self.model,
                                  [z for _, z in self.model.observations],
                                  [0, NEW_LANDMARK, 0], self.R)
        self.assertEqual(added, [(1, 1)])
        self.assertEqual(self.model.IDs.index_of("y"), 1)
        self.assertNotIn("x", self.model.IDs)

    def test_non_slam_state_is_left_alone(self):
        state = FilterState(2)
        added = add_new_landmarks(state, self.model, [np.zeros(2)], [NEW_LANDMARK], self.R)
        self.assertEqual(added, [])
        self.assertEqual(state.state_length, 2)

    def test_bad_inverse_model_output(self):
        class BadInverse(LinearPointSLAM):
            def on_inverse_observation_model(self, state, observation):
                return InverseObservation(np.zeros(3), np.eye(2), np.eye(2))

        with self.assertRaises(KFShapeError):
            add_new_landmarks(self.state, BadInverse(self.R), [np.zeros(2)], [NEW_LANDMARK], self.R)
        self.assertEqual(self.state.number_of_landmarks, 1)


if __name__ == "__main__":
    unittest.main()
