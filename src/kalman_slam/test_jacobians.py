#!/usr/bin/env python3
"""
Tests for numeric Jacobian estimation and analytic Jacobian verification,
including the analytic Jacobians of the reference range-bearing model.
"""

import math
import unittest

import numpy as np

from kalman_slam import FilterState, JacobianMismatchError, KFShapeError
from kalman_slam.jacobians import estimate_jacobian, jacobian_discrepancy, verify_jacobian
from kalman_slam.testing import (ActionCollection, RangeBearingSLAM2D, SensoryFrame,
                                 compose_poses_2d, wrap_to_pi)


class TestEstimateJacobian(unittest.TestCase):
    """Finite-difference Jacobian estimator."""

    def test_linear_function_is_exact(self):
        A = np.array([[1.0, -2.0, 0.5], [3.0, 0.0, 4.0]])
        J = estimate_jacobian(lambda x: A @ x, np.array([0.3, -1.0, 2.0]), np.full(3, 1e-4))
        self.assertEqual(J.shape, (2, 3))
        self.assertTrue(np.allclose(J, A, atol=1e-8))

    def test_nonlinear_function(self):
        def f(x):
            return np.array([math.sin(x[0]) * x[1], x[0] ** 2, math.exp(x[1])])

        x0 = np.array([0.7, -0.4])
        expected = np.array([
            [math.cos(0.7) * -0.4, math.sin(0.7)],
            [2 * 0.7, 0.0],
            [0.0, math.exp(-0.4)],
        ])
        J = estimate_jacobian(f, x0, np.full(2, 1e-6))
        self.assertTrue(np.allclose(J, expected, atol=1e-6))

    def test_base_point_not_mutated(self):
        x0 = np.array([1.0, 2.0, 3.0])
        original = x0.copy()
        estimate_jacobian(lambda x: x * x, x0, np.full(3, 1e-3))
        self.assertTrue(np.array_equal(x0, original))

    def test_extra_args_are_forwarded(self):
        J = estimate_jacobian(lambda x, k: k * x, np.zeros(2), np.full(2, 1e-3), args=(3.0,))
        self.assertTrue(np.allclose(J, 3.0 * np.eye(2)))

    def test_wrapping_subtraction(self):
        """Outputs that wrap around at +-pi need the topology-aware difference."""
        x0 = np.array([math.pi - 1e-7])
        f = lambda x: np.array([wrap_to_pi(x[0])])

        naive = estimate_jacobian(f, x0, np.array([1e-6]))
        self.assertGreater(abs(naive[0, 0]), 1e3)

        J = estimate_jacobian(f, x0, np.array([1e-6]), subtract=lambda a, b: wrap_to_pi(a - b))
        self.assertAlmostEqual(J[0, 0], 1.0, places=6)

    def test_bad_increments(self):
        with self.assertRaises(KFShapeError):
            estimate_jacobian(lambda x: x, np.zeros(3), np.full(2, 1e-6))
        with self.assertRaises(ValueError):
            estimate_jacobian(lambda x: x, np.zeros(2), np.array([1e-6, 0.0]))


class TestVerifyJacobian(unittest.TestCase):
    """Cross-check of analytic against numeric Jacobians."""

    def test_discrepancy_is_sum_of_absolute_differences(self):
        a = np.array([[1.0, 2.0], [3.0, 4.0]])
        b = np.array([[1.5, 2.0], [2.0, 4.25]])
        self.assertAlmostEqual(jacobian_discrepancy(a, b), 1.75)

    def test_within_threshold_passes(self):
        J = np.eye(3)
        verify_jacobian("test", J, J + 1e-4, threshold=1e-2)

    def test_mismatch_raises_with_both_matrices(self):
        numeric = np.eye(2)
        analytic = 2 * np.eye(2)
        with self.assertLogs("kalman_slam.jacobians", level="ERROR"):
            with self.assertRaises(JacobianMismatchError) as ctx:
                verify_jacobian("transition", numeric, analytic, threshold=1e-2)
        err = ctx.exception
        self.assertTrue(np.array_equal(err.numeric, numeric))
        self.assertTrue(np.array_equal(err.analytic, analytic))
        self.assertAlmostEqual(err.discrepancy, 2.0)
        self.assertIn("transition", str(err))

    def test_shape_mismatch(self):
        with self.assertRaises(KFShapeError):
            verify_jacobian("x", np.zeros((2, 2)), np.zeros((2, 3)), 1e-2)


class TestRangeBearingModelJacobians(unittest.TestCase):
    """The analytic Jacobians of the range-bearing model agree with numeric ones."""

    def setUp(self):
        self.model = RangeBearingSLAM2D()
        self.model.SF = SensoryFrame(observations=[], sensor_pose=np.array([0.2, 0.1, 0.05]))
        self.state = FilterState(3, 2, x0=np.array([1.0, 2.0, 0.3]))
        self.state.append_landmark(np.array([5.0, -1.0]), np.zeros((2, 3)), np.eye(2))
        self.state.append_landmark(np.array([-3.0, 4.0]), np.zeros((2, 5)), np.eye(2))

    def _predict(self, state, idx):
        return self.model.on_observation_model(state, [idx])[0]

    def test_observation_jacobians(self):
        for idx in range(2):
            Hx, Hy = self.model.on_observation_jacobians(self.state, idx)
            scratch = self.state.copy()

            def with_vehicle(xv):
                scratch.x[:3] = xv
                return self._predict(scratch, idx)

            Hx_num = estimate_jacobian(with_vehicle, self.state.x[:3], np.full(3, 1e-6),
                                       subtract=self.model.on_subtract_observation_vectors)
            scratch.x[:] = self.state.x
            start = self.state.landmark_offset(idx)

            def with_feature(y):
                scratch.x[start:start + 2] = y
                return self._predict(scratch, idx)

            Hy_num = estimate_jacobian(with_feature, self.state.x[start:start + 2], np.full(2, 1e-6),
                                       subtract=self.model.on_subtract_observation_vectors)

            self.assertTrue(np.allclose(Hx, Hx_num, atol=1e-6), f"Hx mismatch for landmark {idx}")
            self.assertTrue(np.allclose(Hy, Hy_num, atol=1e-6), f"Hy mismatch for landmark {idx}")

    def test_transition_jacobian(self):
        action = np.array([0.4, -0.1, 0.05])
        self.model.action = ActionCollection(*action)
        F = self.model.on_transition_jacobian(action, self.state)
        F_num = estimate_jacobian(lambda xv: compose_poses_2d(xv, action),
                                  self.state.x[:3], np.full(3, 1e-6))
        self.assertTrue(np.allclose(F, F_num, atol=1e-6))

    def test_inverse_observation_jacobians(self):
        z = np.array([4.0, 0.6])
        inv = self.model.on_inverse_observation_model(self.state, z)

        # The landmark re-observed from the same pose gives back the observation
        self.state.append_landmark(inv.landmark_mean, np.zeros((2, 7)), np.eye(2))
        self.assertTrue(np.allclose(self._predict(self.state, 2), z, atol=1e-9))

        scratch = self.state.copy()

        def with_vehicle(xv):
            scratch.x[:3] = xv
            return self.model.on_inverse_observation_model(scratch, z).landmark_mean

        dyn_dxv = estimate_jacobian(with_vehicle, self.state.x[:3], np.full(3, 1e-6))
        dyn_dhn = estimate_jacobian(
            lambda h: self.model.on_inverse_observation_model(self.state, h).landmark_mean,
            z, np.full(2, 1e-6))

        self.assertTrue(np.allclose(inv.dyn_dxv, dyn_dxv, atol=1e-6))
        self.assertTrue(np.allclose(inv.dyn_dhn, dyn_dhn, atol=1e-6))


if __name__ == "__main__":
    unittest.main()
