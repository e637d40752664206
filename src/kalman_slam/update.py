"""
Kalman update algorithms.

All strategies share the same inputs, taken from the engine and the cycle
information built by the observation stage, and mutate the engine's
``FilterState`` in place. They return True if the state was updated.
"""

import logging
from typing import List, Tuple

import numpy as np
from scipy.linalg import cho_factor, cho_solve

from .capability import NEW_LANDMARK
from .errors import CovarianceError, KFShapeError, UnsupportedMethodError
from .options import KFMethod

logger = logging.getLogger(__name__)


def kalman_gain(P: np.ndarray, H: np.ndarray, S: np.ndarray) -> np.ndarray:
    """K = P H^T S^-1, using a Cholesky solve of the symmetric S."""
    PHt = P @ H.T
    try:
        factor = cho_factor(S, lower=True)
        return cho_solve(factor, PHt.T).T
    except np.linalg.LinAlgError:
        logger.warning("Innovation covariance is not positive definite, using pseudo-inverse")
        return PHt @ np.linalg.pinv(S)


def matched_observations(kf, info) -> List[Tuple[int, int]]:
    """(observation index, landmark index) pairs that update the filter."""
    observations = info.observations
    data_association = info.data_association
    if not observations:
        return []

    if not kf.is_slam:
        if len(observations) != 1:
            raise KFShapeError(
                f"Non-SLAM problems expect a single observation, got {len(observations)}")
        if data_association and data_association[0] == NEW_LANDMARK:
            return []
        return [(0, 0)]

    return [(i, lm) for i, lm in enumerate(data_association) if lm != NEW_LANDMARK]


class UpdateStrategy:
    """Base class of the update algorithms."""

    method = None

    def update(self, kf, info, R: np.ndarray) -> bool:
        raise NotImplementedError


class FullBatchUpdate(UpdateStrategy):
    """
    Full Kalman gain over all matched observations at once.

    With ``iterated=True`` this is the iterated EKF: each pass re-linearizes
    the observation model at the current estimate x_k and sets

        x_{k+1} = x_0 + K_k (y_k - H_k (x_0 - x_k))

    The covariance is updated once, after the last pass.
    """

    def __init__(self, iterated: bool = False):
        self.iterated = iterated
        self.method = KFMethod.IKF_FULL if iterated else KFMethod.EKF_NAIVE

    def update(self, kf, info, R: np.ndarray) -> bool:
        matched = matched_observations(kf, info)
        if not matched:
            return False

        state = kf.state
        O = kf.observation_size
        n_iterations = int(kf.kf_options.ikf_iterations) if self.iterated else 1
        position = {lm: k for k, lm in enumerate(info.predict_landmark_indices)}

        # The predicted S restricted (and re-ordered) to the matched landmarks
        S_idxs = np.concatenate([np.arange(position[lm] * O, (position[lm] + 1) * O)
                                 for _, lm in matched])
        S = info.innovation_covariance[np.ix_(S_idxs, S_idxs)]
        Hxs = [info.observation_jacobians_x[position[lm]] for _, lm in matched]
        Hys = [info.observation_jacobians_y[position[lm]] for _, lm in matched]
        predictions = [info.all_predictions[lm] for _, lm in matched]

        x0 = state.x.copy()
        P = state.P
        R_blocks = np.kron(np.eye(len(matched)), R)

        for iteration in range(n_iterations):
            if iteration > 0:
                # Re-linearize around the current iterate
                Hxs, Hys = zip(*(kf.observation_jacobians(lm) for _, lm in matched))
                predictions = kf.predict_observations(state, [lm for _, lm in matched])

            kf.time_logger.enter("KF:update:build_K")
            H = self._stack_jacobians(kf, matched, Hxs, Hys)
            if iteration > 0:
                S = H @ P @ H.T + R_blocks
                S = 0.5 * (S + S.T)
            ytilde = np.concatenate([
                kf.capability.on_subtract_observation_vectors(info.observations[obs_idx], prediction)
                for (obs_idx, _), prediction in zip(matched, predictions)])
            K = kalman_gain(P, H, S)
            kf.time_logger.leave("KF:update:build_K")

            state.x[:] = x0 + K @ (ytilde - H @ (x0 - state.x))

        kf.time_logger.enter("KF:update:update_P")
        I_KH = np.eye(state.state_length) - K @ H
        P_new = I_KH @ P
        state.P = 0.5 * (P_new + P_new.T)
        kf.time_logger.leave("KF:update:update_P")
        return True

    @staticmethod
    def _stack_jacobians(kf, matched, Hxs, Hys) -> np.ndarray:
        O, V, F = kf.observation_size, kf.vehicle_size, kf.feature_size
        H = np.zeros((len(matched) * O, kf.state.state_length))
        for k, ((_, lm), Hx, Hy) in enumerate(zip(matched, Hxs, Hys)):
            H[k * O:(k + 1) * O, :V] = Hx
            if kf.is_slam:
                start = kf.state.landmark_offset(lm)
                H[k * O:(k + 1) * O, start:start + F] = Hy
        return H


class SequentialScalarUpdate(UpdateStrategy):
    """
    EKF "a la Davison": one scalar observation component at a time.

    Only valid for observation noise with independent components (diagonal
    R), which the engine checks before the cycle starts.
    """

    method = KFMethod.EKF_ALA_DAVISON

    def update(self, kf, info, R: np.ndarray) -> bool:
        matched = matched_observations(kf, info)
        if not matched:
            return False

        state = kf.state
        O, V, F = kf.observation_size, kf.vehicle_size, kf.feature_size
        position = {lm: k for k, lm in enumerate(info.predict_landmark_indices)}
        R_diag = np.diag(R)

        for obs_idx, lm in matched:
            kf.time_logger.enter("KF:update:scalar_prepare")
            offset = state.landmark_offset(lm) if kf.is_slam else V
            Hx = info.observation_jacobians_x[position[lm]]
            Hy = info.observation_jacobians_y[position[lm]]

            prediction = kf.predict_observations(state, [lm])[0]
            ytilde = kf.capability.on_subtract_observation_vectors(info.observations[obs_idx], prediction)
            x_start = state.x.copy()
            kf.time_logger.leave("KF:update:scalar_prepare")

            for j in range(O):
                kf.time_logger.enter("KF:update:scalar_update")
                P = state.P
                hx = Hx[j]
                hy = Hy[j]

                # Innovation of component j, corrected for the components already applied
                dx = state.x - x_start
                y_j = ytilde[j] - (hx @ dx[:V] + hy @ dx[offset:offset + F])

                Pyx = P[offset:offset + F, :V]
                Pyy = P[offset:offset + F, offset:offset + F]
                S_j = (R_diag[j]
                       + hx @ P[:V, :V] @ hx
                       + 2.0 * (hy @ Pyx @ hx)
                       + hy @ Pyy @ hy)

                K = (P[:, :V] @ hx + P[:, offset:offset + F] @ hy) / S_j

                state.x += K * y_j

                upper = np.triu(P - S_j * np.outer(K, K))
                state.P = upper + np.triu(upper, 1).T

                if np.any(np.diag(state.P) < 0):
                    logger.error(f"Negative variance in the covariance matrix:\nP=\n{state.P}\nK=\n{K}")
                    raise CovarianceError(
                        "Covariance diagonal became negative in the sequential update",
                        state.P.copy(), K)
                kf.time_logger.leave("KF:update:scalar_update")

        return True


class ScalarIteratedUpdate(UpdateStrategy):
    """Scalar-by-scalar IKF. Declared for completeness, not implemented."""

    method = KFMethod.IKF

    def update(self, kf, info, R: np.ndarray) -> bool:
        raise UnsupportedMethodError("IKF scalar by scalar not implemented yet.")


_STRATEGIES = {
    KFMethod.EKF_NAIVE: FullBatchUpdate(iterated=False),
    KFMethod.IKF_FULL: FullBatchUpdate(iterated=True),
    KFMethod.EKF_ALA_DAVISON: SequentialScalarUpdate(),
    KFMethod.IKF: ScalarIteratedUpdate(),
}


def strategy_for(method: KFMethod) -> UpdateStrategy:
    """Return the update algorithm selected by ``method``."""
    return _STRATEGIES[KFMethod.parse(method)]
