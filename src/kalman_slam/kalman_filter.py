"""
Generic EKF / IKF engine for vehicle-only state estimation and for SLAM.

The engine owns the joint state (``FilterState``) and drives an injected
``KFCapability`` through one complete filter cycle per call to
``run_one_kalman_iteration()``:

    action -> prediction -> observation prediction / data association
    -> update -> normalization -> new landmarks -> post-iteration hook
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .capability import NEW_LANDMARK, KFCapability
from .errors import (KalmanFilterError, KFConfigurationError, KFShapeError,
                     UnsupportedMethodError, check_shape)
from .jacobians import estimate_jacobian, verify_jacobian
from .landmarks import add_new_landmarks
from .options import KFMethod, KFOptions
from .profiler import TimeLogger
from .state import FilterState
from .update import strategy_for


class ProblemType(Enum):
    """Whether the state holds map landmarks besides the vehicle."""
    STATE_ONLY = 0
    SLAM = 1


@dataclass
class CycleInfo:
    """Intermediate results of the last filter cycle, kept for inspection."""

    all_predictions: List[np.ndarray] = field(default_factory=list)
    predict_landmark_indices: List[int] = field(default_factory=list)
    observation_jacobians_x: List[np.ndarray] = field(default_factory=list)
    observation_jacobians_y: List[np.ndarray] = field(default_factory=list)
    innovation_covariance: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    observations: List[np.ndarray] = field(default_factory=list)
    data_association: List[int] = field(default_factory=list)
    retries: int = 0
    prediction_skipped: bool = False
    updated: bool = False
    new_landmarks: List[Tuple[int, int]] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)


class KalmanFilter:
    """
    Generic Kalman Filter engine for various estimation problems.

    Parameters:
    -----------
    capability : KFCapability
        Application models (motion, observation, data association)
    vehicle_size : int
        Dimension of the vehicle state vector
    observation_size : int
        Dimension of each observation vector
    feature_size : int
        Dimension of map features (0 for non-SLAM problems)
    action_size : int
        Dimension of action/control vectors (0 if not checked)
    options : KFOptions, optional
        Algorithm configuration
    profiler : TimeLogger, optional
        Timing collaborator; a private TimeLogger is used if omitted
    x0, P0 : np.ndarray, optional
        Initial vehicle mean and covariance
    """

    def __init__(self, capability: KFCapability, vehicle_size: int, observation_size: int,
                 feature_size: int = 0, action_size: int = 0,
                 options: Optional[KFOptions] = None, profiler: Optional[TimeLogger] = None,
                 x0: Optional[np.ndarray] = None, P0: Optional[np.ndarray] = None):
        if not isinstance(capability, KFCapability):
            raise TypeError("capability must implement KFCapability")
        if observation_size <= 0:
            raise ValueError("observation_size must be positive")

        self.capability = capability
        self.vehicle_size = vehicle_size
        self.observation_size = observation_size
        self.feature_size = feature_size
        self.action_size = action_size
        self.problem_type = ProblemType.SLAM if feature_size > 0 else ProblemType.STATE_ONLY

        self.state = FilterState(vehicle_size, feature_size, x0, P0)
        self.kf_options = options if options is not None else KFOptions()
        self.time_logger = profiler if profiler is not None else TimeLogger()
        self.logger = logging.getLogger(__name__).getChild(type(capability).__name__)

        self.last_cycle = CycleInfo()
        self._in_cycle = False

    # State accessors

    @property
    def is_slam(self) -> bool:
        return self.problem_type is ProblemType.SLAM

    @property
    def state_vector(self) -> np.ndarray:
        return self.state.x

    @property
    def covariance_matrix(self) -> np.ndarray:
        return self.state.P

    @property
    def state_vector_length(self) -> int:
        return self.state.state_length

    @property
    def number_of_landmarks(self) -> int:
        return self.state.number_of_landmarks

    @property
    def is_map_empty(self) -> bool:
        return self.state.is_map_empty

    def get_landmark_mean(self, idx: int) -> np.ndarray:
        return self.state.get_landmark_mean(idx)

    def get_landmark_covariance(self, idx: int) -> np.ndarray:
        return self.state.get_landmark_covariance(idx)

    # Main entry point

    def run_one_kalman_iteration(self) -> CycleInfo:
        """
        Execute one complete Kalman filter iteration.

        Returns:
        --------
        CycleInfo
            Intermediate results of this cycle (also kept in ``last_cycle``)
        """
        if self._in_cycle:
            raise KalmanFilterError("run_one_kalman_iteration() is not re-entrant")

        options = self.kf_options
        options.validate()
        self.logger.setLevel(options.verbosity_level)
        self.time_logger.enable(options.enable_profiler)

        info = CycleInfo()
        self.last_cycle = info
        self._in_cycle = True
        self.time_logger.enter("KF:complete_step")

        try:
            self.state.check_invariants()
            R = self._get_observation_noise()
            self._check_method(R)

            self._prediction_step(info)
            self._observation_step(info, R)

            self.time_logger.enter("KF:update")
            info.updated = strategy_for(options.method).update(self, info, R)
            info.timings["update"] = self.time_logger.leave("KF:update")

            self.capability.on_normalize_state_vector(self.state)

            if self.is_slam and info.data_association:
                self.time_logger.enter("KF:new_landmarks")
                info.new_landmarks = add_new_landmarks(
                    self.state, self.capability, info.observations,
                    info.data_association, R, self.time_logger)
                info.timings["new_landmarks"] = self.time_logger.leave("KF:new_landmarks")

            self.capability.on_post_iteration(self.state)
            self.state.check_invariants()
        finally:
            self._in_cycle = False
            info.timings["total"] = self.time_logger.leave("KF:complete_step")

        t = {k: 1e3 * v for k, v in info.timings.items()}
        self.logger.debug(
            f"[KF] {self.number_of_landmarks} LMs | Pr: {t.get('prediction', 0.0):.2f}ms | "
            f"Pr.Obs: {t.get('predict_observations', 0.0):.2f}ms | "
            f"Obs.DA: {t.get('observations_and_da', 0.0):.2f}ms | Upd: {t.get('update', 0.0):.2f}ms")
        return info

    def _get_observation_noise(self) -> np.ndarray:
        O = self.observation_size
        return check_shape("observation noise R", self.capability.on_get_observation_noise(), (O, O))

    def _check_method(self, R: np.ndarray) -> None:
        """Reject unusable method selections before the state is touched."""
        method = self.kf_options.method
        if method is KFMethod.IKF:
            raise UnsupportedMethodError("IKF scalar by scalar not implemented yet.")
        if method is KFMethod.EKF_ALA_DAVISON and np.any(R[~np.eye(R.shape[0], dtype=bool)] != 0):
            raise KFConfigurationError(
                "This KF algorithm assumes independent noise components in the "
                "observation (matrix R). Select another KF algorithm.")

    # Prediction

    def _prediction_step(self, info: CycleInfo) -> None:
        """Advance the vehicle block and propagate the covariance."""
        self.time_logger.enter("KF:prediction")
        V = self.vehicle_size
        state = self.state

        action = self.capability.on_get_action()
        if self.action_size:
            action = check_shape("action", action, (self.action_size,))

        xv_old = state.vehicle_mean()
        xv_new, skip_prediction = self.capability.on_transition_model(action, xv_old.copy(), state)
        info.prediction_skipped = bool(skip_prediction)

        if not skip_prediction:
            xv_new = check_shape("predicted vehicle state", xv_new, (V,))
            F = self._transition_jacobian(action, xv_old)
            Q = check_shape("transition noise Q",
                            self.capability.on_transition_noise(state), (V, V))

            P = state.P
            Pvv = F @ P[:V, :V] @ F.T + Q
            P[:V, :V] = 0.5 * (Pvv + Pvv.T)

            if not state.is_map_empty:
                cross = F @ P[:V, V:]
                P[:V, V:] = cross
                P[V:, :V] = cross.T

            state.x[:V] = xv_new
            self.capability.on_normalize_state_vector(state)

        info.timings["prediction"] = self.time_logger.leave("KF:prediction")

    def _transition_function(self, xv: np.ndarray, action: np.ndarray) -> np.ndarray:
        xv_next, _ = self.capability.on_transition_model(action, xv.copy(), self.state)
        return np.asarray(xv_next, dtype=float)

    def _transition_jacobian(self, action: np.ndarray, xv: np.ndarray) -> np.ndarray:
        """dfv/dxv: analytic when available, else numeric, optionally cross-checked."""
        options = self.kf_options
        V = self.vehicle_size

        F = None
        if options.use_analytic_transition_jacobian:
            F = self.capability.on_transition_jacobian(action, self.state)
            if F is not None:
                F = check_shape("transition Jacobian", F, (V, V))

        if F is None or options.debug_verify_analytic_jacobians:
            increments = self.capability.on_transition_jacobian_numeric_increments(V)
            F_numeric = estimate_jacobian(self._transition_function, xv, increments, args=(action,),
                                          subtract=self.capability.on_subtract_vehicle_states)

            if options.debug_verify_analytic_jacobians:
                analytic = F if F is not None else self.capability.on_transition_jacobian(action, self.state)
                if analytic is None:
                    self.logger.debug("No analytic transition Jacobian to verify")
                else:
                    verify_jacobian("transition dfv_dxv", F_numeric,
                                    check_shape("transition Jacobian", analytic, (V, V)),
                                    options.debug_verify_analytic_jacobians_threshold)
            if F is None:
                F = F_numeric

        return F

    # Observation prediction, innovation covariance and data association

    def _observation_step(self, info: CycleInfo, R: np.ndarray) -> None:
        state = self.state
        n_map = state.number_of_landmarks

        self.time_logger.enter("KF:predict_observations")
        if self.is_slam:
            info.all_predictions = self.predict_observations(state, list(range(n_map)))
        else:
            # One prediction for the whole system state
            info.all_predictions = self.predict_observations(state, [0])
        info.timings["predict_observations"] = self.time_logger.leave("KF:predict_observations")

        if self.is_slam:
            candidates = self.capability.on_pre_computing_predictions(state, info.all_predictions)
            predict_idx = self._validate_landmark_indices(candidates, n_map)
        else:
            predict_idx = [0]

        self.time_logger.enter("KF:observations_and_da")
        Hxs: List[np.ndarray] = []
        Hys: List[np.ndarray] = []
        S = np.zeros((0, 0))
        first_new = 0
        # Every retry adds at least one landmark that was not predicted yet
        max_retries = n_map
        retries = 0

        while True:
            for lm_idx in predict_idx[first_new:]:
                Hx, Hy = self.observation_jacobians(lm_idx)
                Hxs.append(Hx)
                Hys.append(Hy)

            S = self._innovation_covariance(predict_idx, Hxs, Hys, R, S, first_new)

            observations, data_association = self.capability.on_get_observations_and_data_association(
                info.all_predictions, S, list(predict_idx), R)
            observations = [check_shape(f"observation #{i}", z, (self.observation_size,))
                            for i, z in enumerate(observations)]
            data_association = self._validate_data_association(observations, data_association, n_map)

            missing = []
            if self.is_slam:
                predicted = set(predict_idx)
                for lm_idx in data_association:
                    if lm_idx != NEW_LANDMARK and lm_idx not in predicted and lm_idx not in missing:
                        missing.append(lm_idx)

            if not missing:
                break
            if retries >= max_retries:
                raise KalmanFilterError(
                    f"Data association kept referencing unpredicted landmarks after {retries} retries")

            retries += 1
            self.logger.warning(
                f"[KF] *Performance Warning*: {len(missing)} LMs were not correctly predicted by "
                "on_pre_computing_predictions().")
            first_new = len(predict_idx)
            predict_idx.extend(missing)

        info.timings["observations_and_da"] = self.time_logger.leave("KF:observations_and_da")

        info.predict_landmark_indices = predict_idx
        info.observation_jacobians_x = Hxs
        info.observation_jacobians_y = Hys
        info.innovation_covariance = S
        info.observations = observations
        info.data_association = data_association
        info.retries = retries

    def _validate_landmark_indices(self, indices: Sequence[int], n_map: int) -> List[int]:
        result = []
        for idx in indices:
            idx = int(idx)
            if not 0 <= idx < n_map:
                raise IndexError(
                    f"on_pre_computing_predictions() returned landmark {idx}, map has {n_map}")
            if idx not in result:
                result.append(idx)
        return result

    def _validate_data_association(self, observations: List[np.ndarray],
                                   data_association: Sequence[int], n_map: int) -> List[int]:
        data_association = [int(a) for a in data_association]
        if data_association and len(data_association) != len(observations):
            raise KFShapeError(
                f"Got {len(data_association)} data associations for {len(observations)} observations")
        if self.is_slam and len(data_association) != len(observations):
            raise KFShapeError("SLAM problems need one data association per observation")

        upper = n_map if self.is_slam else 1
        for a in data_association:
            if a != NEW_LANDMARK and not 0 <= a < upper:
                raise IndexError(f"Data association {a} out of range [0, {upper})")
        return data_association

    def predict_observations(self, state: FilterState,
                             landmark_indices: Sequence[int]) -> List[np.ndarray]:
        """Call the observation model and check the size of its output."""
        predictions = self.capability.on_observation_model(state, list(landmark_indices))
        if len(predictions) != len(landmark_indices):
            raise KFShapeError(
                f"on_observation_model() returned {len(predictions)} predictions "
                f"for {len(landmark_indices)} landmarks")
        return [check_shape("predicted observation", z, (self.observation_size,))
                for z in predictions]

    def observation_jacobians(self, lm_idx: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        dh/dxv and dh/dy for one landmark at the current state.

        Analytic when enabled and provided, numeric otherwise; cross-checked
        when verification is enabled.
        """
        options = self.kf_options

        H = None
        if options.use_analytic_observation_jacobian:
            H = self.capability.on_observation_jacobians(self.state, lm_idx)
            if H is not None:
                H = self._check_observation_jacobians(H)

        if H is None or options.debug_verify_analytic_jacobians:
            Hx_numeric, Hy_numeric = self.estimate_observation_jacobians_numeric(lm_idx)

            if options.debug_verify_analytic_jacobians:
                analytic = H if H is not None else self.capability.on_observation_jacobians(self.state, lm_idx)
                if analytic is None:
                    self.logger.debug("No analytic observation Jacobians to verify")
                else:
                    Hx_a, Hy_a = self._check_observation_jacobians(analytic)
                    threshold = options.debug_verify_analytic_jacobians_threshold
                    verify_jacobian("observation Hx", Hx_numeric, Hx_a, threshold)
                    verify_jacobian("observation Hy", Hy_numeric, Hy_a, threshold)
            if H is None:
                H = (Hx_numeric, Hy_numeric)

        return H

    def _check_observation_jacobians(self, H) -> Tuple[np.ndarray, np.ndarray]:
        O, V, F = self.observation_size, self.vehicle_size, self.feature_size
        Hx, Hy = H
        if Hy is None and not self.is_slam:
            Hy = np.zeros((O, 0))
        return check_shape("observation Jacobian Hx", Hx, (O, V)), check_shape("observation Jacobian Hy", Hy, (O, F))

    def estimate_observation_jacobians_numeric(self, lm_idx: int) -> Tuple[np.ndarray, np.ndarray]:
        """Estimate observation Jacobians numerically on a scratch copy of the state."""
        V, F = self.vehicle_size, self.feature_size
        veh_inc, feat_inc = self.capability.on_observation_jacobians_numeric_increments(V, F)
        scratch = self.state.scratch()
        subtract = self.capability.on_subtract_observation_vectors

        def predict_with_vehicle(xv):
            scratch.x[:V] = xv
            return self.predict_observations(scratch, [lm_idx])[0]

        Hx = estimate_jacobian(predict_with_vehicle, self.state.x[:V], veh_inc, subtract=subtract)
        scratch.x[:] = self.state.x

        if not self.is_slam:
            return Hx, np.zeros((self.observation_size, 0))

        start = self.state.landmark_offset(lm_idx)

        def predict_with_feature(y):
            scratch.x[start:start + F] = y
            return self.predict_observations(scratch, [lm_idx])[0]

        Hy = estimate_jacobian(predict_with_feature, self.state.x[start:start + F], feat_inc,
                               subtract=subtract)
        return Hx, Hy

    def _innovation_covariance(self, predict_idx: List[int], Hxs: List[np.ndarray],
                               Hys: List[np.ndarray], R: np.ndarray,
                               S_prev: np.ndarray, first_new: int) -> np.ndarray:
        """
        Build S = H P H^T + R exploiting the sparsity of H.

        Blocks between landmarks already in ``S_prev`` (the first
        ``first_new`` ones) are reused as they are.
        """
        O, V, F = self.observation_size, self.vehicle_size, self.feature_size
        P = self.state.P

        if not self.is_slam:
            S = Hxs[0] @ P @ Hxs[0].T + R
            return 0.5 * (S + S.T)

        n_pred = len(predict_idx)
        S = np.zeros((n_pred * O, n_pred * O))
        reused = first_new * O
        S[:reused, :reused] = S_prev[:reused, :reused]

        Px = P[:V, :V]
        for i in range(n_pred):
            off_i = self.state.landmark_offset(predict_idx[i])
            Pxyi_t = P[off_i:off_i + F, :V]

            # Only j >= i, S is symmetric
            for j in range(max(i, first_new), n_pred):
                off_j = self.state.landmark_offset(predict_idx[j])
                Pxyj = P[:V, off_j:off_j + F]
                Pyiyj = P[off_i:off_i + F, off_j:off_j + F]

                Sij = (Hxs[i] @ Px @ Hxs[j].T
                       + Hys[i] @ Pxyi_t @ Hxs[j].T
                       + Hxs[i] @ Pxyj @ Hys[j].T
                       + Hys[i] @ Pyiyj @ Hys[j].T)

                if i == j:
                    Sij = 0.5 * (Sij + Sij.T) + R
                    S[i * O:(i + 1) * O, i * O:(i + 1) * O] = Sij
                else:
                    S[i * O:(i + 1) * O, j * O:(j + 1) * O] = Sij
                    S[j * O:(j + 1) * O, i * O:(i + 1) * O] = Sij.T

        return S
