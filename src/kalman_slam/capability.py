"""
Application hooks consumed by the Kalman filter engine.

An application implements ``KFCapability`` and passes an instance to
``KalmanFilter``. Hooks that receive a ``FilterState`` may be called either
with the live state or with a scratch copy (while the engine estimates
Jacobians numerically), so they must read the state they are given rather
than keeping their own reference to it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .state import FilterState

# Data association marker for observations of landmarks not yet in the map
NEW_LANDMARK = -1


@dataclass
class InverseObservation:
    """Output of the inverse observation model for a new landmark."""

    landmark_mean: np.ndarray
    dyn_dxv: np.ndarray                         # (feature_size, vehicle_size)
    dyn_dhn: Optional[np.ndarray] = None        # (feature_size, observation_size)
    dyn_dhn_R_dyn_dhnT: Optional[np.ndarray] = None  # (feature_size, feature_size)
    use_dyn_dhn_jacobian: bool = True


class KFCapability(ABC):
    """Motion, observation and data association models of an application."""

    @abstractmethod
    def on_get_action(self) -> np.ndarray:
        """
        Must return the action vector u_k.

        Returns:
        --------
        np.ndarray
            Action vector of size action_size
        """

    @abstractmethod
    def on_transition_model(self, action: np.ndarray, vehicle_state: np.ndarray,
                            state: FilterState) -> Tuple[np.ndarray, bool]:
        """
        Implements the transition model: xv_{k|k-1} = f(xv_{k-1|k-1}, u_k)

        Parameters:
        -----------
        action : np.ndarray
            Action vector returned by on_get_action()
        vehicle_state : np.ndarray
            Previous vehicle estimate (a copy, safe to modify)
        state : FilterState
            Full filter state, read-only for this hook

        Returns:
        --------
        Tuple[np.ndarray, bool]
            - Predicted vehicle state
            - skip_prediction: True to skip the prediction step
        """

    def on_transition_jacobian(self, action: np.ndarray,
                               state: FilterState) -> Optional[np.ndarray]:
        """
        Implements the transition Jacobian dfv/dxv at the pre-transition state.

        Returns None when no closed form is available, in which case the
        engine estimates it numerically.
        """
        return None

    def on_transition_jacobian_numeric_increments(self, vehicle_size: int) -> np.ndarray:
        """Increments for numeric estimation of the transition Jacobian."""
        return np.full(vehicle_size, 1e-6)

    def on_subtract_vehicle_states(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Computes a - b between two vehicle states, accounting for angle wrapping."""
        return a - b

    @abstractmethod
    def on_transition_noise(self, state: FilterState) -> np.ndarray:
        """
        Implements the transition noise covariance Q_k.

        Returns:
        --------
        np.ndarray
            Process noise covariance matrix (vehicle_size x vehicle_size)
        """

    def on_pre_computing_predictions(self, state: FilterState,
                                     all_predictions: List[np.ndarray]) -> List[int]:
        """
        Choose which landmarks get Jacobians and innovation covariances.

        This is only a performance heuristic: landmarks missed here but
        actually observed are added later by the engine.
        """
        return list(range(state.number_of_landmarks))

    @abstractmethod
    def on_get_observation_noise(self) -> np.ndarray:
        """Return the observation noise covariance matrix R (O x O)."""

    @abstractmethod
    def on_get_observations_and_data_association(
            self, all_predictions: List[np.ndarray], innovation_cov: np.ndarray,
            landmark_indices: Sequence[int],
            obs_noise: np.ndarray) -> Tuple[List[np.ndarray], List[int]]:
        """
        Return observations and data association.

        Parameters:
        -----------
        all_predictions : List[np.ndarray]
            Predicted observations for all landmarks
        innovation_cov : np.ndarray
            Innovation covariance of the landmarks in ``landmark_indices``,
            block i corresponding to landmark_indices[i]
        landmark_indices : Sequence[int]
            Landmarks included in ``innovation_cov``
        obs_noise : np.ndarray
            Observation noise covariance

        Returns:
        --------
        Tuple[List[np.ndarray], List[int]]
            - observations: List of observation vectors
            - data_association: landmark index per observation, or
              NEW_LANDMARK. May be empty for non-SLAM problems.
        """

    @abstractmethod
    def on_observation_model(self, state: FilterState,
                             landmark_indices: Sequence[int]) -> List[np.ndarray]:
        """
        Implements the observation prediction h_i(x) for each landmark index.

        Non-SLAM problems are called with ``[0]`` and must return one
        prediction for the whole system.
        """

    def on_observation_jacobians(self, state: FilterState,
                                 landmark_idx: int) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        Implements the observation Jacobians dh_i/dxv and dh_i/dy_i.

        Returns None when no closed form is available.
        """
        return None

    def on_observation_jacobians_numeric_increments(
            self, vehicle_size: int, feature_size: int) -> Tuple[np.ndarray, np.ndarray]:
        """Increments for numeric estimation of the observation Jacobians."""
        return np.full(vehicle_size, 1e-6), np.full(feature_size, 1e-6)

    def on_subtract_observation_vectors(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Computes a - b, accounting for topology (e.g., angle wrapping)."""
        return a - b

    def on_inverse_observation_model(self, state: FilterState,
                                     observation: np.ndarray) -> InverseObservation:
        """Implements the inverse observation model for new landmarks."""
        raise NotImplementedError("Inverse observation model not implemented")

    def on_new_landmark_added_to_map(self, obs_index: int, landmark_index: int) -> None:
        """Called after observation ``obs_index`` was injected as a new landmark."""

    def on_normalize_state_vector(self, state: FilterState) -> None:
        """Normalize the state vector in place (e.g., keep angles in [-pi, pi])."""

    def on_post_iteration(self, state: FilterState) -> None:
        """Called at the end of each Kalman filter iteration."""
