"""
Joint state vector and covariance matrix of the filter.

State vector format: [vehicle (vehicle_size), lm_0 (feature_size), lm_1, ...]
"""

from typing import Dict, Hashable, Optional

import numpy as np

from .errors import KFShapeError, check_shape


class FilterState:
    """
    Owns the mean vector ``x`` and covariance ``P`` and gives block access.

    Parameters:
    -----------
    vehicle_size : int
        Dimension of the vehicle block
    feature_size : int
        Dimension of each landmark block (0 for non-SLAM problems)
    x0 : np.ndarray, optional
        Initial vehicle mean (defaults to zeros)
    P0 : np.ndarray, optional
        Initial vehicle covariance (defaults to identity)
    """

    def __init__(self, vehicle_size: int, feature_size: int = 0,
                 x0: Optional[np.ndarray] = None, P0: Optional[np.ndarray] = None):
        if vehicle_size <= 0:
            raise ValueError("vehicle_size must be positive")
        if feature_size < 0:
            raise ValueError("feature_size must be non-negative")

        self.vehicle_size = vehicle_size
        self.feature_size = feature_size
        self.x = np.zeros(vehicle_size)
        self.P = np.eye(vehicle_size)
        self.reset(x0, P0)

    def reset(self, x0: Optional[np.ndarray] = None, P0: Optional[np.ndarray] = None) -> None:
        """Drop all landmarks and restart from a vehicle-only state."""
        if x0 is None:
            x0 = np.zeros(self.vehicle_size)
        if P0 is None:
            P0 = np.eye(self.vehicle_size)
        self.x = check_shape("x0", x0, (self.vehicle_size,)).copy()
        self.P = check_shape("P0", P0, (self.vehicle_size, self.vehicle_size)).copy()

    @property
    def is_slam(self) -> bool:
        return self.feature_size > 0

    @property
    def state_length(self) -> int:
        return self.x.size

    @property
    def number_of_landmarks(self) -> int:
        if self.feature_size == 0:
            return 0
        return (self.x.size - self.vehicle_size) // self.feature_size

    @property
    def is_map_empty(self) -> bool:
        return self.number_of_landmarks == 0

    def check_invariants(self) -> None:
        """Raise ``KFShapeError`` if the state layout is broken."""
        n = self.x.size
        extra = n - self.vehicle_size
        if extra < 0:
            raise KFShapeError(f"State vector of length {n} is shorter than the vehicle block")
        if self.feature_size == 0:
            if extra != 0:
                raise KFShapeError("Non-SLAM state vector must only hold the vehicle block")
        elif extra % self.feature_size != 0:
            raise KFShapeError(
                f"State vector length {n} is not {self.vehicle_size} + N*{self.feature_size}")
        if self.P.shape != (n, n):
            raise KFShapeError(f"Covariance has shape {self.P.shape}, state has length {n}")

    def max_asymmetry(self) -> float:
        """Largest absolute entry of P - P^T."""
        return float(np.max(np.abs(self.P - self.P.T))) if self.P.size else 0.0

    # Block access

    def landmark_offset(self, idx: int) -> int:
        """Index in ``x`` of the first component of the idx-th landmark."""
        if not 0 <= idx < self.number_of_landmarks:
            raise IndexError(f"Landmark index {idx} out of range [0, {self.number_of_landmarks})")
        return self.vehicle_size + idx * self.feature_size

    def vehicle_mean(self) -> np.ndarray:
        return self.x[:self.vehicle_size].copy()

    def vehicle_covariance(self) -> np.ndarray:
        v = self.vehicle_size
        return self.P[:v, :v].copy()

    def get_landmark_mean(self, idx: int) -> np.ndarray:
        start = self.landmark_offset(idx)
        return self.x[start:start + self.feature_size].copy()

    def get_landmark_covariance(self, idx: int) -> np.ndarray:
        start = self.landmark_offset(idx)
        end = start + self.feature_size
        return self.P[start:end, start:end].copy()

    def set_landmark_mean(self, idx: int, mean: np.ndarray) -> None:
        start = self.landmark_offset(idx)
        self.x[start:start + self.feature_size] = check_shape(
            "landmark mean", mean, (self.feature_size,))

    def set_landmark_covariance(self, idx: int, cov: np.ndarray) -> None:
        start = self.landmark_offset(idx)
        end = start + self.feature_size
        self.P[start:end, start:end] = check_shape(
            "landmark covariance", cov, (self.feature_size, self.feature_size))

    def block(self, row: int, col: int, rows: int, cols: int) -> np.ndarray:
        """Copy of the ``rows x cols`` block of P starting at (row, col)."""
        return self.P[row:row + rows, col:col + cols].copy()

    def set_block(self, row: int, col: int, value: np.ndarray, symmetric: bool = False) -> None:
        """Write a block of P, optionally mirroring its transpose at (col, row)."""
        value = np.asarray(value, dtype=float)
        rows, cols = value.shape
        self.P[row:row + rows, col:col + cols] = value
        if symmetric:
            self.P[col:col + cols, row:row + rows] = value.T

    # Growth

    def append_landmark(self, mean: np.ndarray, cross_covariance: np.ndarray,
                        covariance: np.ndarray) -> int:
        """
        Append one landmark block to the state.

        Parameters:
        -----------
        mean : np.ndarray
            New landmark mean (feature_size,)
        cross_covariance : np.ndarray
            Covariance between the new landmark and the whole previous state,
            shape (feature_size, old_state_length)
        covariance : np.ndarray
            Covariance of the new landmark (feature_size, feature_size)

        Returns:
        --------
        int
            Index of the new landmark
        """
        if not self.is_slam:
            raise KFShapeError("Cannot append landmarks to a non-SLAM state")

        f = self.feature_size
        n = self.x.size
        mean = check_shape("new landmark mean", mean, (f,))
        cross_covariance = check_shape("new landmark cross covariance", cross_covariance, (f, n))
        covariance = check_shape("new landmark covariance", covariance, (f, f))

        new_x = np.empty(n + f)
        new_x[:n] = self.x
        new_x[n:] = mean

        new_P = np.empty((n + f, n + f))
        new_P[:n, :n] = self.P
        new_P[n:, :n] = cross_covariance
        new_P[:n, n:] = cross_covariance.T
        new_P[n:, n:] = covariance

        self.x = new_x
        self.P = new_P
        return self.number_of_landmarks - 1

    # Copies

    def copy(self) -> "FilterState":
        other = FilterState.__new__(FilterState)
        other.vehicle_size = self.vehicle_size
        other.feature_size = self.feature_size
        other.x = self.x.copy()
        other.P = self.P.copy()
        return other

    def scratch(self) -> "FilterState":
        """
        Copy of the mean sharing a read-only view of the covariance.

        Used to evaluate models at perturbed states without touching the
        live state vector.
        """
        other = FilterState.__new__(FilterState)
        other.vehicle_size = self.vehicle_size
        other.feature_size = self.feature_size
        other.x = self.x.copy()
        other.P = self.P.view()
        other.P.flags.writeable = False
        return other

    def __repr__(self) -> str:
        return (f"FilterState(vehicle_size={self.vehicle_size}, feature_size={self.feature_size}, "
                f"landmarks={self.number_of_landmarks})")


class LandmarkIndexMap:
    """
    Bijection between external landmark identities and state landmark indices.

    Entries are created when a landmark is injected and never change.
    """

    def __init__(self):
        self._index_by_id: Dict[Hashable, int] = {}
        self._id_by_index: Dict[int, Hashable] = {}

    def register(self, landmark_id: Hashable, index: int) -> None:
        if landmark_id in self._index_by_id:
            raise ValueError(f"Landmark id {landmark_id!r} is already mapped to "
                             f"index {self._index_by_id[landmark_id]}")
        if index in self._id_by_index:
            raise ValueError(f"Landmark index {index} is already mapped to "
                             f"id {self._id_by_index[index]!r}")
        self._index_by_id[landmark_id] = index
        self._id_by_index[index] = landmark_id

    def index_of(self, landmark_id: Hashable) -> int:
        return self._index_by_id[landmark_id]

    def id_of(self, index: int) -> Hashable:
        return self._id_by_index[index]

    def get(self, landmark_id: Hashable, default=None):
        return self._index_by_id.get(landmark_id, default)

    def as_dict(self) -> Dict[Hashable, int]:
        return dict(self._index_by_id)

    def inverse(self) -> Dict[int, Hashable]:
        return dict(self._id_by_index)

    def __contains__(self, landmark_id: Hashable) -> bool:
        return landmark_id in self._index_by_id

    def __len__(self) -> int:
        return len(self._index_by_id)
