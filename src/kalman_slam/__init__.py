"""
Generic Extended / Iterated Kalman Filter engine for state estimation and SLAM.
"""

from .capability import NEW_LANDMARK, InverseObservation, KFCapability
from .errors import (CovarianceError, JacobianMismatchError, KalmanFilterError,
                     KFConfigurationError, KFConsistencyError, KFShapeError,
                     UnsupportedMethodError)
from .jacobians import estimate_jacobian, verify_jacobian
from .kalman_filter import CycleInfo, KalmanFilter, ProblemType
from .landmarks import add_new_landmarks
from .options import KFMethod, KFOptions
from .profiler import TimeLogger
from .state import FilterState, LandmarkIndexMap
from .update import (FullBatchUpdate, ScalarIteratedUpdate, SequentialScalarUpdate,
                     kalman_gain, strategy_for)

__version__ = "0.1.0"

__all__ = [
    "NEW_LANDMARK",
    "CovarianceError",
    "CycleInfo",
    "FilterState",
    "FullBatchUpdate",
    "InverseObservation",
    "JacobianMismatchError",
    "KFCapability",
    "KFConfigurationError",
    "KFConsistencyError",
    "KFMethod",
    "KFOptions",
    "KFShapeError",
    "KalmanFilter",
    "KalmanFilterError",
    "LandmarkIndexMap",
    "ProblemType",
    "ScalarIteratedUpdate",
    "SequentialScalarUpdate",
    "TimeLogger",
    "UnsupportedMethodError",
    "add_new_landmarks",
    "estimate_jacobian",
    "kalman_gain",
    "strategy_for",
    "verify_jacobian",
]
