"""
Exception hierarchy raised by the Kalman filter engine.

Configuration and consistency errors are fatal: once one of them has been
raised the filter instance should be considered unusable.
"""

import numpy as np


class KalmanFilterError(Exception):
    """Base class for all errors raised by the engine."""


class KFConfigurationError(KalmanFilterError):
    """Invalid combination of options and application models."""


class UnsupportedMethodError(KFConfigurationError, NotImplementedError):
    """The selected update method is declared but not implemented."""


class KFShapeError(KalmanFilterError, ValueError):
    """A collaborator returned an array with the wrong size or shape."""


class KFConsistencyError(KalmanFilterError):
    """The filter detected a numerical inconsistency it cannot recover from."""


class JacobianMismatchError(KFConsistencyError):
    """Analytic and numeric Jacobians disagree beyond the configured threshold."""

    def __init__(self, name: str, numeric: np.ndarray, analytic: np.ndarray,
                 discrepancy: float, threshold: float):
        self.name = name
        self.numeric = numeric
        self.analytic = analytic
        self.discrepancy = discrepancy
        self.threshold = threshold
        super().__init__(
            f"Analytic {name} Jacobian is wrong (sum|diff| = {discrepancy:.6g} > {threshold:.6g})\n"
            f"Numeric {name}:\n{numeric}\n"
            f"Analytic {name}:\n{analytic}\n"
            f"Diff:\n{numeric - analytic}")


class CovarianceError(KFConsistencyError):
    """The covariance matrix lost positive semi-definiteness."""

    def __init__(self, message: str, covariance: np.ndarray, gain: np.ndarray = None):
        self.covariance = covariance
        self.gain = gain
        super().__init__(message)


def check_shape(name: str, array, shape: tuple) -> np.ndarray:
    """Convert ``array`` to a float ndarray and assert its shape."""
    arr = np.asarray(array, dtype=float)
    if arr.shape != tuple(shape):
        raise KFShapeError(f"{name} has shape {arr.shape}, expected {tuple(shape)}")
    return arr
