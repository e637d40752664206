"""
Finite-difference Jacobian estimation and analytic Jacobian verification.
"""

import logging
from typing import Callable, Optional

import numpy as np

from .errors import JacobianMismatchError, KFShapeError

logger = logging.getLogger(__name__)


def estimate_jacobian(func: Callable[..., np.ndarray], x0: np.ndarray,
                      increments: np.ndarray, args: tuple = (),
                      subtract: Optional[Callable[[np.ndarray, np.ndarray], np.ndarray]] = None
                      ) -> np.ndarray:
    """
    Estimate the Jacobian of ``func`` at ``x0`` by central differences.

    Parameters:
    -----------
    func : callable
        Vector function ``func(x, *args) -> np.ndarray`` of length m
    x0 : np.ndarray
        Base point of length n. It is never modified.
    increments : np.ndarray
        Perturbation size for each of the n components (must be > 0)
    args : tuple
        Extra positional arguments passed through to ``func``
    subtract : callable, optional
        Difference of two outputs, for outputs with wrap-around components
        (defaults to plain subtraction)

    Returns:
    --------
    np.ndarray
        Jacobian matrix of shape (m, n)
    """
    x0 = np.array(x0, dtype=float).ravel()
    increments = np.asarray(increments, dtype=float).ravel()
    n = x0.size
    if increments.size != n:
        raise KFShapeError(f"Got {increments.size} increments for a point of dimension {n}")
    if np.any(increments <= 0):
        raise ValueError("Jacobian increments must be strictly positive")

    scratch = x0.copy()
    jacobian = None

    for k in range(n):
        scratch[k] = x0[k] + increments[k]
        f_plus = np.asarray(func(scratch, *args), dtype=float).ravel()
        scratch[k] = x0[k] - increments[k]
        f_minus = np.asarray(func(scratch, *args), dtype=float).ravel()
        scratch[k] = x0[k]

        if jacobian is None:
            jacobian = np.zeros((f_plus.size, n))
        if f_plus.size != jacobian.shape[0] or f_minus.size != jacobian.shape[0]:
            raise KFShapeError("Function output changed size while estimating its Jacobian")

        diff = f_plus - f_minus if subtract is None else np.asarray(subtract(f_plus, f_minus), dtype=float)
        jacobian[:, k] = diff / (2.0 * increments[k])

    if jacobian is None:
        # Zero-dimensional input: the output size comes from the base point
        m = np.asarray(func(scratch, *args), dtype=float).size
        jacobian = np.zeros((m, 0))

    return jacobian


def jacobian_discrepancy(numeric: np.ndarray, analytic: np.ndarray) -> float:
    """Sum of absolute element-wise differences between two Jacobians."""
    return float(np.sum(np.abs(np.asarray(numeric) - np.asarray(analytic))))


def verify_jacobian(name: str, numeric: np.ndarray, analytic: np.ndarray,
                    threshold: float) -> None:
    """
    Cross-check an analytic Jacobian against its numeric estimate.

    Raises:
    -------
    JacobianMismatchError
        If the summed absolute difference exceeds ``threshold``.
    """
    numeric = np.asarray(numeric, dtype=float)
    analytic = np.asarray(analytic, dtype=float)
    if numeric.shape != analytic.shape:
        raise KFShapeError(
            f"Analytic {name} has shape {analytic.shape}, numeric estimate has {numeric.shape}")

    discrepancy = jacobian_discrepancy(numeric, analytic)
    if discrepancy > threshold:
        error = JacobianMismatchError(name, numeric, analytic, discrepancy, threshold)
        logger.error(f"[KalmanFilter] {error}")
        raise error
