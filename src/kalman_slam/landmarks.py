"""
Injection of newly observed landmarks into the state vector and covariance.
"""

import logging
from typing import List, Sequence, Tuple

import numpy as np

from .capability import NEW_LANDMARK, KFCapability
from .errors import check_shape
from .state import FilterState

logger = logging.getLogger(__name__)


def add_new_landmarks(state: FilterState, capability: KFCapability,
                      observations: Sequence[np.ndarray], data_association: Sequence[int],
                      R: np.ndarray, time_logger=None) -> List[Tuple[int, int]]:
    """
    Append every observation associated to NEW_LANDMARK as a new landmark.

    For each new landmark y_n with inverse observation model Jacobians
    dyn_dxv and dyn_dhn:

        P_yn,x  = dyn_dxv * P_xx
        P_yn,yq = dyn_dxv * P_x,yq             for every previous landmark q
        P_yn,yn = dyn_dxv * P_xx * dyn_dxv^T + dyn_dhn * R * dyn_dhn^T

    Existing entries of x and P are never modified.

    Returns:
    --------
    List[Tuple[int, int]]
        (observation index, new landmark index) for each injected landmark
    """
    if not state.is_slam:
        return []

    V, F = state.vehicle_size, state.feature_size
    O = R.shape[0]
    added = []

    for obs_idx, (observation, assoc) in enumerate(zip(observations, data_association)):
        if assoc != NEW_LANDMARK:
            continue
        if time_logger is not None:
            time_logger.enter("KF:new_landmarks:create")

        inv = capability.on_inverse_observation_model(state, observation)
        mean = check_shape("inverse observation landmark mean", inv.landmark_mean, (F,))
        dyn_dxv = check_shape("inverse observation dyn_dxv", inv.dyn_dxv, (F, V))

        P = state.P
        Pxx = P[:V, :V]
        # [P_yn,x | P_yn,y0 | P_yn,y1 ...] in one product
        cross = dyn_dxv @ P[:V, :]

        P_yn_yn = dyn_dxv @ Pxx @ dyn_dxv.T
        if inv.use_dyn_dhn_jacobian:
            dyn_dhn = check_shape("inverse observation dyn_dhn", inv.dyn_dhn, (F, O))
            P_yn_yn = P_yn_yn + dyn_dhn @ R @ dyn_dhn.T
        else:
            P_yn_yn = P_yn_yn + check_shape(
                "inverse observation dyn_dhn_R_dyn_dhnT", inv.dyn_dhn_R_dyn_dhnT, (F, F))
        P_yn_yn = 0.5 * (P_yn_yn + P_yn_yn.T)

        new_idx = state.append_landmark(mean, cross, P_yn_yn)
        capability.on_new_landmark_added_to_map(obs_idx, new_idx)
        added.append((obs_idx, new_idx))
        logger.debug(f"Observation {obs_idx} added to the map as landmark {new_idx}")

        if time_logger is not None:
            time_logger.leave("KF:new_landmarks:create")

    return added
