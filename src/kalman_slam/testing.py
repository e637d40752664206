"""
Reference applications of the engine, used by the test-suite.

- ``PoseTracker``: non-SLAM tracking of a directly observed 3-DoF pose.
- ``LinearPointSLAM``: 2-D point vehicle observing 2-D point landmarks with a
  linear relative-position sensor.
- ``RangeBearingSLAM2D``: 2-D robot pose, 2-D landmarks, range-bearing sensor,
  with synthetic odometry/observation generators.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .capability import NEW_LANDMARK, InverseObservation, KFCapability
from .kalman_filter import KalmanFilter
from .options import KFOptions
from .state import FilterState, LandmarkIndexMap


def wrap_to_pi(angle):
    """Wrap angle to [-pi, pi) range."""
    return ((angle + np.pi) % (2 * np.pi)) - np.pi


def compose_poses_2d(pose1: np.ndarray, pose2: np.ndarray) -> np.ndarray:
    """Compose two 2D poses [x, y, yaw]: result = pose1 (+) pose2"""
    x1, y1, yaw1 = pose1[0], pose1[1], pose1[2]
    c, s = math.cos(yaw1), math.sin(yaw1)
    return np.array([x1 + pose2[0] * c - pose2[1] * s,
                     y1 + pose2[0] * s + pose2[1] * c,
                     wrap_to_pi(yaw1 + pose2[2])])


class PoseTracker(KFCapability):
    """
    Non-SLAM problem: a static pose [x, y, yaw] observed directly.

    Transition is the identity with noise ``Q`` (zeros by default); the
    observation is the full state, h(x) = x.
    """

    VEHICLE_SIZE = 3
    OBSERVATION_SIZE = 3

    def __init__(self, R: np.ndarray, Q: Optional[np.ndarray] = None,
                 analytic: bool = True):
        self.R = np.asarray(R, dtype=float)
        self.Q = np.zeros((3, 3)) if Q is None else np.asarray(Q, dtype=float)
        self.analytic = analytic
        self.observation: Optional[np.ndarray] = None

    def make_filter(self, options: Optional[KFOptions] = None,
                    x0=None, P0=None) -> KalmanFilter:
        return KalmanFilter(self, self.VEHICLE_SIZE, self.OBSERVATION_SIZE,
                            options=options, x0=x0, P0=P0)

    def on_get_action(self):
        return np.zeros(0)

    def on_transition_model(self, action, vehicle_state, state):
        return vehicle_state, False

    def on_transition_jacobian(self, action, state):
        return np.eye(3) if self.analytic else None

    def on_transition_noise(self, state):
        return self.Q

    def on_get_observation_noise(self):
        return self.R

    def on_observation_model(self, state, landmark_indices):
        return [state.x[:3].copy() for _ in landmark_indices]

    def on_observation_jacobians(self, state, landmark_idx):
        return (np.eye(3), np.zeros((3, 0))) if self.analytic else None

    def on_get_observations_and_data_association(self, all_predictions, innovation_cov,
                                                 landmark_indices, obs_noise):
        if self.observation is None:
            return [], []
        return [np.asarray(self.observation, dtype=float)], []


class LinearPointSLAM(KFCapability):
    """
    Linear SLAM problem with point vehicle and point landmarks in the plane.

    x_v' = x_v + u,  z_i = y_i - x_v

    Observations are given per step as ``(landmark_id, z)`` pairs; ids not
    yet in the map create new landmarks.
    """

    VEHICLE_SIZE = 2
    OBSERVATION_SIZE = 2
    FEATURE_SIZE = 2
    ACTION_SIZE = 2

    def __init__(self, R: np.ndarray, Q: Optional[np.ndarray] = None,
                 analytic: bool = True):
        self.R = np.asarray(R, dtype=float)
        self.Q = np.zeros((2, 2)) if Q is None else np.asarray(Q, dtype=float)
        self.analytic = analytic
        self.action = np.zeros(2)
        self.observations: List[Tuple[object, np.ndarray]] = []
        self.IDs = LandmarkIndexMap()
        # Optional override of the prediction heuristic (None: predict all)
        self.predict_subset: Optional[List[int]] = None
        self.jacobian_requests: List[int] = []
        self.data_association_calls = 0

    def make_filter(self, options: Optional[KFOptions] = None,
                    x0=None, P0=None) -> KalmanFilter:
        return KalmanFilter(self, self.VEHICLE_SIZE, self.OBSERVATION_SIZE,
                            self.FEATURE_SIZE, self.ACTION_SIZE, options=options, x0=x0, P0=P0)

    def set_step(self, action: Sequence[float], observations: Sequence[Tuple[object, Sequence[float]]]):
        self.action = np.asarray(action, dtype=float)
        self.observations = [(lm_id, np.asarray(z, dtype=float)) for lm_id, z in observations]

    def on_get_action(self):
        return self.action

    def on_transition_model(self, action, vehicle_state, state):
        return vehicle_state + action, False

    def on_transition_jacobian(self, action, state):
        return np.eye(2) if self.analytic else None

    def on_transition_noise(self, state):
        return self.Q

    def on_get_observation_noise(self):
        return self.R

    def on_pre_computing_predictions(self, state, all_predictions):
        if self.predict_subset is None:
            return list(range(state.number_of_landmarks))
        return list(self.predict_subset)

    def on_observation_model(self, state, landmark_indices):
        xv = state.x[:2]
        return [state.get_landmark_mean(i) - xv for i in landmark_indices]

    def on_observation_jacobians(self, state, landmark_idx):
        self.jacobian_requests.append(landmark_idx)
        if not self.analytic:
            return None
        return -np.eye(2), np.eye(2)

    def on_get_observations_and_data_association(self, all_predictions, innovation_cov,
                                                 landmark_indices, obs_noise):
        self.data_association_calls += 1
        observations = [z for _, z in self.observations]
        data_association = [self.IDs.get(lm_id, NEW_LANDMARK) for lm_id, _ in self.observations]
        return observations, data_association

    def on_inverse_observation_model(self, state, observation):
        return InverseObservation(
            landmark_mean=state.x[:2] + observation,
            dyn_dxv=np.eye(2),
            dyn_dhn=np.eye(2))

    def on_new_landmark_added_to_map(self, obs_index, landmark_index):
        self.IDs.register(self.observations[obs_index][0], landmark_index)


@dataclass
class RangeBearingObservation:
    """Single range-bearing observation."""

    range: float
    yaw: float
    landmark_id: int = -1  # -1 means unknown/new landmark


@dataclass
class ActionCollection:
    """Odometry increment in the robot frame."""

    dx: float
    dy: float
    dyaw: float
    covariance: Optional[np.ndarray] = None  # 3x3, robot frame


@dataclass
class SensoryFrame:
    """Collection of sensor observations at a timestamp."""

    observations: List[RangeBearingObservation] = field(default_factory=list)
    sensor_pose: Optional[np.ndarray] = None  # [x, y, yaw] on the robot


class RangeBearingSLAM2D(KFCapability):
    """
    EKF-based SLAM for 2D environments with range-bearing sensors.

    State vector format: [robot_x, robot_y, robot_yaw, lm1_x, lm1_y, lm2_x, lm2_y, ...]
    """

    VEHICLE_SIZE = 3
    OBSERVATION_SIZE = 2
    FEATURE_SIZE = 2
    ACTION_SIZE = 3

    def __init__(self, std_q_no_odo: Sequence[float] = (0.1, 0.1, math.radians(4.0)),
                 std_sensor_range: float = 0.1, std_sensor_yaw: float = math.radians(0.5),
                 prediction_max_range: float = math.inf):
        self.std_q_no_odo = list(std_q_no_odo)
        self.std_sensor_range = std_sensor_range
        self.std_sensor_yaw = std_sensor_yaw
        self.prediction_max_range = prediction_max_range

        self.action: Optional[ActionCollection] = None
        self.SF: Optional[SensoryFrame] = None
        # The mapping between landmark IDs and indexes in the state vector
        self.IDs = LandmarkIndexMap()
        self._next_anonymous_id = -1

    def make_filter(self, options: Optional[KFOptions] = None,
                    x0=None, P0=None) -> KalmanFilter:
        if P0 is None:
            P0 = np.eye(3) * 1e-6
        return KalmanFilter(self, self.VEHICLE_SIZE, self.OBSERVATION_SIZE,
                            self.FEATURE_SIZE, self.ACTION_SIZE, options=options, x0=x0, P0=P0)

    def process_action_observation(self, kf: KalmanFilter, action: ActionCollection,
                                   SF: SensoryFrame):
        self.action = action
        self.SF = SF
        return kf.run_one_kalman_iteration()

    def _sensor_offset(self) -> np.ndarray:
        if self.SF is None or self.SF.sensor_pose is None:
            return np.zeros(3)
        return np.asarray(self.SF.sensor_pose, dtype=float)[:3]

    # Motion model

    def on_get_action(self):
        if self.action is None:
            return np.zeros(3)
        return np.array([self.action.dx, self.action.dy, self.action.dyaw])

    def on_transition_model(self, action, vehicle_state, state):
        # Don't update the vehicle pose & its covariance until we have some
        # landmarks in the map
        if state.is_map_empty:
            return vehicle_state, True
        return compose_poses_2d(vehicle_state, action), False

    def on_transition_jacobian(self, action, state):
        yaw = state.x[2]
        dx, dy = action[0], action[1]
        c, s = math.cos(yaw), math.sin(yaw)
        F = np.eye(3)
        F[0, 2] = -dx * s - dy * c
        F[1, 2] = dx * c - dy * s
        return F

    def on_subtract_vehicle_states(self, a, b):
        result = a - b
        result[2] = wrap_to_pi(result[2])
        return result

    def on_transition_noise(self, state):
        if self.action is None or self.action.covariance is None:
            return np.diag(np.square(self.std_q_no_odo))
        # Odometry covariance is given in the robot frame
        yaw = state.x[2]
        c, s = math.cos(yaw), math.sin(yaw)
        rot = np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
        return rot @ np.asarray(self.action.covariance, dtype=float) @ rot.T

    # Observation model

    def on_get_observation_noise(self):
        return np.diag([self.std_sensor_range ** 2, self.std_sensor_yaw ** 2])

    def on_observation_model(self, state, landmark_indices):
        sensor = compose_poses_2d(state.x[:3], self._sensor_offset())
        predictions = []
        for lm_idx in landmark_indices:
            lx, ly = state.get_landmark_mean(lm_idx)
            dx, dy = lx - sensor[0], ly - sensor[1]
            predictions.append(np.array([math.hypot(dx, dy),
                                         wrap_to_pi(math.atan2(dy, dx) - sensor[2])]))
        return predictions

    def on_observation_jacobians(self, state, landmark_idx):
        robot = state.x[:3]
        offset = self._sensor_offset()
        sensor = compose_poses_2d(robot, offset)
        lx, ly = state.get_landmark_mean(landmark_idx)
        dx, dy = lx - sensor[0], ly - sensor[1]
        r2 = max(dx * dx + dy * dy, 1e-12)
        r = math.sqrt(r2)

        # d(sensor position)/d(robot yaw)
        c, s = math.cos(robot[2]), math.sin(robot[2])
        dsx = -offset[0] * s - offset[1] * c
        dsy = offset[0] * c - offset[1] * s

        Hx = np.array([
            [-dx / r, -dy / r, -(dx * dsx + dy * dsy) / r],
            [dy / r2, -dx / r2, (dy * dsx - dx * dsy) / r2 - 1.0],
        ])
        Hy = np.array([
            [dx / r, dy / r],
            [-dy / r2, dx / r2],
        ])
        return Hx, Hy

    def on_subtract_observation_vectors(self, a, b):
        result = a - b
        result[1] = wrap_to_pi(result[1])
        return result

    def on_pre_computing_predictions(self, state, all_predictions):
        # Conservative gating on predicted range
        robot_cov = state.P[:2, :2]
        margin = 4 * math.sqrt(max(np.trace(robot_cov), 0.0)) + 4 * self.std_sensor_range
        return [i for i, pred in enumerate(all_predictions)
                if pred[0] < self.prediction_max_range + margin]

    def on_get_observations_and_data_association(self, all_predictions, innovation_cov,
                                                 landmark_indices, obs_noise):
        if self.SF is None:
            return [], []

        observations = []
        data_association = []
        for obs in self.SF.observations:
            observations.append(np.array([obs.range, obs.yaw]))
            if obs.landmark_id >= 0 and obs.landmark_id in self.IDs:
                data_association.append(self.IDs.index_of(obs.landmark_id))
            else:
                data_association.append(NEW_LANDMARK)
        return observations, data_association

    def on_inverse_observation_model(self, state, observation):
        robot = state.x[:3]
        offset = self._sensor_offset()
        sensor = compose_poses_2d(robot, offset)
        rng, bearing = observation[0], observation[1]

        theta = sensor[2] + bearing
        ct, st = math.cos(theta), math.sin(theta)
        landmark = np.array([sensor[0] + rng * ct, sensor[1] + rng * st])

        c, s = math.cos(robot[2]), math.sin(robot[2])
        dyn_dxv = np.array([
            [1.0, 0.0, -offset[0] * s - offset[1] * c - rng * st],
            [0.0, 1.0, offset[0] * c - offset[1] * s + rng * ct],
        ])
        dyn_dhn = np.array([
            [ct, -rng * st],
            [st, rng * ct],
        ])
        return InverseObservation(landmark, dyn_dxv, dyn_dhn)

    def on_new_landmark_added_to_map(self, obs_index, landmark_index):
        obs = self.SF.observations[obs_index]
        if obs.landmark_id >= 0:
            self.IDs.register(obs.landmark_id, landmark_index)
        else:
            self.IDs.register(self._next_anonymous_id, landmark_index)
            self._next_anonymous_id -= 1

    def on_normalize_state_vector(self, state: FilterState):
        state.x[2] = wrap_to_pi(state.x[2])


def create_synthetic_landmarks() -> List[Tuple[float, float]]:
    """A ring of landmarks around the origin."""
    return [(10.0, 0.0), (10.0, 10.0), (0.0, 10.0), (-10.0, 10.0),
            (-10.0, 0.0), (-10.0, -10.0), (0.0, -10.0), (10.0, -10.0)]


def generate_odometry_sequence(rng: np.random.Generator, steps: int = 100,
                               v: float = 0.1, w: float = 0.005,
                               noise_std: float = 0.005) -> Tuple[List[ActionCollection], List[ActionCollection]]:
    """
    Synthetic odometry along a circular path.

    Returns:
    --------
    Tuple[List[ActionCollection], List[ActionCollection]]
        - true increments
        - noisy odometry readings (with their covariance)
    """
    true_actions = []
    odometry = []
    cov = np.diag([noise_std ** 2] * 3)
    for _ in range(steps):
        true_actions.append(ActionCollection(dx=v, dy=0.0, dyaw=w))
        noise = rng.normal(0.0, noise_std, size=3)
        odometry.append(ActionCollection(dx=v + noise[0], dy=noise[1], dyaw=w + noise[2],
                                         covariance=cov))
    return true_actions, odometry


def simulate_range_bearing_observations(robot_pose: np.ndarray,
                                        landmarks: Sequence[Tuple[float, float]],
                                        rng: Optional[np.random.Generator] = None,
                                        max_range: float = 15.0,
                                        std_range: float = 0.05,
                                        std_yaw: float = 0.01) -> SensoryFrame:
    """Range-bearing observations of every landmark within ``max_range``."""
    observations = []
    for lm_id, (lm_x, lm_y) in enumerate(landmarks):
        dx = lm_x - robot_pose[0]
        dy = lm_y - robot_pose[1]
        true_range = math.hypot(dx, dy)
        if true_range > max_range:
            continue
        true_bearing = wrap_to_pi(math.atan2(dy, dx) - robot_pose[2])
        if rng is not None:
            true_range = max(0.1, true_range + rng.normal(0.0, std_range))
            true_bearing = wrap_to_pi(true_bearing + rng.normal(0.0, std_yaw))
        observations.append(RangeBearingObservation(range=true_range, yaw=true_bearing,
                                                    landmark_id=lm_id))
    return SensoryFrame(observations=observations, sensor_pose=np.zeros(3))
