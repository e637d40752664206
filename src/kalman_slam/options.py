import logging
from dataclasses import dataclass, fields
from enum import Enum

from .errors import KFConfigurationError

logger = logging.getLogger(__name__)


class KFMethod(Enum):
    """
    Update algorithm of the filter.

    Each member's value is its descriptive alias, accepted by ``parse()``
    together with the member name and the member's position.
    """
    EKF_NAIVE = "full_batch_ekf"
    EKF_ALA_DAVISON = "sequential_scalar"
    IKF_FULL = "full_batch_ikf"
    IKF = "scalar_ikf"  # declared only, selecting it is an error

    @classmethod
    def parse(cls, value) -> "KFMethod":
        """Accept a KFMethod, its position, its name or its alias (case-insensitive)."""
        if isinstance(value, cls):
            return value
        members = list(cls)
        if isinstance(value, int) and not isinstance(value, bool):
            if 0 <= value < len(members):
                return members[value]
        else:
            key = str(value).strip().lower()
            for member in members:
                if key in (member.name.lower(), member.value):
                    return member
        raise KFConfigurationError(f"Unknown Kalman filter method: {value!r}")


@dataclass
class KFOptions:
    """Configuration options for the Kalman Filter algorithm."""

    method: KFMethod = KFMethod.EKF_NAIVE
    ikf_iterations: int = 5
    enable_profiler: bool = False
    use_analytic_transition_jacobian: bool = True
    use_analytic_observation_jacobian: bool = True
    debug_verify_analytic_jacobians: bool = False
    debug_verify_analytic_jacobians_threshold: float = 1e-2
    verbosity_level: int = logging.INFO

    def load_from_config(self, config_dict: dict) -> None:
        """Load options from a configuration dictionary."""
        known = {f.name for f in fields(self)}
        for key, value in config_dict.items():
            if key not in known:
                logger.warning(f"Ignoring unknown Kalman filter option '{key}'")
                continue
            if key == "method":
                value = KFMethod.parse(value)
            elif key == "verbosity_level" and isinstance(value, str):
                value = logging.getLevelName(value.upper())
            setattr(self, key, value)
        self.validate()

    def validate(self) -> None:
        """Raise KFConfigurationError if any option has an invalid value."""
        if not isinstance(self.method, KFMethod):
            raise KFConfigurationError(f"Invalid value of method: {self.method!r}")
        try:
            iterations = int(self.ikf_iterations)
            threshold = float(self.debug_verify_analytic_jacobians_threshold)
        except (TypeError, ValueError) as e:
            raise KFConfigurationError(f"Invalid numeric option: {e}") from e
        if iterations < 1:
            raise KFConfigurationError("ikf_iterations must be >= 1")
        if threshold < 0:
            raise KFConfigurationError("debug_verify_analytic_jacobians_threshold must be >= 0")
        if not isinstance(self.verbosity_level, int):
            raise KFConfigurationError(f"Invalid verbosity level: {self.verbosity_level!r}")

    def dump_to_text(self) -> str:
        """Render every option as a ``name = value`` line."""
        width = max(len(f.name) for f in fields(self))
        lines = ["[KF_options]"]
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, KFMethod):
                value = value.name
            elif isinstance(value, bool):
                value = "Y" if value else "N"
            elif f.name == "verbosity_level":
                value = logging.getLevelName(value)
            lines.append(f"{f.name:<{width}} = {value}")
        return "\n".join(lines) + "\n"
