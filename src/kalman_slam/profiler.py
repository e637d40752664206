import logging
import time
from typing import Dict

logger = logging.getLogger(__name__)


class TimeLogger:
    """Simple time profiler for performance monitoring."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._open: Dict[str, float] = {}
        self._stats: Dict[str, dict] = {}

    def enable(self, enabled: bool = True):
        self.enabled = enabled

    def enter(self, name: str):
        if self.enabled:
            self._open[name] = time.perf_counter()

    def leave(self, name: str) -> float:
        """Close a section and return its duration in seconds (0 when disabled)."""
        if not self.enabled or name not in self._open:
            return 0.0
        elapsed = time.perf_counter() - self._open.pop(name)
        stats = self._stats.setdefault(name, {"count": 0, "total": 0.0, "max": 0.0})
        stats["count"] += 1
        stats["total"] += elapsed
        stats["max"] = max(stats["max"], elapsed)
        logger.debug(f"Timer '{name}': {elapsed:.6f} seconds")
        return elapsed

    def get_stats(self) -> dict:
        return {
            name: dict(s, mean=s["total"] / s["count"])
            for name, s in self._stats.items()
        }

    def reset(self):
        self._open.clear()
        self._stats.clear()

    def summary(self) -> str:
        lines = [f"{'section':<40} {'count':>6} {'mean [ms]':>10} {'max [ms]':>10} {'total [ms]':>11}"]
        for name, s in sorted(self.get_stats().items()):
            lines.append(f"{name:<40} {s['count']:>6} {1e3 * s['mean']:>10.3f} "
                         f"{1e3 * s['max']:>10.3f} {1e3 * s['total']:>11.3f}")
        return "\n".join(lines)
