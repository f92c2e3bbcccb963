"""Health tracking for job handlers and the remote session."""

from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger()


class HealthMonitor:
    """Success/failure streaks per job type (or other component).

    A component whose failure streak reaches ``failure_threshold`` is
    reported once as degraded, with the full status report attached, so the
    log shows which part of the pipeline is struggling.
    """

    def __init__(self, failure_threshold: int = 3):
        self.failure_threshold = failure_threshold
        self.status: dict[str, dict[str, Any]] = {}

    def record_success(self, name: str) -> None:
        current = self.status.get(name, {})
        if current.get("consecutive_failures", 0) >= self.failure_threshold:
            logger.info("component_recovered", component=name)

        self.status[name] = {
            "healthy": True,
            "last_check": _now(),
            "processed": current.get("processed", 0) + 1,
            "consecutive_failures": 0,
            "last_error": None,
        }

    def record_failure(self, name: str, error: str) -> bool:
        """Record a failure.

        Returns:
            True when this failure made the streak reach the threshold
        """
        current = self.status.get(name, {})
        consecutive = current.get("consecutive_failures", 0) + 1

        self.status[name] = {
            "healthy": False,
            "last_check": _now(),
            "processed": current.get("processed", 0) + 1,
            "consecutive_failures": consecutive,
            "last_error": error,
        }

        degraded = consecutive == self.failure_threshold
        if degraded:
            logger.error(
                "component_degraded",
                component=name,
                consecutive_failures=consecutive,
                error=error,
                health=self.get_status(),
            )
        return degraded

    def is_healthy(self, name: str) -> bool:
        """True if the last outcome was a success, or nothing was recorded yet."""
        return self.status.get(name, {}).get("healthy", True)

    def get_status(self) -> dict[str, Any]:
        """Full report: timestamp, summary counts and per-component statuses."""
        healthy_count = sum(1 for s in self.status.values() if s.get("healthy", False))
        total_count = len(self.status)

        return {
            "timestamp": _now(),
            "summary": {
                "healthy": healthy_count,
                "unhealthy": total_count - healthy_count,
                "total": total_count,
            },
            "components": {name: dict(s) for name, s in self.status.items()},
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
