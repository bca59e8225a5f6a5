"""Health check and status monitoring."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ComponentState(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    DOWN = "down"


class HealthStatus:
    """Solver loop health plus per-component checks."""

    def __init__(self) -> None:
        """Initialize health status."""
        self.started_at = datetime.utcnow()
        self.last_cycle_at: datetime | None = None
        self.last_cycle_duration: float = 0.0
        self.total_cycles = 0
        self.consecutive_errors = 0
        self.is_healthy = True
        self.error_message: str | None = None
        self.components: dict[str, dict[str, Any]] = {}
        self.ready = False

    def update_cycle(self, duration: float) -> None:
        """Update cycle metrics.

        Args:
            duration: Cycle duration in seconds.
        """
        self.last_cycle_at = datetime.utcnow()
        self.last_cycle_duration = duration
        self.total_cycles += 1
        self.consecutive_errors = 0

    def record_cycle_error(self, error: str) -> int:
        """Count a failed cycle. Returns the consecutive error count."""
        self.consecutive_errors += 1
        self.mark_unhealthy(error)
        return self.consecutive_errors

    def mark_unhealthy(self, error: str) -> None:
        """Mark as unhealthy.

        Args:
            error: Error message.
        """
        self.is_healthy = False
        self.error_message = error
        logger.error(f"Health check failed: {error}")

    def mark_healthy(self) -> None:
        """Mark as healthy."""
        self.is_healthy = True
        self.error_message = None

    def set_component(self, name: str, state: ComponentState, detail: str | None = None) -> None:
        previous = self.components.get(name, {}).get("state")
        self.components[name] = {
            "state": state.value,
            "detail": detail,
            "checked_at": datetime.utcnow().isoformat(),
        }
        if previous is not None and previous != state.value:
            logger.warning(
                f"Component {name} is now {state.value}",
                extra={"component": name, "state": state.value, "detail": detail},
            )

    @property
    def overall(self) -> str:
        """healthy / degraded / unhealthy."""
        if not self.is_healthy or any(c["state"] == ComponentState.DOWN.value for c in self.components.values()):
            return "unhealthy"
        if any(c["state"] == ComponentState.DEGRADED.value for c in self.components.values()):
            return "degraded"
        return "healthy"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary.

        Returns:
            Health status as dict.
        """
        uptime = (datetime.utcnow() - self.started_at).total_seconds()

        return {
            "status": self.overall,
            "is_healthy": self.is_healthy,
            "ready": self.ready,
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": uptime,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_cycle_duration": self.last_cycle_duration,
            "total_cycles": self.total_cycles,
            "consecutive_errors": self.consecutive_errors,
            "error_message": self.error_message,
            "components": dict(self.components),
        }
