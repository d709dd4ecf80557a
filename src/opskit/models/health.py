"""Engine health models for background maintenance."""

from datetime import datetime, UTC
from enum import Enum

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """Overall health status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"  # Catalog stale or unreachable, cached tools still usable
    CRITICAL = "critical"  # Cache unusable, nothing can run


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    name: str
    healthy: bool
    latency_ms: float | None = None
    error: str | None = None
    last_check: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SystemHealth(BaseModel):
    """Overall engine health, maintained by the maintenance worker."""

    status: HealthStatus = HealthStatus.HEALTHY
    components: dict[str, ComponentHealth] = Field(default_factory=dict)
    last_check: datetime = Field(default_factory=lambda: datetime.now(UTC))

    uptime_seconds: float = 0.0
    catalog_refreshes: int = 0
    cache_prunes: int = 0
    entries_pruned: int = 0

    consecutive_failures: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None

    @property
    def unhealthy_components(self) -> list[str]:
        """List of unhealthy component names."""
        return [name for name, comp in self.components.items() if not comp.healthy]

    def update_component(
        self,
        name: str,
        healthy: bool,
        latency_ms: float | None = None,
        error: str | None = None,
    ) -> None:
        """Update health status for a component."""
        self.components[name] = ComponentHealth(
            name=name,
            healthy=healthy,
            latency_ms=latency_ms,
            error=error,
        )
        self.last_check = datetime.now(UTC)
        self._recalculate_status()

    def _recalculate_status(self) -> None:
        unhealthy = self.unhealthy_components

        if not unhealthy:
            self.status = HealthStatus.HEALTHY
            self.consecutive_failures = 0
        elif "cache" in unhealthy:
            # No artifact can be resolved without a working cache
            self.status = HealthStatus.CRITICAL
            self.consecutive_failures += 1
        else:
            self.status = HealthStatus.DEGRADED
            self.consecutive_failures += 1

    def record_error(self, error: str) -> None:
        """Record an error occurrence."""
        self.last_error = error
        self.last_error_at = datetime.now(UTC)
        self.consecutive_failures += 1
