"""Maintenance worker - periodic catalog refresh and cache pruning."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from opskit.cache.artifact_cache import ArtifactCache
from opskit.config import Settings
from opskit.exceptions import OpsKitError
from opskit.manager.catalog_resolver import CatalogResolver
from opskit.models.health import SystemHealth

if TYPE_CHECKING:
    from opskit.api.events import EventBus

logger = logging.getLogger(__name__)


class MaintenanceWorker:
    """Keeps the catalog current and the cache free of expired entries.

    Failures are recorded on the shared ``SystemHealth`` and never stop
    the loop.
    """

    def __init__(
        self,
        resolver: CatalogResolver,
        cache: ArtifactCache,
        settings: Settings,
        event_bus: EventBus | None = None,
        health: SystemHealth | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.resolver = resolver
        self.cache = cache
        self.event_bus = event_bus
        self.health = health or SystemHealth()
        self._refresh_interval = settings.catalog_refresh_interval
        self._prune_interval = settings.cache_prune_interval
        self._clock = clock
        self._started_at = clock()
        self._last_refresh: float | None = None
        self._last_prune: float | None = None

    def _is_due(self, last_run: float | None, interval: float, now: float) -> bool:
        return last_run is None or now - last_run >= interval

    async def tick(self) -> dict[str, Any]:
        """Run whatever maintenance is due.

        Returns:
            Summary of what ran during this tick
        """
        now = self._clock()
        self.health.uptime_seconds = now - self._started_at
        summary: dict[str, Any] = {"catalog_refreshed": False, "entries_pruned": None}

        if self._is_due(self._last_refresh, self._refresh_interval, now):
            self._last_refresh = now
            summary["catalog_refreshed"] = await self.refresh_catalog()

        if self._is_due(self._last_prune, self._prune_interval, now):
            self._last_prune = now
            summary["entries_pruned"] = self.prune_cache()

        if self.event_bus is not None:
            self.event_bus.cleanup_stale()

        return summary

    async def refresh_catalog(self) -> bool:
        """Force a catalog refresh. Returns True if the remote was reached."""
        started = time.perf_counter()
        try:
            catalog = await self.resolver.resolve(force_refresh=True)
        except OpsKitError as e:
            logger.error(f"Catalog refresh failed: {e}")
            self.health.update_component(name="catalog", healthy=False, error=str(e))
            self.health.record_error(f"Catalog: {e}")
            return False

        latency_ms = (time.perf_counter() - started) * 1000
        self.health.catalog_refreshes += 1

        if catalog.offline:
            logger.warning("Catalog unreachable, serving cached manifest")
            self.health.update_component(
                name="catalog",
                healthy=False,
                latency_ms=latency_ms,
                error="Remote unreachable; serving cached manifest",
            )
            return False

        self.health.update_component(name="catalog", healthy=True, latency_ms=latency_ms)
        return True

    def prune_cache(self) -> int | None:
        """Drop expired cache entries. Returns the count, or None on failure."""
        try:
            pruned = self.cache.prune()
        except OSError as e:
            logger.error(f"Cache prune failed: {e}")
            self.health.update_component(name="cache", healthy=False, error=str(e))
            self.health.record_error(f"Cache: {e}")
            return None

        self.health.cache_prunes += 1
        self.health.entries_pruned += pruned
        self.health.update_component(name="cache", healthy=True)
        return pruned

    async def run(self, interval: float = 1.0) -> None:
        """Loop until cancelled."""
        logger.info(
            f"Maintenance started: catalog refresh every {self._refresh_interval}s, "
            f"cache prune every {self._prune_interval}s"
        )

        while True:
            try:
                await self.tick()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("Maintenance shutting down")
                break
            except Exception as e:
                logger.error(f"Maintenance loop error: {e}")
                self.health.record_error(str(e))
                await asyncio.sleep(5)  # Back off on error
