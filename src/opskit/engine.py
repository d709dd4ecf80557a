"""Engine - wires the cache, resolver, validator, host and ledger together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from opskit.api.events import EventBus
from opskit.cache.artifact_cache import ArtifactCache
from opskit.cache.source import ArtifactSource, HttpArtifactSource
from opskit.config import Settings, get_settings
from opskit.manager.catalog_resolver import CatalogResolver
from opskit.manager.execution_host import ExecutionHandle, ExecutionHost
from opskit.manager.interpreters import InterpreterRegistry
from opskit.manager.ledger import ExecutionLedger
from opskit.manager.maintenance import MaintenanceWorker
from opskit.manager.preflight import PreflightValidator
from opskit.manager.sinks import NullSink, OutputSink
from opskit.models.catalog import ToolDescriptor
from opskit.models.execution import ExecutionRequest
from opskit.models.preflight import PreflightReport

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """All long-lived components of one OpsKit process."""

    settings: Settings
    cache: ArtifactCache
    resolver: CatalogResolver
    validator: PreflightValidator
    host: ExecutionHost
    ledger: ExecutionLedger
    event_bus: EventBus
    maintenance: MaintenanceWorker

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        source: ArtifactSource | None = None,
    ) -> Engine:
        """Build an engine from configuration.

        Args:
            settings: Configuration (defaults to the environment)
            source: Artifact source (defaults to HTTP against ``catalog_url``)
        """
        settings = settings or get_settings()
        source = source or HttpArtifactSource(
            base_url=settings.catalog_url,
            timeout=settings.http_timeout,
            user_agent=f"OpsKit/{settings.launcher_version}",
        )
        interpreters = InterpreterRegistry(settings.interpreters)

        cache = ArtifactCache(
            root=settings.cache_dir,
            source=source,
            ttl=timedelta(minutes=settings.cache_ttl_minutes),
        )
        resolver = CatalogResolver(
            source=source,
            cache=cache,
            launcher_version=settings.launcher_version,
            manifest_path=settings.manifest_path,
            cache_key=settings.manifest_cache_key,
        )
        validator = PreflightValidator(
            cache=cache,
            interpreters=interpreters,
            probe_timeout=settings.probe_timeout_seconds,
            default_external_resource=settings.external_resource,
            default_port=settings.external_resource_default_port,
        )
        ledger = ExecutionLedger(settings.history_path)
        host = ExecutionHost(
            cache=cache,
            ledger=ledger,
            interpreters=interpreters,
            grace_period=settings.grace_period_seconds,
            drain_timeout=settings.drain_timeout_seconds,
            default_max_duration=settings.default_max_duration_seconds,
            stream_limit=settings.stream_limit_bytes,
            transcript_limit=settings.transcript_limit_chars,
        )
        event_bus = EventBus()
        maintenance = MaintenanceWorker(
            resolver=resolver,
            cache=cache,
            settings=settings,
            event_bus=event_bus,
        )

        logger.info(f"Engine ready (cache: {settings.cache_dir}, history: {settings.history_path})")
        return cls(
            settings=settings,
            cache=cache,
            resolver=resolver,
            validator=validator,
            host=host,
            ledger=ledger,
            event_bus=event_bus,
            maintenance=maintenance,
        )

    async def preflight(self, tool_id: str) -> tuple[ToolDescriptor, PreflightReport]:
        """Look up a tool and run its pre-flight checklist.

        Raises:
            ToolNotFoundError: If the tool is not in the catalog
            NetworkError: If the catalog cannot be resolved at all
        """
        descriptor = await self.resolver.get_tool(tool_id)
        report = await self.validator.evaluate(descriptor)
        return descriptor, report

    async def run_tool(
        self,
        request: ExecutionRequest,
        sink: OutputSink | None = None,
        max_duration: float | None = None,
    ) -> ExecutionHandle:
        """Pre-flight a tool and start it if nothing blocks."""
        descriptor, report = await self.preflight(request.tool_id)
        return await self.host.start(
            request,
            descriptor,
            sink or NullSink(),
            report=report,
            max_duration=max_duration,
        )

    async def shutdown(self) -> None:
        await self.host.shutdown()
