"""Catalog resolver - fetches the remote manifest and builds tool descriptors.

The raw manifest is kept in the artifact cache under a reserved key, so
resolutions within the cache TTL need no network and an unreachable
catalog can fall back to the last good copy.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from pydantic import ValidationError

from opskit.cache.artifact_cache import ArtifactCache
from opskit.cache.source import ArtifactSource
from opskit.exceptions import CatalogError, NetworkError, ToolNotFoundError
from opskit.models.cache import CacheStatus
from opskit.models.catalog import (
    Catalog,
    Category,
    LauncherUpdate,
    Manifest,
    ModuleRef,
    ToolDescriptor,
)
from opskit.versioning import is_newer

logger = logging.getLogger(__name__)

UpdateListener = Callable[[LauncherUpdate], Any]


class CatalogResolver:
    """Resolves the versioned catalog of runnable tools."""

    def __init__(
        self,
        source: ArtifactSource,
        cache: ArtifactCache,
        launcher_version: str,
        manifest_path: str = "manifest.json",
        cache_key: str = "manifest.json",
    ) -> None:
        self._source = source
        self._cache = cache
        self._launcher_version = launcher_version
        self._manifest_path = manifest_path
        self._cache_key = cache_key
        # Offline fallback; must survive prune
        self._cache.pin(cache_key)

        self._catalog: Catalog | None = None
        self._catalog_checksum: str | None = None
        self._update: LauncherUpdate | None = None
        self._listeners: list[UpdateListener] = []
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Catalog | None:
        """The most recently resolved catalog, if any."""
        return self._catalog

    @property
    def update_available(self) -> LauncherUpdate | None:
        """Set when the manifest advertises a newer launcher."""
        return self._update

    def add_update_listener(self, listener: UpdateListener) -> None:
        """Register a callback (sync or async) for launcher update signals."""
        self._listeners.append(listener)

    async def resolve(self, force_refresh: bool = False) -> Catalog:
        """Resolve the catalog.

        Args:
            force_refresh: Skip the cached manifest and fetch from the remote

        Returns:
            The resolved catalog

        Raises:
            NetworkError: If the remote is unreachable and no cached manifest exists
            CatalogError: If the fetched manifest is malformed
        """
        async with self._lock:
            if not force_refresh:
                cached = self._from_fresh_cache()
                if cached is not None:
                    return await self._publish(cached)

            try:
                raw = await self._source.fetch_bytes(self._manifest_path)
            except NetworkError as e:
                return await self._publish(self._offline_fallback(e))

            catalog = self._build(raw)
            entry = self._cache.store(self._cache_key, raw)
            self._catalog_checksum = entry.checksum

            logger.info(
                f"Catalog loaded: {catalog.version or 'unversioned'} with "
                f"{len(catalog.tools)} tools, {len(catalog.modules)} modules"
            )
            return await self._publish(catalog)

    async def get_tool(self, tool_id: str) -> ToolDescriptor:
        """Look up a tool, resolving the catalog first if needed.

        Raises:
            ToolNotFoundError: If the tool is not in the catalog
        """
        catalog = self._catalog or await self.resolve()
        tool = catalog.get_tool(tool_id)
        if tool is None:
            raise ToolNotFoundError(tool_id)
        return tool

    def _from_fresh_cache(self) -> Catalog | None:
        if self._cache.status(self._cache_key) != CacheStatus.FRESH:
            return None

        entry = self._cache.get_entry(self._cache_key)
        if (
            entry is not None
            and self._catalog is not None
            and entry.checksum == self._catalog_checksum
        ):
            return self._catalog

        raw = self._cache.read(self._cache_key)
        if raw is None:
            return None

        try:
            catalog = self._build(raw, from_cache=True)
        except CatalogError as e:
            logger.warning(f"Cached manifest unusable, refetching: {e}")
            self._cache.invalidate(self._cache_key)
            return None

        self._catalog_checksum = entry.checksum if entry else None
        logger.debug("Catalog served from cached manifest")
        return catalog

    def _offline_fallback(self, error: NetworkError) -> Catalog:
        logger.warning(f"Failed to fetch manifest, attempting local cache fallback: {error}")

        raw = self._cache.read(self._cache_key)
        if raw is None:
            logger.error("No cached manifest available")
            raise error

        try:
            catalog = self._build(raw, from_cache=True, offline=True)
        except CatalogError:
            logger.error("Cached manifest is malformed; cannot serve offline")
            raise error

        logger.info("Loaded catalog from local cache (offline mode)")
        return catalog

    def _build(self, raw: bytes, from_cache: bool = False, offline: bool = False) -> Catalog:
        try:
            manifest = Manifest.model_validate_json(raw)
        except ValidationError as e:
            raise CatalogError(f"Malformed manifest: {e.error_count()} validation errors") from e

        modules = [
            ModuleRef(id=m.id, artifact_path=m.artifact_path, checksum=m.checksum)
            for m in manifest.modules
        ]
        by_reference: dict[str, ModuleRef] = {}
        for module in modules:
            by_reference[module.artifact_path] = module
            by_reference[module.id] = module

        tools: list[ToolDescriptor] = []
        for record in manifest.tools:
            missing = [d for d in record.dependencies if d not in by_reference]
            if missing:
                logger.warning(f"Skipping tool {record.id}: unknown dependencies {missing}")
                continue

            tools.append(ToolDescriptor(
                id=record.id,
                name=record.name,
                category=record.category,
                description=record.description,
                version=record.version,
                artifact_path=record.artifact_path,
                checksum=record.checksum,
                dependencies=tuple(by_reference[d] for d in record.dependencies),
                requires_elevated_privilege=record.requires_elevated_privilege,
                requires_external_resource=record.requires_external_resource,
                external_resource=record.external_resource,
                parameters=tuple(record.parameters),
            ))

        return Catalog(
            version=manifest.version,
            launcher_version=manifest.launcher_version,
            categories=tuple(
                Category(id=c.id, name=c.name, description=c.description)
                for c in manifest.categories
            ),
            tools=tuple(tools),
            modules=tuple(modules),
            from_cache=from_cache,
            offline=offline,
        )

    async def _publish(self, catalog: Catalog) -> Catalog:
        self._catalog = catalog
        await self._check_launcher_version(catalog)
        return catalog

    async def _check_launcher_version(self, catalog: Catalog) -> None:
        latest = catalog.launcher_version
        if not latest:
            return

        try:
            newer = is_newer(latest, self._launcher_version)
        except ValueError as e:
            logger.warning(f"Cannot compare launcher versions: {e}")
            return

        if not newer:
            self._update = None
            return

        update = LauncherUpdate(current_version=self._launcher_version, latest_version=latest)
        if update == self._update:
            return

        self._update = update
        logger.info(f"Launcher update available: {self._launcher_version} -> {latest}")

        for listener in list(self._listeners):
            try:
                outcome = listener(update)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Launcher update listener failed")
