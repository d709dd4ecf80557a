"""Durable local cache of downloaded artifacts.

Files live under ``<root>/artifacts/<logical path>``; each entry has a JSON
sidecar under ``<root>/.meta`` so metadata survives restarts. Every write
goes through a temporary file in ``<root>/.tmp`` followed by ``os.replace``
so a reader never observes a partially written artifact.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from pydantic import ValidationError

from opskit.cache.source import ArtifactSource
from opskit.cache.verifier import (
    checksum_bytes,
    checksums_match,
    compute_checksum,
    normalize_checksum,
    verify,
)
from opskit.exceptions import IntegrityError
from opskit.models.cache import CacheEntry, CacheStatus

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=60)


def normalize_key(artifact_path: str) -> str:
    """Normalize a logical artifact path into a cache key.

    Raises:
        ValueError: If the path is empty, absolute or escapes the cache root
    """
    raw = artifact_path.replace("\\", "/").strip()
    if not raw or raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise ValueError(f"Invalid artifact path: {artifact_path!r}")

    parts = [p for p in PurePosixPath(raw).parts if p not in ("", ".")]
    if not parts or ".." in parts:
        raise ValueError(f"Invalid artifact path: {artifact_path!r}")
    return "/".join(parts)


class ArtifactCache:
    """Local artifact store with TTL, integrity checks and single-flight downloads.

    This is the only component that writes into the cache directory.
    """

    def __init__(
        self,
        root: Path,
        source: ArtifactSource,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the cache and load persisted entries.

        Args:
            root: Cache directory
            source: Where missing artifacts are downloaded from
            ttl: How long a downloaded artifact stays fresh
            clock: Returns the current UTC time (injectable for tests)
        """
        self._root = Path(root)
        self._files_dir = self._root / "artifacts"
        self._meta_dir = self._root / ".meta"
        self._tmp_dir = self._root / ".tmp"
        self._source = source
        self._ttl = ttl
        self._clock = clock or (lambda: datetime.now(UTC))

        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[tuple[str, str | None], asyncio.Task[Path]] = {}
        self._pinned: set[str] = set()

        for directory in (self._files_dir, self._meta_dir, self._tmp_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self._discard_partial_downloads()
        self._load_entries()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, artifact_path: str, expected_checksum: str | None = None) -> Path:
        """Return a local path for the artifact, downloading it if needed.

        A fresh, verified entry whose bytes still match is returned without
        network I/O. Concurrent calls for the same artifact and checksum share
        one download.

        Args:
            artifact_path: Logical path in the catalog
            expected_checksum: SHA-256 the content must match (None trusts
                whatever is downloaded and records its digest)

        Returns:
            Path to the verified local file

        Raises:
            NetworkError: If the artifact cannot be downloaded
            IntegrityError: If the downloaded content does not match
            ValueError: If ``artifact_path`` is not a valid logical path
        """
        key = normalize_key(artifact_path)

        entry = self._entries.get(key)
        if entry is not None and await self._is_servable(entry, expected_checksum):
            logger.debug(f"Cache hit: {key}")
            return entry.local_path

        flight_key = (
            key,
            normalize_checksum(expected_checksum) if expected_checksum else None,
        )
        task = self._inflight.get(flight_key)
        if task is None:
            logger.debug(f"Cache miss: {key}, starting download")
            task = asyncio.create_task(self._download(key, expected_checksum))
            self._inflight[flight_key] = task
            task.add_done_callback(lambda t: self._finish_flight(flight_key, t))
        else:
            logger.debug(f"Joining in-flight download: {key}")

        # Shielded so one caller's cancellation does not abort the shared download
        return await asyncio.shield(task)

    def _finish_flight(self, flight_key: tuple[str, str | None], task: asyncio.Task) -> None:
        if self._inflight.get(flight_key) is task:
            del self._inflight[flight_key]
        if not task.cancelled():
            # Mark retrieved; every waiting caller re-raises it themselves
            task.exception()

    async def _is_servable(self, entry: CacheEntry, expected_checksum: str | None) -> bool:
        if expected_checksum and not checksums_match(entry.checksum, expected_checksum):
            logger.info(f"Catalog checksum changed for {entry.key}, refreshing")
            return False

        if not entry.verified:
            self._evict(entry.key)
            return False

        if entry.is_expired(self._clock()):
            logger.info(f"Cache entry expired: {entry.key}")
            return False

        if not await asyncio.to_thread(verify, entry.local_path, entry.checksum):
            logger.warning(f"Cached artifact failed verification, evicting: {entry.key}")
            self._evict(entry.key)
            return False

        return True

    async def _download(self, key: str, expected_checksum: str | None) -> Path:
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir, prefix="dl-", suffix=".part")
        os.close(fd)
        tmp_path = Path(tmp_name)

        try:
            await self._source.download(key, tmp_path)

            if expected_checksum:
                if not await asyncio.to_thread(verify, tmp_path, expected_checksum):
                    self._evict(key)
                    raise IntegrityError(
                        key,
                        f"Downloaded {key} does not match checksum "
                        f"{normalize_checksum(expected_checksum)[:12]}",
                    )
                checksum = normalize_checksum(expected_checksum)
            else:
                try:
                    checksum = await asyncio.to_thread(compute_checksum, tmp_path)
                except OSError as e:
                    self._evict(key)
                    raise IntegrityError(key, f"Could not hash {key}: {e}") from e

            entry = self._commit(key, tmp_path, checksum)
            logger.info(f"Cached {key} ({entry.size_bytes} bytes, hash: {checksum[:12]})")
            return entry.local_path
        finally:
            tmp_path.unlink(missing_ok=True)

    def _commit(self, key: str, verified_file: Path, checksum: str) -> CacheEntry:
        """Atomically move a verified file into place and record its entry."""
        local_path = self._local_path(key)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(verified_file, local_path)

        now = self._clock()
        entry = CacheEntry(
            key=key,
            local_path=local_path,
            downloaded_at=now,
            expires_at=now + self._ttl,
            size_bytes=local_path.stat().st_size,
            checksum=checksum,
            verified=True,
        )
        self._write_sidecar(entry)
        self._entries[key] = entry
        return entry

    # ------------------------------------------------------------------
    # Direct access (used for the catalog manifest)
    # ------------------------------------------------------------------

    def store(self, artifact_path: str, data: bytes) -> CacheEntry:
        """Atomically cache content that was fetched by the caller."""
        key = normalize_key(artifact_path)
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir, prefix="st-", suffix=".part")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            entry = self._commit(key, tmp_path, checksum_bytes(data))
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.debug(f"Stored {key} ({entry.size_bytes} bytes)")
        return entry

    def read(self, artifact_path: str) -> bytes | None:
        """Read a cached artifact regardless of expiry.

        Returns None when there is no entry or its content no longer
        matches the recorded checksum (the entry is then evicted).
        """
        key = normalize_key(artifact_path)
        entry = self._entries.get(key)
        if entry is None:
            return None

        try:
            data = entry.local_path.read_bytes()
        except OSError as e:
            logger.warning(f"Cached file unreadable, evicting {key}: {e}")
            self._evict(key)
            return None

        if not checksums_match(checksum_bytes(data), entry.checksum):
            logger.warning(f"Cached file corrupted, evicting {key}")
            self._evict(key)
            return None
        return data

    def get_entry(self, artifact_path: str) -> CacheEntry | None:
        return self._entries.get(normalize_key(artifact_path))

    def status(self, artifact_path: str) -> CacheStatus:
        """Report whether an artifact is missing, fresh or stale."""
        entry = self.get_entry(artifact_path)
        if entry is None:
            return CacheStatus.MISSING
        if entry.is_expired(self._clock()):
            return CacheStatus.STALE
        return CacheStatus.FRESH

    def entries(self) -> list[CacheEntry]:
        return sorted(self._entries.values(), key=lambda e: e.key)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def pin(self, artifact_path: str) -> None:
        """Keep an entry through ``prune`` once expired.

        Pinned entries are still refreshed by ``resolve`` and removed by
        ``invalidate`` and ``clear``.
        """
        self._pinned.add(normalize_key(artifact_path))

    def invalidate(self, artifact_path: str) -> bool:
        """Drop one entry and its file. Returns True if it existed."""
        key = normalize_key(artifact_path)
        if key not in self._entries:
            return False
        self._evict(key)
        logger.info(f"Invalidated cache entry: {key}")
        return True

    def clear(self) -> int:
        """Remove every entry, backing file and stray file.

        Temporary files of downloads still in flight are left alone.

        Returns:
            Number of entries removed
        """
        count = len(self._entries)
        self._entries.clear()

        for directory in (self._files_dir, self._meta_dir):
            shutil.rmtree(directory, ignore_errors=True)
            directory.mkdir(parents=True, exist_ok=True)

        logger.info(f"Cache cleared ({count} entries)")
        return count

    def prune(self) -> int:
        """Remove expired, unpinned entries. They are re-downloaded on next resolve.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if entry.is_expired(now) and key not in self._pinned
        ]
        for key in expired:
            self._evict(key)

        if expired:
            logger.info(f"Pruned {len(expired)} expired cache entries")
        return len(expired)

    def size(self) -> int:
        """Total bytes held by all entries."""
        return sum(entry.size_bytes for entry in self._entries.values())

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        now = self._clock()
        return {
            "root": str(self._root),
            "total_entries": len(self._entries),
            "total_bytes": self.size(),
            "expired_entries": sum(1 for e in self._entries.values() if e.is_expired(now)),
            "downloads_in_flight": len(self._inflight),
            "ttl_minutes": int(self._ttl.total_seconds() // 60),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _local_path(self, key: str) -> Path:
        return self._files_dir.joinpath(*key.split("/"))

    def _sidecar_path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._meta_dir / f"{digest}.json"

    def _write_sidecar(self, entry: CacheEntry) -> None:
        sidecar = self._sidecar_path(entry.key)
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir, prefix="meta-", suffix=".part")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(entry.model_dump_json())
            os.replace(tmp_path, sidecar)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _evict(self, key: str) -> None:
        self._entries.pop(key, None)
        for path in (self._local_path(key), self._sidecar_path(key)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to delete cache file {path}: {e}")

    def _load_entries(self) -> None:
        for sidecar in self._meta_dir.glob("*.json"):
            try:
                entry = CacheEntry.model_validate_json(sidecar.read_text(encoding="utf-8"))
                key = normalize_key(entry.key)
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"Discarding unreadable cache metadata {sidecar.name}: {e}")
                sidecar.unlink(missing_ok=True)
                continue

            # The cache root may have moved since the entry was written
            local_path = self._local_path(key)
            if not local_path.is_file():
                logger.info(f"Cached file missing for {key}, dropping entry")
                sidecar.unlink(missing_ok=True)
                continue

            self._entries[key] = entry.model_copy(update={"local_path": local_path})

        if self._entries:
            logger.info(f"Loaded {len(self._entries)} cache entries from {self._root}")

    def _discard_partial_downloads(self) -> None:
        for leftover in self._tmp_dir.glob("*.part"):
            leftover.unlink(missing_ok=True)
