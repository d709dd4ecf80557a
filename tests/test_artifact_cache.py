"""Tests for the durable artifact cache."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from conftest import FakeSource, sha256
from opskit.cache.artifact_cache import ArtifactCache, normalize_key
from opskit.exceptions import IntegrityError, NetworkError
from opskit.models.cache import CacheStatus

SCRIPT = b"Write-Host 'Cleaning temp files'\n"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clocked_cache(tmp_path, source, clock):
    return ArtifactCache(root=tmp_path / "cache", source=source, clock=clock)


class TestNormalizeKey:
    """Tests for logical path validation."""

    def test_normalizes_separators(self):
        assert normalize_key("tools\\disk\\./cleanup.ps1") == "tools/disk/cleanup.ps1"

    @pytest.mark.parametrize("bad", ["", "   ", "/etc/passwd", "C:/Windows/x.ps1", "../x.ps1", "a/../../x"])
    def test_rejects_escaping_paths(self, bad):
        with pytest.raises(ValueError):
            normalize_key(bad)


class TestResolve:
    """Tests for resolving artifacts to local paths."""

    @pytest.mark.asyncio
    async def test_fresh_install_downloads_and_verifies(self, cache, source):
        checksum = source.add("tools/clean.ps1", SCRIPT)

        path = await cache.resolve("tools/clean.ps1", checksum)

        assert path.read_bytes() == SCRIPT
        entry = cache.get_entry("tools/clean.ps1")
        assert entry.verified is True
        assert entry.checksum == checksum
        assert cache.status("tools/clean.ps1") == CacheStatus.FRESH

    @pytest.mark.asyncio
    async def test_fresh_hit_needs_no_network(self, cache, source):
        checksum = source.add("tools/clean.ps1", SCRIPT)

        first = await cache.resolve("tools/clean.ps1", checksum)
        second = await cache.resolve("tools/clean.ps1", checksum)

        assert first == second
        assert source.count("tools/clean.ps1") == 1

    @pytest.mark.asyncio
    async def test_prefixed_uppercase_checksum_accepted(self, cache, source):
        checksum = source.add("tools/clean.ps1", SCRIPT)

        path = await cache.resolve("tools/clean.ps1", f"sha256:{checksum.upper()}")

        assert path.read_bytes() == SCRIPT

    @pytest.mark.asyncio
    async def test_mismatched_download_is_not_cached(self, cache, source):
        source.add("tools/clean.ps1", SCRIPT)

        with pytest.raises(IntegrityError) as exc_info:
            await cache.resolve("tools/clean.ps1", sha256(b"something else"))

        assert exc_info.value.artifact_path == "tools/clean.ps1"
        assert exc_info.value.remediation
        assert cache.get_entry("tools/clean.ps1") is None
        assert not (cache.root / "artifacts" / "tools" / "clean.ps1").exists()
        assert list((cache.root / ".tmp").iterdir()) == []

    @pytest.mark.asyncio
    async def test_tampered_file_is_redownloaded(self, cache, source):
        checksum = source.add("tools/clean.ps1", SCRIPT)
        path = await cache.resolve("tools/clean.ps1", checksum)

        path.write_bytes(b"Remove-Item C:\\ -Recurse")
        again = await cache.resolve("tools/clean.ps1", checksum)

        assert again.read_bytes() == SCRIPT
        assert source.count("tools/clean.ps1") == 2

    @pytest.mark.asyncio
    async def test_deleted_file_is_redownloaded(self, cache, source):
        checksum = source.add("tools/clean.ps1", SCRIPT)
        path = await cache.resolve("tools/clean.ps1", checksum)

        path.unlink()
        again = await cache.resolve("tools/clean.ps1", checksum)

        assert again.read_bytes() == SCRIPT
        assert source.count("tools/clean.ps1") == 2

    @pytest.mark.asyncio
    async def test_stale_entry_is_redownloaded(self, clocked_cache, source, clock):
        checksum = source.add("tools/clean.ps1", SCRIPT)
        await clocked_cache.resolve("tools/clean.ps1", checksum)

        clock.advance(minutes=61)
        assert clocked_cache.status("tools/clean.ps1") == CacheStatus.STALE

        await clocked_cache.resolve("tools/clean.ps1", checksum)

        assert source.count("tools/clean.ps1") == 2
        assert clocked_cache.status("tools/clean.ps1") == CacheStatus.FRESH

    @pytest.mark.asyncio
    async def test_changed_catalog_checksum_triggers_download(self, cache, source):
        old = source.add("tools/clean.ps1", SCRIPT)
        await cache.resolve("tools/clean.ps1", old)

        new = source.add("tools/clean.ps1", SCRIPT + b"# v2\n")
        path = await cache.resolve("tools/clean.ps1", new)

        assert path.read_bytes().endswith(b"# v2\n")
        assert cache.get_entry("tools/clean.ps1").checksum == new

    @pytest.mark.asyncio
    async def test_without_checksum_records_digest(self, cache, source):
        source.add("modules/common.psm1", b"function Get-Thing {}")

        await cache.resolve("modules/common.psm1")

        assert cache.get_entry("modules/common.psm1").checksum == sha256(b"function Get-Thing {}")

    @pytest.mark.asyncio
    async def test_network_error_propagates(self, cache, source):
        with pytest.raises(NetworkError) as exc_info:
            await cache.resolve("tools/missing.ps1", "0" * 64)

        assert exc_info.value.status_code == 404
        assert cache.get_entry("tools/missing.ps1") is None


class TestSingleFlight:
    """Tests for de-duplicated concurrent downloads."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_download(self, tmp_path):
        source = FakeSource(delay=0.05)
        checksum = source.add("tools/clean.ps1", SCRIPT)
        cache = ArtifactCache(root=tmp_path / "cache", source=source)

        paths = await asyncio.gather(
            *(cache.resolve("tools/clean.ps1", checksum) for _ in range(8))
        )

        assert len(set(paths)) == 1
        assert source.count("tools/clean.ps1") == 1

    @pytest.mark.asyncio
    async def test_all_waiters_see_the_failure(self, tmp_path):
        source = FakeSource(delay=0.05)
        source.add("tools/clean.ps1", SCRIPT)
        cache = ArtifactCache(root=tmp_path / "cache", source=source)

        results = await asyncio.gather(
            *(cache.resolve("tools/clean.ps1", "0" * 64) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, IntegrityError) for r in results)
        assert source.count("tools/clean.ps1") == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_abort_download(self, tmp_path):
        source = FakeSource(delay=0.1)
        checksum = source.add("tools/clean.ps1", SCRIPT)
        cache = ArtifactCache(root=tmp_path / "cache", source=source)

        impatient = asyncio.create_task(cache.resolve("tools/clean.ps1", checksum))
        patient = asyncio.create_task(cache.resolve("tools/clean.ps1", checksum))
        await asyncio.sleep(0.01)
        impatient.cancel()

        path = await patient

        assert path.read_bytes() == SCRIPT
        assert source.count("tools/clean.ps1") == 1


class TestPersistence:
    """Tests for metadata surviving a restart."""

    @pytest.mark.asyncio
    async def test_entries_survive_reinstantiation(self, tmp_path, source):
        checksum = source.add("tools/clean.ps1", SCRIPT)
        first = ArtifactCache(root=tmp_path / "cache", source=source)
        await first.resolve("tools/clean.ps1", checksum)

        second = ArtifactCache(root=tmp_path / "cache", source=source)
        path = await second.resolve("tools/clean.ps1", checksum)

        assert path.read_bytes() == SCRIPT
        assert source.count("tools/clean.ps1") == 1

    def test_partial_downloads_discarded_on_start(self, tmp_path, source):
        tmp_dir = tmp_path / "cache" / ".tmp"
        tmp_dir.mkdir(parents=True)
        (tmp_dir / "dl-abc.part").write_bytes(b"half a scri")

        ArtifactCache(root=tmp_path / "cache", source=source)

        assert list(tmp_dir.iterdir()) == []

    def test_unreadable_sidecar_dropped(self, tmp_path, source):
        meta_dir = tmp_path / "cache" / ".meta"
        meta_dir.mkdir(parents=True)
        (meta_dir / "broken.json").write_text("{not json")

        cache = ArtifactCache(root=tmp_path / "cache", source=source)

        assert cache.entries() == []
        assert not (meta_dir / "broken.json").exists()


class TestStoreAndRead:
    """Tests for direct content storage (used for the manifest)."""

    def test_store_then_read(self, cache):
        entry = cache.store("manifest.json", b'{"tools": []}')

        assert entry.verified is True
        assert cache.read("manifest.json") == b'{"tools": []}'

    def test_read_missing(self, cache):
        assert cache.read("manifest.json") is None

    def test_read_corrupted_evicts(self, cache):
        entry = cache.store("manifest.json", b'{"tools": []}')
        entry.local_path.write_bytes(b"garbage")

        assert cache.read("manifest.json") is None
        assert cache.get_entry("manifest.json") is None


class TestMaintenance:
    """Tests for invalidate, clear, prune and size."""

    def test_invalidate(self, cache):
        entry = cache.store("tools/a.ps1", b"a")

        assert cache.invalidate("tools/a.ps1") is True
        assert cache.invalidate("tools/a.ps1") is False
        assert not entry.local_path.exists()

    def test_clear(self, cache):
        cache.store("tools/a.ps1", b"a")
        cache.store("tools/b.ps1", b"bb")

        assert cache.clear() == 2
        assert cache.entries() == []
        assert cache.size() == 0
        assert list((cache.root / "artifacts").iterdir()) == []

    def test_prune_removes_only_expired(self, clocked_cache, clock):
        clocked_cache.store("tools/old.ps1", b"old")
        clock.advance(minutes=45)
        clocked_cache.store("tools/new.ps1", b"new")
        clock.advance(minutes=30)

        assert clocked_cache.prune() == 1
        assert [e.key for e in clocked_cache.entries()] == ["tools/new.ps1"]

    def test_prune_keeps_pinned_entries(self, clocked_cache, clock):
        clocked_cache.store("manifest.json", b"{}")
        clocked_cache.store("tools/old.ps1", b"old")
        clocked_cache.pin("manifest.json")
        clock.advance(hours=2)

        assert clocked_cache.prune() == 1
        assert [e.key for e in clocked_cache.entries()] == ["manifest.json"]
        assert clocked_cache.status("manifest.json") == CacheStatus.STALE

    def test_size_and_stats(self, cache):
        cache.store("tools/a.ps1", b"abc")
        cache.store("tools/b.ps1", b"de")

        assert cache.size() == 5
        stats = cache.stats()
        assert stats["total_entries"] == 2
        assert stats["total_bytes"] == 5
        assert stats["ttl_minutes"] == 60
