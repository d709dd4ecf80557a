"""Global test configuration for OpsKit."""

import asyncio
import hashlib
import json
import os
import sys
from pathlib import Path

import pytest

from opskit.cache.artifact_cache import ArtifactCache
from opskit.exceptions import NetworkError
from opskit.manager.ledger import ExecutionLedger
from opskit.models.catalog import ModuleRef, ToolDescriptor


@pytest.fixture(autouse=True, scope="session")
def _set_test_env_vars(tmp_path_factory):
    """Point storage at a temporary directory for Settings validation.

    Only sets values that aren't already present, so real env vars take
    precedence.
    """
    home = tmp_path_factory.mktemp("opskit-home")
    defaults = {
        "OPSKIT_CATALOG_URL": "https://catalog.test/opskit",
        "OPSKIT_CACHE_DIR": str(home / "cache"),
        "OPSKIT_HISTORY_PATH": str(home / "history.jsonl"),
    }
    originals = {}
    for key, value in defaults.items():
        if key not in os.environ:
            os.environ[key] = value
            originals[key] = None
        else:
            originals[key] = os.environ[key]

    # Clear the lru_cache on get_settings so it picks up the new env vars
    from opskit.config import get_settings
    get_settings.cache_clear()

    yield

    for key, original in originals.items():
        if original is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original
    get_settings.cache_clear()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FakeSource:
    """In-memory artifact source that counts every fetch."""

    def __init__(self, files: dict[str, bytes] | None = None, delay: float = 0.0) -> None:
        self.files = dict(files or {})
        self.delay = delay
        self.offline = False
        self.calls: list[str] = []

    def add(self, path: str, data: bytes) -> str:
        self.files[path] = data
        return sha256(data)

    def count(self, path: str) -> int:
        return self.calls.count(path)

    async def fetch_bytes(self, artifact_path: str) -> bytes:
        self.calls.append(artifact_path)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.offline:
            raise NetworkError(f"Cannot reach catalog for {artifact_path}")
        if artifact_path not in self.files:
            raise NetworkError(f"HTTP 404 fetching {artifact_path}", status_code=404)
        return self.files[artifact_path]

    async def download(self, artifact_path: str, destination: Path) -> int:
        data = await self.fetch_bytes(artifact_path)
        destination.write_bytes(data)
        return len(data)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def cache(tmp_path, source):
    return ArtifactCache(root=tmp_path / "cache", source=source)


@pytest.fixture
def ledger(tmp_path):
    return ExecutionLedger(tmp_path / "history.jsonl")


@pytest.fixture
def make_script_tool(source):
    """Publish a Python script on the fake source and describe it as a tool."""

    def _make(
        body: str,
        tool_id: str = "demo-tool",
        dependencies: tuple[ModuleRef, ...] = (),
        **kwargs,
    ) -> ToolDescriptor:
        path = f"tools/{tool_id}.py"
        checksum = source.add(path, body.encode("utf-8"))
        return ToolDescriptor(
            id=tool_id,
            name=tool_id.replace("-", " ").title(),
            category="testing",
            artifact_path=path,
            checksum=checksum,
            dependencies=dependencies,
            **kwargs,
        )

    return _make


@pytest.fixture
def manifest_bytes():
    """Build a camelCase manifest document like the remote catalog serves."""

    def _make(
        tools: list[dict] | None = None,
        modules: list[dict] | None = None,
        launcher_version: str | None = "2.0.0",
        version: str = "2024.06.01",
    ) -> bytes:
        document = {
            "version": version,
            "launcherVersion": launcher_version,
            "categories": [{"id": "system", "name": "System"}],
            "tools": tools or [],
            "modules": modules or [],
        }
        return json.dumps(document).encode("utf-8")

    return _make


@pytest.fixture
def python_exe():
    return sys.executable
