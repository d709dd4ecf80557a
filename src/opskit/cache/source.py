"""HTTP access to the remote catalog and its artifacts."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

from opskit.exceptions import NetworkError

logger = logging.getLogger(__name__)


@runtime_checkable
class ArtifactSource(Protocol):
    """Where the cache and resolver fetch remote content from."""

    async def fetch_bytes(self, artifact_path: str) -> bytes: ...

    async def download(self, artifact_path: str, destination: Path) -> int: ...


class HttpArtifactSource:
    """Fetches catalog documents and artifacts over HTTPS.

    Artifacts are addressed relative to ``base_url``; a fresh
    ``httpx.AsyncClient`` is used per operation.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        user_agent: str = "OpsKit",
    ) -> None:
        """Initialize the source.

        Args:
            base_url: Root URL artifact paths are resolved against
            timeout: Request timeout in seconds
            user_agent: User-Agent header sent with every request
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {"User-Agent": user_agent}

    def url_for(self, artifact_path: str) -> str:
        """Build the absolute URL for a logical artifact path."""
        return f"{self._base_url}/{artifact_path.lstrip('/')}"

    async def fetch_bytes(self, artifact_path: str) -> bytes:
        """Fetch a whole document into memory.

        Raises:
            NetworkError: On connection failure, timeout or non-2xx status
        """
        url = self.url_for(artifact_path)
        start_time = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers,
                follow_redirects=True,
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                content = resp.content
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"HTTP {e.response.status_code} fetching {artifact_path}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout fetching {artifact_path}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Connection error fetching {artifact_path}: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)
        logger.debug(f"Fetched {artifact_path} ({len(content)} bytes, {latency_ms}ms)")
        return content

    async def download(self, artifact_path: str, destination: Path) -> int:
        """Stream an artifact to ``destination``.

        Returns:
            Number of bytes written

        Raises:
            NetworkError: On connection failure, timeout or non-2xx status
        """
        url = self.url_for(artifact_path)
        written = 0
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    with open(destination, "wb") as f:
                        async for chunk in resp.aiter_bytes():
                            f.write(chunk)
                            written += len(chunk)
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"HTTP {e.response.status_code} downloading {artifact_path}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout downloading {artifact_path}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Connection error downloading {artifact_path}: {e}") from e

        logger.info(f"Downloaded {artifact_path} ({written} bytes)")
        return written
