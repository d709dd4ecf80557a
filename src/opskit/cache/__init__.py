"""Artifact caching: integrity verification, remote source and local store."""

from opskit.cache.artifact_cache import ArtifactCache, normalize_key
from opskit.cache.source import ArtifactSource, HttpArtifactSource
from opskit.cache.verifier import compute_checksum, verify

__all__ = [
    "ArtifactCache",
    "ArtifactSource",
    "HttpArtifactSource",
    "compute_checksum",
    "normalize_key",
    "verify",
]
