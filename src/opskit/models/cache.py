"""Artifact cache models."""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict


class CacheStatus(str, Enum):
    """Freshness of a cached artifact."""

    MISSING = "missing"
    FRESH = "fresh"
    STALE = "stale"  # Present but past its expiry


class CacheEntry(BaseModel):
    """Metadata for one cached artifact.

    Persisted as a JSON sidecar so it survives process restart. An entry
    with ``verified`` set is only ever written after the file at
    ``local_path`` was hashed and matched ``checksum``.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    local_path: Path
    downloaded_at: datetime
    expires_at: datetime
    size_bytes: int
    checksum: str
    verified: bool = False

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the entry is past its expiry time."""
        return (now or datetime.now(UTC)) >= self.expires_at

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "key": self.key,
            "local_path": str(self.local_path),
            "downloaded_at": self.downloaded_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "verified": self.verified,
            "expired": self.is_expired(),
        }
