"""SHA-256 integrity verification for cached artifacts."""

import hashlib
import hmac
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_ALGORITHM_PREFIX = "sha256:"


def normalize_checksum(checksum: str) -> str:
    """Normalize ``sha256:<HEX>`` or ``<HEX>`` to lowercase bare hex."""
    value = checksum.strip().lower()
    if value.startswith(_ALGORITHM_PREFIX):
        value = value[len(_ALGORITHM_PREFIX):]
    return value


def checksum_bytes(data: bytes) -> str:
    """Hex SHA-256 digest of an in-memory payload."""
    return hashlib.sha256(data).hexdigest()


def compute_checksum(path: Path) -> str:
    """Stream a file once and return its hex SHA-256 digest.

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def checksums_match(actual: str, expected: str) -> bool:
    """Exact, full-length comparison of two checksums."""
    return hmac.compare_digest(
        normalize_checksum(actual).encode(),
        normalize_checksum(expected).encode(),
    )


def verify(path: Path, expected_checksum: str) -> bool:
    """Check that the file at ``path`` hashes to ``expected_checksum``.

    A missing file or any read error is a verification failure.
    """
    try:
        size = path.stat().st_size
        actual = compute_checksum(path)
        if path.stat().st_size != size:
            logger.warning(f"File changed size while verifying: {path}")
            return False
    except OSError as e:
        logger.warning(f"Integrity check could not read {path}: {e}")
        return False

    if not checksums_match(actual, expected_checksum):
        logger.warning(
            f"Integrity check failed for {path}: "
            f"expected={normalize_checksum(expected_checksum)[:12]}, computed={actual[:12]}"
        )
        return False

    logger.debug(f"Integrity check passed for {path}")
    return True
