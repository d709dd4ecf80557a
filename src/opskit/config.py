"""Configuration and environment loading for OpsKit."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from opskit import __version__

_DEFAULT_HOME = Path.home() / ".opskit"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="OPSKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Remote catalog
    catalog_url: str = "https://raw.githubusercontent.com/opskit/catalog/main"
    manifest_path: str = "manifest.json"
    manifest_cache_key: str = "manifest.json"
    launcher_version: str = __version__
    http_timeout: float = 30.0

    # Local storage
    cache_dir: Path = _DEFAULT_HOME / "cache"
    history_path: Path = _DEFAULT_HOME / "history.jsonl"
    cache_ttl_minutes: int = 60

    # Execution host
    grace_period_seconds: float = 5.0
    drain_timeout_seconds: float = 2.0
    default_max_duration_seconds: float | None = None
    stream_limit_bytes: int = 1024 * 1024
    transcript_limit_chars: int = 200_000
    # Suffix -> command override, e.g. {".ps1": ["powershell", "-File"]}
    interpreters: dict[str, list[str]] = {}

    # Pre-flight
    probe_timeout_seconds: float = 5.0
    external_resource: str | None = None
    external_resource_default_port: int = 1433

    # Server
    host: str = "127.0.0.1"
    port: int = 8765
    debug: bool = False

    # Background maintenance
    maintenance_enabled: bool = False
    catalog_refresh_interval: int = 900  # Seconds between catalog refreshes
    cache_prune_interval: int = 300  # Seconds between cache prunes


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
