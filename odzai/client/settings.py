"""Client configuration loaded from ODZAI_* environment variables."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class OdzaiSettings(BaseSettings):
    """Odzai client settings.

    All fields are read from environment variables with the ``ODZAI_`` prefix.
    For example, ``ODZAI_LOG_LEVEL=DEBUG`` maps to ``log_level``.
    """

    model_config = SettingsConfigDict(
        env_prefix="ODZAI_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_file: str | None = None
    """Optional file sink; always written at DEBUG."""

    log_rotation: str = "10 MB"
    log_retention: int = 3
    """Number of rotated log files to keep."""

    # -- Backends --------------------------------------------------------------
    api_url: str = "http://localhost:3000"
    """Primary data API (workspace metadata, preferences, domain collections)."""

    engine_url: str = "http://localhost:3001"
    """Secondary budget engine that must be told which workspace is active."""

    # -- Local persistence -----------------------------------------------------
    data_root: str = "./data"
    """Root directory for the durable storage tier."""

    write_batch_delay: float = 0.1
    """Debounce window (seconds) for batched storage writes."""

    # -- HTTP ------------------------------------------------------------------
    request_timeout: float = 30.0
    cache_ttl: float = 300.0
    """Lifetime (seconds) of a cached ``fetcher`` response."""

    cache_sweep_interval: float = 60.0
    drain_timeout: float = 5.0
    """Seconds to wait for in-flight requests when the client closes."""

    # -- Workspace -------------------------------------------------------------
    notification_delay: float = 0.3
    """Delay before default-workspace notifications are shown.

    Keeps the toast from colliding with the transition that follows the click.
    """

    force_logout: bool = False
    """Clear the persisted workspace selection at startup."""

    force_default: bool = False
    """Load the server-declared default workspace at startup, ignoring storage."""


@lru_cache(maxsize=1)
def get_settings() -> OdzaiSettings:
    """Settings from the environment and ``.env``, read once per process.

    Tests that change ``ODZAI_*`` variables call ``get_settings.cache_clear()``.
    """
    return OdzaiSettings()
