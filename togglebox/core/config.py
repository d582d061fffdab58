"""
Client Configuration Module.

This module uses Pydantic Settings to manage client options. Options can be
passed explicitly or loaded from TOGGLEBOX_* environment variables; every
option has a default so the client is usable with zero configuration.

Durations are expressed in milliseconds, matching the options accepted by the
other ToggleBox SDKs. The ``*_seconds`` properties convert them for asyncio.

Usage:
    from togglebox.core.config import ClientSettings

    settings = ClientSettings(platform="web", environment="production")

    # or from the environment (TOGGLEBOX_PLATFORM, TOGGLEBOX_CACHE__TTL, ...)
    settings = get_settings()
"""

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from togglebox.core.exceptions import ConfigurationError


class ImpressionDedup(str, Enum):
    """Scope within which an impression is recorded only once per user and experiment."""

    SNAPSHOT = "snapshot"   # reset whenever a new snapshot version is published
    PROCESS = "process"     # once for the lifetime of the client
    NONE = "none"           # every resolved assignment records an impression


class CacheSettings(BaseModel):
    """
    Snapshot cache options.

    Attributes:
        enabled: Persist snapshots across process restarts (file or Redis).
            The in-memory snapshot is always kept, evaluation depends on it.
        ttl: Milliseconds before the in-memory snapshot is reported stale.
        persist_path: JSON file used for the persisted snapshot.
        redis_url: Redis URL used for the persisted snapshot (takes
            precedence over persist_path).
        persist_max_age: Milliseconds after which a persisted snapshot is
            discarded instead of reused.
    """

    enabled: bool = True
    ttl: int = Field(default=300_000, ge=1_000, le=86_400_000)
    persist_path: str | None = None
    redis_url: str | None = None
    persist_max_age: int = Field(default=86_400_000, ge=1_000)


class ClientSettings(BaseSettings):
    """
    ToggleBox client options.

    Attributes:
        platform: Platform name (e.g. "web", "mobile").
        environment: Environment name (e.g. "production").
        api_url: Base URL of the ToggleBox API.
        api_key: Optional API key sent as X-API-Key.
        polling_interval: Milliseconds between refreshes (0 disables polling).
        cache: Snapshot cache options.
        stats_enabled: Record and send usage telemetry.
        stats_buffer_size: Maximum buffered stats events.
        stats_batch_size: Buffer size that triggers an immediate flush.
        stats_flush_interval: Milliseconds between timer-driven flushes.
        stats_max_retries: Send attempts per flush before the batch is re-queued.
        stats_max_requeues: Times a batch may be re-queued before it is dropped.
        request_timeout: HTTP timeout in milliseconds.
        max_backoff_multiplier: Upper bound of the polling backoff, as a
            multiple of polling_interval.
        impression_dedup: Impression de-duplication scope.
        impression_dedup_max_size: Most (user, experiment) pairs remembered
            for impression de-duplication.
    """

    model_config = SettingsConfigDict(
        env_prefix="TOGGLEBOX_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore unrelated env vars
    )

    # -------------------------------------------------------------------------
    # Target
    # -------------------------------------------------------------------------
    platform: str = Field(default="web", min_length=1)
    environment: str = Field(default="development", min_length=1)
    api_url: str = "http://localhost:3000"
    api_key: str | None = None

    # -------------------------------------------------------------------------
    # Synchronization
    # -------------------------------------------------------------------------
    polling_interval: int = Field(default=60_000, ge=0)
    max_backoff_multiplier: int = Field(default=8, ge=1, le=64)
    request_timeout: int = Field(default=5_000, ge=100, le=120_000)
    cache: CacheSettings = Field(default_factory=CacheSettings)

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------
    stats_enabled: bool = True
    stats_buffer_size: int = Field(default=1_000, ge=1, le=100_000)
    stats_batch_size: int = Field(default=20, ge=1)
    stats_flush_interval: int = Field(default=10_000, ge=100)
    stats_max_retries: int = Field(default=3, ge=1, le=10)
    stats_max_requeues: int = Field(default=3, ge=0, le=100)

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------
    impression_dedup: ImpressionDedup = ImpressionDedup.SNAPSHOT
    impression_dedup_max_size: int = Field(default=100_000, ge=1)

    @field_validator("api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be appended directly."""
        return v.rstrip("/")

    def __init__(self, **kwargs) -> None:
        """Initialize settings and validate cross-field rules."""
        super().__init__(**kwargs)

        if not self.api_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"api_url must be an http(s) URL, got '{self.api_url}'",
                details={"api_url": self.api_url},
            )

        if self.stats_batch_size > self.stats_buffer_size:
            raise ConfigurationError(
                "stats_batch_size cannot exceed stats_buffer_size",
                details={
                    "stats_batch_size": self.stats_batch_size,
                    "stats_buffer_size": self.stats_buffer_size,
                },
            )

    @property
    def polling_interval_seconds(self) -> float:
        return self.polling_interval / 1000

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache.ttl / 1000

    @property
    def stats_flush_interval_seconds(self) -> float:
        return self.stats_flush_interval / 1000

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout / 1000


@lru_cache
def get_settings() -> ClientSettings:
    """
    Get client settings loaded from the environment.

    Uses lru_cache so the environment is only read once. Applications that
    run several clients should construct ClientSettings explicitly instead.

    Returns:
        ClientSettings: Settings instance.

    Example:
        >>> settings = get_settings()
        >>> print(settings.platform)
        'web'
    """
    return ClientSettings()
