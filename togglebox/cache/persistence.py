"""
Persisted Snapshot Cache.

Keeps the last good snapshot across process restarts so a client that boots
while the backend is unreachable can still serve (stale) decisions.

Storage Format:
    {
        "version": 1,                      # persisted layout version
        "fetchedAt": "2024-01-15T10:30:00Z",
        "snapshot": {...}                  # Snapshot in wire form
    }

Every entry is validated before reuse: layout version, shape, platform and
environment, and age. Anything that fails is discarded (file removed / key
deleted), never trusted.

Backends:
    - FileSnapshotPersistence: JSON file, atomic replace on write
    - RedisSnapshotPersistence: redis.asyncio, key
      "togglebox:snapshot:{platform}:{environment}" with SETEX
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

import redis.asyncio as redis
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from togglebox.core.config import ClientSettings
from togglebox.core.exceptions import CacheError
from togglebox.schemas.snapshot import CACHE_FORMAT_VERSION, PersistedSnapshot, Snapshot

logger = logging.getLogger(__name__)


class SnapshotPersistence(ABC):
    """
    Base class for persisted snapshot caches.

    Subclasses implement raw reads and writes; validation lives here so every
    backend applies the same rules.
    """

    def __init__(
        self,
        platform: str,
        environment: str,
        max_age_seconds: float,
    ) -> None:
        self.platform = platform
        self.environment = environment
        self.max_age_seconds = max_age_seconds

    # =========================================================================
    # Backend Hooks
    # =========================================================================

    @abstractmethod
    async def _read(self) -> str | None:
        """Return the raw stored document, or None if nothing is stored."""

    @abstractmethod
    async def _write(self, data: str) -> None:
        """Store the raw document."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove the stored document."""

    async def close(self) -> None:
        """Release backend resources."""

    # =========================================================================
    # Public API
    # =========================================================================

    async def load(self) -> Snapshot | None:
        """
        Load and validate the persisted snapshot.

        Returns:
            The snapshot, or None when nothing usable is stored. Invalid
            entries are deleted.
        """
        try:
            raw = await self._read()
        except CacheError as e:
            logger.warning(f"Persisted snapshot read failed: {e.message}")
            return None

        if raw is None:
            return None

        try:
            snapshot = self.decode(raw)
        except CacheError as e:
            logger.warning(f"Discarding persisted snapshot: {e.message}")
            await self._discard()
            return None

        logger.info(
            f"Loaded persisted snapshot {snapshot.version} for "
            f"{self.platform}/{self.environment}"
        )
        return snapshot

    async def save(self, snapshot: Snapshot) -> None:
        """Persist a snapshot. Failures are logged, never raised."""
        document = PersistedSnapshot.wrap(snapshot).model_dump(mode="json", by_alias=True)
        try:
            await self._write(json.dumps(document))
            logger.debug(f"Persisted snapshot {snapshot.version}")
        except CacheError as e:
            logger.warning(f"Persisted snapshot write failed: {e.message}")

    def decode(self, raw: str) -> Snapshot:
        """
        Validate a raw persisted document.

        Raises:
            CacheError: If the document is corrupt, unversioned, from another
                layout version, for another target, or too old.
        """
        try:
            document = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CacheError(f"Persisted snapshot is not valid JSON: {e}")

        if not isinstance(document, dict) or "version" not in document:
            raise CacheError("Persisted snapshot has no layout version")

        if document["version"] != CACHE_FORMAT_VERSION:
            raise CacheError(
                f"Persisted snapshot layout {document['version']!r} is not "
                f"{CACHE_FORMAT_VERSION}"
            )

        try:
            persisted = PersistedSnapshot.model_validate(document)
        except ValidationError as e:
            raise CacheError(
                f"Persisted snapshot failed validation ({e.error_count()} errors)"
            )

        snapshot = persisted.snapshot
        if (snapshot.platform, snapshot.environment) != (self.platform, self.environment):
            raise CacheError(
                f"Persisted snapshot belongs to {snapshot.platform}/{snapshot.environment}"
            )

        fetched_at = persisted.fetched_at
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
        age = (datetime.now(timezone.utc) - fetched_at).total_seconds()
        if age > self.max_age_seconds:
            raise CacheError(f"Persisted snapshot is {age:.0f}s old")

        return snapshot

    async def _discard(self) -> None:
        try:
            await self.clear()
        except CacheError as e:
            logger.warning(f"Failed to discard persisted snapshot: {e.message}")


class FileSnapshotPersistence(SnapshotPersistence):
    """
    JSON file backend.

    Writes go to a temporary file in the same directory followed by
    os.replace(), so a crash mid-write never leaves a truncated document.
    """

    def __init__(
        self,
        path: str | Path,
        platform: str,
        environment: str,
        max_age_seconds: float,
    ) -> None:
        super().__init__(platform, environment, max_age_seconds)
        self.path = Path(path)

    async def _read(self) -> str | None:
        return await asyncio.to_thread(self._read_sync)

    async def _write(self, data: str) -> None:
        await asyncio.to_thread(self._write_sync, data)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear_sync)

    def _read_sync(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"Cannot read {self.path}: {e}")

    def _write_sync(self, data: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(data)
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CacheError(f"Cannot write {self.path}: {e}")

    def _clear_sync(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise CacheError(f"Cannot remove {self.path}: {e}")


class RedisSnapshotPersistence(SnapshotPersistence):
    """
    Redis backend.

    Usage:
        persistence = RedisSnapshotPersistence(
            "redis://localhost:6379/0", "web", "production", max_age_seconds=86400
        )
        await persistence.save(snapshot)
        snapshot = await persistence.load()
        await persistence.close()
    """

    def __init__(
        self,
        redis_url: str | None,
        platform: str,
        environment: str,
        max_age_seconds: float,
        client: Redis | None = None,
    ) -> None:
        """
        Initialize the backend.

        Args:
            redis_url: Connection URL (ignored when client is given).
            platform: Platform the snapshots belong to.
            environment: Environment the snapshots belong to.
            max_age_seconds: Entry expiry, also enforced on load.
            client: Existing redis.asyncio client (not closed by close()).
        """
        super().__init__(platform, environment, max_age_seconds)
        self.redis_url = redis_url
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> Redis:
        """Get the Redis client, connecting lazily."""
        if self._client is None:
            if not self.redis_url:
                raise CacheError("No Redis URL configured")
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    @property
    def key(self) -> str:
        """Cache key for this platform/environment."""
        return f"togglebox:snapshot:{self.platform}:{self.environment}"

    async def _read(self) -> str | None:
        try:
            data = await self.client.get(self.key)
        except (RedisError, OSError) as e:
            raise CacheError(f"Redis get failed: {e}")

        if data is None:
            logger.debug(f"Cache MISS for {self.key}")
            return None
        logger.debug(f"Cache HIT for {self.key}")
        return data

    async def _write(self, data: str) -> None:
        try:
            await self.client.setex(self.key, max(1, int(self.max_age_seconds)), data)
        except (RedisError, OSError) as e:
            raise CacheError(f"Redis set failed: {e}")

    async def clear(self) -> None:
        try:
            await self.client.delete(self.key)
        except (RedisError, OSError) as e:
            raise CacheError(f"Redis delete failed: {e}")

    async def close(self) -> None:
        """Close the Redis connection if this backend opened it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")


def create_persistence(settings: ClientSettings) -> SnapshotPersistence | None:
    """
    Build the persisted cache backend configured in settings.

    Returns:
        A Redis backend when cache.redis_url is set, a file backend when
        cache.persist_path is set, otherwise None. Always None when
        cache.enabled is False.
    """
    cache = settings.cache
    if not cache.enabled:
        return None

    max_age = cache.persist_max_age / 1000
    if cache.redis_url:
        return RedisSnapshotPersistence(
            cache.redis_url, settings.platform, settings.environment, max_age
        )
    if cache.persist_path:
        return FileSnapshotPersistence(
            cache.persist_path, settings.platform, settings.environment, max_age
        )
    return None
