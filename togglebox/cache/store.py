"""
In-Memory Snapshot Cache.

CacheStore holds the current snapshot for one platform/environment.

Caching Strategy:
    - One writer (the SyncManager), many readers (evaluation calls)
    - Copy-on-write: every write builds a new CachedSnapshot and publishes it
      with a single reference assignment, so readers never see a partial
      update and never take a lock
    - TTL expiry only flips is_stale; the data stays and keeps being served
      until a newer snapshot replaces it

Once a snapshot has been stored, get() never returns None again.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable

from togglebox.schemas.snapshot import Snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedSnapshot:
    """
    A published snapshot plus its freshness metadata.

    Attributes:
        snapshot: The immutable snapshot.
        expires_at: Clock reading after which the snapshot is stale.
        is_stale: True once expired or explicitly marked stale.
    """

    snapshot: Snapshot
    expires_at: float
    is_stale: bool = False

    @property
    def version(self) -> str:
        return self.snapshot.version


class CacheStore:
    """
    TTL-bounded holder of the current snapshot.

    Usage:
        store = CacheStore(ttl_seconds=300)
        store.set(snapshot)

        entry = store.get()
        if entry is not None:
            flags = entry.snapshot.flags
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize an empty store.

        Args:
            ttl_seconds: Seconds a snapshot stays fresh after being stored.
            clock: Monotonic clock, injectable for tests.
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entry: CachedSnapshot | None = None

    def get(self) -> CachedSnapshot | None:
        """
        Return the current entry without blocking.

        An expired entry is returned with is_stale=True rather than dropped.
        """
        entry = self._entry
        if entry is None or entry.is_stale:
            return entry
        if self._clock() >= entry.expires_at:
            return replace(entry, is_stale=True)
        return entry

    def set(self, snapshot: Snapshot, stale: bool = False) -> CachedSnapshot:
        """
        Publish a new snapshot.

        Args:
            snapshot: Snapshot to serve from now on.
            stale: Publish as already stale (e.g. loaded from a persisted cache).

        Returns:
            The published entry.
        """
        entry = CachedSnapshot(
            snapshot=snapshot,
            expires_at=self._clock() + self.ttl_seconds,
            is_stale=stale,
        )
        previous = self._entry
        self._entry = entry

        if previous is None or previous.version != snapshot.version:
            logger.debug(
                f"Published snapshot {snapshot.version} for "
                f"{snapshot.platform}/{snapshot.environment}"
            )
        return entry

    def touch(self) -> CachedSnapshot | None:
        """Re-arm the TTL of the current snapshot (backend reported it unchanged)."""
        entry = self._entry
        if entry is None:
            return None
        return self.set(entry.snapshot)

    def mark_stale(self) -> None:
        """Flag the current snapshot as stale; its data is kept."""
        entry = self._entry
        if entry is not None and not entry.is_stale:
            self._entry = replace(entry, is_stale=True)

    def clear(self) -> None:
        """Forget the current snapshot."""
        self._entry = None

    @property
    def has_snapshot(self) -> bool:
        return self._entry is not None

    @property
    def version(self) -> str | None:
        entry = self._entry
        return entry.version if entry is not None else None

    def is_stale(self) -> bool:
        """True when there is no snapshot or the current one is stale."""
        entry = self.get()
        return entry is None or entry.is_stale
