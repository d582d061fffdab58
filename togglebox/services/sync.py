"""
Snapshot Synchronization.

The SyncManager keeps the CacheStore current by polling the backend.

State Machine:
    STOPPED -> STARTING -> POLLING <-> REFRESHING -> STOPPED

    - start(): load the persisted snapshot (if any, served as stale), run one
      initial fetch, then schedule the polling task
    - polling: sleep, refresh, repeat; consecutive failures back off
      exponentially, capped at max_backoff_multiplier * interval
    - refresh(): at most one fetch in flight; concurrent callers await the
      same fetch
    - stop(): cancels the polling task; an in-flight fetch is left to finish
      and its result is still applied

Failure Handling:
    NetworkError and InvalidSnapshotError are never raised from refresh().
    The current snapshot is kept (marked stale) and the error is passed to
    the on_error callback.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from togglebox.cache.persistence import SnapshotPersistence
from togglebox.cache.store import CacheStore
from togglebox.core.exceptions import InvalidSnapshotError, NetworkError, ToggleBoxError
from togglebox.schemas.snapshot import Snapshot
from togglebox.services.backend import BackendClient

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
UpdateCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[ToggleBoxError], None]


class SyncState(str, Enum):
    """Lifecycle states of the SyncManager."""

    STOPPED = "stopped"
    STARTING = "starting"
    POLLING = "polling"
    REFRESHING = "refreshing"


class SyncManager:
    """
    Background polling loop that refreshes a CacheStore.

    Usage:
        sync = SyncManager(backend, store, platform="web", environment="prod",
                           polling_interval_seconds=60)
        await sync.start()
        ...
        await sync.refresh()      # manual refresh, coalesced
        sync.stop()
    """

    def __init__(
        self,
        backend: BackendClient,
        store: CacheStore,
        platform: str,
        environment: str,
        polling_interval_seconds: float,
        max_backoff_multiplier: int = 8,
        persistence: SnapshotPersistence | None = None,
        sleep: SleepFunc = asyncio.sleep,
        on_update: UpdateCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """
        Initialize the manager (call start() to begin syncing).

        Args:
            backend: Backend API client.
            store: Store receiving fetched snapshots.
            platform: Platform being synced.
            environment: Environment being synced.
            polling_interval_seconds: Seconds between refreshes (0 disables polling).
            max_backoff_multiplier: Cap of the failure backoff, in intervals.
            persistence: Optional persisted cache to load from and save to.
            sleep: Sleep coroutine, injectable so tests control time.
            on_update: Called with each newly published snapshot.
            on_error: Called with each refresh failure.
        """
        self.backend = backend
        self.store = store
        self.platform = platform
        self.environment = environment
        self.polling_interval_seconds = polling_interval_seconds
        self.max_backoff_multiplier = max_backoff_multiplier
        self.persistence = persistence
        self._sleep = sleep
        self._on_update = on_update
        self._on_error = on_error

        self._state = SyncState.STOPPED
        self._poll_task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._consecutive_failures = 0
        self.last_error: ToggleBoxError | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Start syncing.

        Performs one fetch before returning, so the first evaluation runs
        against fetched data unless the backend is unreachable (then the
        persisted snapshot, if any, is served stale, or evaluation fails
        closed).
        """
        if self._state != SyncState.STOPPED:
            logger.debug(f"SyncManager already {self._state.value}")
            return

        self._state = SyncState.STARTING
        logger.info(f"Starting sync for {self.platform}/{self.environment}")

        if self.persistence is not None and not self.store.has_snapshot:
            snapshot = await self.persistence.load()
            if snapshot is not None:
                self.store.set(snapshot, stale=True)

        await self.refresh()

        if self._state != SyncState.STARTING:
            # stop() was called while the initial fetch was running
            return

        if self.polling_interval_seconds > 0:
            self._poll_task = asyncio.create_task(
                self._poll_loop(),
                name=f"togglebox-sync-{self.platform}-{self.environment}",
            )
        self._state = SyncState.POLLING

    def stop(self) -> None:
        """
        Cancel the polling task.

        Synchronous: no further refresh is scheduled once this returns. An
        in-flight fetch is not cancelled; if it completes, its snapshot is
        published.
        """
        if self._poll_task is not None:
            self._poll_task.cancel()
        if self._state != SyncState.STOPPED:
            logger.info(f"Stopped sync for {self.platform}/{self.environment}")
        self._state = SyncState.STOPPED

    async def wait_closed(self) -> None:
        """Wait for a cancelled polling task to unwind and an in-flight fetch to land."""
        task, self._poll_task = self._poll_task, None
        pending = [t for t in (task, self._inflight) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> bool:
        """
        Fetch a snapshot now, or join the fetch already in flight.

        Returns:
            True if a snapshot was published or confirmed unchanged, False if
            the fetch failed.
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._do_refresh())
        # Shielded: a cancelled waiter must not cancel the shared fetch
        return await asyncio.shield(self._inflight)

    async def _do_refresh(self) -> bool:
        if self._state == SyncState.POLLING:
            self._state = SyncState.REFRESHING

        try:
            current = self.store.get()
            etag = current.version if current is not None else None

            try:
                response = await self.backend.fetch_snapshot(etag)
                if response.not_modified:
                    self.store.touch()
                    self._consecutive_failures = 0
                    logger.debug(f"Snapshot {etag} not modified")
                    return True

                snapshot = Snapshot.from_payload(
                    response.payload,
                    platform=self.platform,
                    environment=self.environment,
                    etag=response.etag,
                )
            except (NetworkError, InvalidSnapshotError) as e:
                self._record_failure(e)
                return False

            self.store.set(snapshot)
            self._consecutive_failures = 0
            self.last_error = None
            if current is None or current.version != snapshot.version:
                logger.info(f"Snapshot updated to version {snapshot.version}")

            if self.persistence is not None:
                await self.persistence.save(snapshot)

            self._notify(self._on_update, snapshot)
            return True
        finally:
            if self._state == SyncState.REFRESHING:
                self._state = SyncState.POLLING

    def _record_failure(self, error: ToggleBoxError) -> None:
        self._consecutive_failures += 1
        self.last_error = error
        self.store.mark_stale()

        if isinstance(error, InvalidSnapshotError):
            logger.error(f"Rejected snapshot: {error.message}")
        else:
            logger.warning(
                f"Snapshot refresh failed ({self._consecutive_failures} in a row): {error.message}"
            )
        self._notify(self._on_error, error)

    def next_delay(self) -> float:
        """Seconds until the next poll, including failure backoff."""
        multiplier = min(2 ** self._consecutive_failures, self.max_backoff_multiplier)
        return self.polling_interval_seconds * multiplier

    async def _poll_loop(self) -> None:
        while True:
            await self._sleep(self.next_delay())
            try:
                await self.refresh()
            except Exception as e:
                logger.exception(f"Unexpected error in sync loop: {e}")

    @staticmethod
    def _notify(callback: Callable | None, payload: object) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            logger.exception(f"Sync callback {callback!r} raised: {e}")
