"""
ToggleBox Client.

The client wires together the sync, cache, evaluation and stats components
for one platform/environment and owns their lifecycle.

Lifecycle:
    - start(): start the stats timer, load the persisted snapshot, fetch once,
      then poll in the background
    - stop(): cancel polling and the stats timer, make one best-effort stats
      flush, close owned connections; the last snapshot stays queryable

Usage:
    async with ToggleBoxClient(ClientSettings(platform="web", environment="production")) as client:
        if client.is_flag_enabled("dark-mode", {"user_id": "user-123"}):
            ...
        variant = client.get_variant("pricing-page", {"user_id": "user-123"})
        client.track_conversion("pricing-page", "purchase", {"user_id": "user-123"})

There is no module-level client; applications create and own instances.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from togglebox.cache.persistence import SnapshotPersistence, create_persistence
from togglebox.cache.store import CacheStore
from togglebox.core.config import ClientSettings
from togglebox.core.exceptions import ToggleBoxError
from togglebox.schemas.context import TargetingContext
from togglebox.schemas.snapshot import Snapshot
from togglebox.services.backend import BackendClient
from togglebox.services.evaluator import (
    ContextLike,
    EvaluationEngine,
    EvaluationResult,
    VariantAssignment,
)
from togglebox.services.stats import CollectorMetrics, FlushResult, StatsCollector
from togglebox.services.sync import SyncManager, SyncState

logger = logging.getLogger(__name__)

UpdateListener = Callable[[Snapshot], None]
ErrorListener = Callable[[ToggleBoxError], None]


class ToggleBoxClient:
    """
    Remote config, feature flag and experiment client.

    All evaluation methods are synchronous and never touch the network; they
    read the snapshot kept current by the background sync.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        http_client: httpx.AsyncClient | None = None,
        persistence: SnapshotPersistence | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        """
        Build the client (call start() to begin syncing).

        Args:
            settings: Client options (read from TOGGLEBOX_* env vars when omitted).
            transport: Custom httpx transport, e.g. httpx.MockTransport in tests.
            http_client: Existing AsyncClient to use (not closed on stop()).
            persistence: Persisted cache backend (built from settings when omitted).
            sleep: Sleep coroutine for the polling and stats timers.
            clock: Monotonic clock for cache TTLs.
            now: Wall clock for experiment schedules.
        """
        self.settings = settings or ClientSettings()

        self._update_listeners: list[UpdateListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._started = False
        self._closed = False

        self.backend = BackendClient(self.settings, http_client=http_client, transport=transport)
        self.store = CacheStore(self.settings.cache_ttl_seconds, clock=clock)
        self.persistence = persistence if persistence is not None else create_persistence(self.settings)

        self.stats = StatsCollector(
            self.backend,
            buffer_size=self.settings.stats_buffer_size,
            batch_size=self.settings.stats_batch_size,
            flush_interval_seconds=self.settings.stats_flush_interval_seconds,
            max_retries=self.settings.stats_max_retries,
            max_requeues=self.settings.stats_max_requeues,
            enabled=self.settings.stats_enabled,
            sleep=sleep,
            on_error=self._emit_error,
        )
        self.sync = SyncManager(
            self.backend,
            self.store,
            platform=self.settings.platform,
            environment=self.settings.environment,
            polling_interval_seconds=self.settings.polling_interval_seconds,
            max_backoff_multiplier=self.settings.max_backoff_multiplier,
            persistence=self.persistence,
            sleep=sleep,
            on_update=self._emit_update,
            on_error=self._emit_error,
        )
        self.engine = EvaluationEngine(
            self.store,
            stats=self.stats if self.settings.stats_enabled else None,
            impression_dedup=self.settings.impression_dedup,
            dedup_max_size=self.settings.impression_dedup_max_size,
            now=now,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start syncing. Returns after the initial fetch has completed or failed."""
        if self._closed:
            raise ToggleBoxError("Client has been stopped", error_code="CLIENT_CLOSED")
        if self._started:
            return
        self._started = True

        logger.info(
            f"Starting ToggleBox client for {self.settings.platform}/{self.settings.environment}"
        )
        self.stats.start()
        await self.sync.start()

    async def stop(self, flush_timeout: float = 2.0) -> None:
        """
        Stop background work and release connections.

        Polling and the stats timer are cancelled before anything is awaited.
        Evaluation keeps working against the last snapshot.
        """
        if self._closed:
            return
        self._closed = True

        self.sync.stop()
        self.stats.stop_timer()

        await self.sync.wait_closed()
        await self.stats.close(timeout=flush_timeout)
        await self.backend.close()
        if self.persistence is not None:
            await self.persistence.close()

        logger.info("ToggleBox client stopped")

    async def __aenter__(self) -> "ToggleBoxClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def state(self) -> SyncState:
        return self.sync.state

    async def refresh(self) -> bool:
        """Fetch a snapshot now (coalesced with any fetch in flight)."""
        if self._closed:
            logger.warning("refresh() called on a stopped client")
            return False
        return await self.sync.refresh()

    async def flush_stats(self) -> FlushResult:
        """Send buffered stats events now."""
        if self._closed:
            logger.warning("flush_stats() called on a stopped client")
            return FlushResult()
        return await self.stats.flush()

    # =========================================================================
    # Listeners
    # =========================================================================

    def on_update(self, listener: UpdateListener) -> Callable[[], None]:
        """
        Register a listener for newly published snapshots.

        Returns:
            A callable that unregisters the listener.
        """
        self._update_listeners.append(listener)
        return lambda: self._remove(self._update_listeners, listener)

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        """
        Register a listener for sync and stats failures.

        Returns:
            A callable that unregisters the listener.
        """
        self._error_listeners.append(listener)
        return lambda: self._remove(self._error_listeners, listener)

    @staticmethod
    def _remove(listeners: list, listener: Callable) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def _emit_update(self, snapshot: Snapshot) -> None:
        for listener in list(self._update_listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.exception(f"Update listener {listener!r} raised: {e}")

    def _emit_error(self, error: ToggleBoxError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.exception(f"Error listener {listener!r} raised: {e}")

    # =========================================================================
    # Global Context
    # =========================================================================

    def set_context(self, context: ContextLike) -> None:
        """Set the context merged under every per-call context (None clears it)."""
        self.engine.global_context = TargetingContext.coerce(context)

    def get_context(self) -> TargetingContext | None:
        return self.engine.global_context

    # =========================================================================
    # Evaluation
    # =========================================================================

    def is_flag_enabled(self, flag_key: str, context: ContextLike = None) -> bool:
        return self.engine.is_flag_enabled(flag_key, context)

    def evaluate_flag(
        self,
        flag_key: str,
        context: ContextLike = None,
        default_value: bool = False,
    ) -> EvaluationResult:
        return self.engine.evaluate_flag(flag_key, context, default_value)

    def get_all_flags(self, context: ContextLike = None) -> dict[str, bool]:
        return self.engine.get_all_flags(context)

    def get_variant(self, experiment_key: str, context: ContextLike = None) -> str | None:
        return self.engine.get_variant(experiment_key, context)

    def get_assignment(
        self,
        experiment_key: str,
        context: ContextLike = None,
    ) -> VariantAssignment | None:
        return self.engine.get_assignment(experiment_key, context)

    def evaluate_experiment(
        self,
        experiment_key: str,
        context: ContextLike = None,
    ) -> VariantAssignment:
        return self.engine.evaluate_experiment(experiment_key, context)

    def get_config(self) -> dict[str, Any]:
        return self.engine.get_config()

    def get_config_value(self, key: str, default: Any = None) -> Any:
        return self.engine.get_config_value(key, default)

    def is_stale(self) -> bool:
        return self.engine.is_stale()

    @property
    def snapshot_version(self) -> str | None:
        return self.engine.snapshot_version

    # =========================================================================
    # Stats
    # =========================================================================

    def track_conversion(
        self,
        experiment_key: str,
        metric_id: str,
        context: ContextLike = None,
        value: float | None = None,
        variation_key: str | None = None,
    ) -> None:
        """
        Record a conversion for an experiment metric.

        Raises:
            InvalidContextError: If no user_id is available.
        """
        self.stats.track_conversion(
            experiment_key,
            metric_id,
            self.engine.resolve_context(context),
            variation_key=variation_key,
            value=value,
        )

    def track_event(
        self,
        event_name: str,
        context: ContextLike = None,
        properties: dict[str, Any] | None = None,
        value: float | None = None,
    ) -> None:
        """Record a custom analytics event."""
        self.stats.track_event(
            event_name,
            self.engine.resolve_context(context),
            properties=properties,
            value=value,
        )

    @property
    def stats_metrics(self) -> CollectorMetrics:
        return self.stats.metrics
