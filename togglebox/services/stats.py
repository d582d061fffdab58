"""
Usage Telemetry Collection.

The StatsCollector buffers impression, conversion and custom events in memory
and posts them to the backend in batches.

Buffering Policy:
    - record() appends to a bounded buffer (thread-safe); when the buffer is
      full the oldest event is dropped and counted
    - reaching the high-water mark (batch_size) schedules an immediate flush;
      a timer flushes every flush_interval otherwise

Delivery Policy:
    - flush() drains the buffer and sends one batch; concurrent flush() calls
      join the flush already in flight, so no event is sent twice at once
    - a failing send is retried max_retries times with exponential backoff;
      if it still fails, the batch goes back to the front of the buffer
      (oldest events dropped beyond capacity) until it has been re-queued
      max_requeues times, after which it is dropped and counted as failed
    - 4xx responses and batches that cannot be encoded are permanent: the
      batch is dropped, counted as failed and reported through on_error
    - a 207 partial ack re-queues only the events marked retryable
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from togglebox.core.exceptions import FlushFailureError, InvalidContextError, NetworkError
from togglebox.schemas.context import TargetingContext
from togglebox.schemas.stats import EventsAck, StatsEvent, StatsEventType
from togglebox.services.backend import BackendClient

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class _Pending:
    """A buffered event and how many times it has been re-queued."""

    event: StatsEvent
    requeues: int = 0


@dataclass(frozen=True)
class FlushResult:
    """
    Outcome of one flush.

    Attributes:
        sent: Events acknowledged by the backend.
        requeued: Events put back into the buffer for a later flush.
        dropped: Events given up on (permanent failure or buffer overflow).
    """

    sent: int = 0
    requeued: int = 0
    dropped: int = 0


@dataclass(frozen=True)
class CollectorMetrics:
    """Counters exposed for monitoring."""

    buffered: int
    sent: int
    dropped: int
    failed: int
    flushes: int


class StatsCollector:
    """
    Buffered, batching stats reporter.

    Usage:
        collector = StatsCollector(backend, buffer_size=1000, batch_size=20)
        collector.start()                      # inside a running event loop
        collector.track_event("signup", context)
        await collector.flush()
        await collector.close(timeout=2.0)
    """

    def __init__(
        self,
        backend: BackendClient,
        buffer_size: int = 1000,
        batch_size: int = 20,
        flush_interval_seconds: float = 10.0,
        max_retries: int = 3,
        max_requeues: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        enabled: bool = True,
        sleep: SleepFunc = asyncio.sleep,
        on_flush: Callable[[FlushResult], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        """
        Initialize the collector.

        Args:
            backend: Backend API client.
            buffer_size: Maximum buffered events.
            batch_size: High-water mark that triggers an immediate flush.
            flush_interval_seconds: Seconds between timer-driven flushes.
            max_retries: Send attempts per flush.
            max_requeues: Times a failed batch is put back before being dropped.
            retry_base_delay: First backoff delay in seconds.
            retry_max_delay: Backoff cap in seconds.
            enabled: When False, record() is a no-op.
            sleep: Sleep coroutine, injectable so tests control time.
            on_flush: Called after each flush that sent events.
            on_error: Called with FlushFailureError / NetworkError on failures.
        """
        self.backend = backend
        self.buffer_size = buffer_size
        self.batch_size = batch_size
        self.flush_interval_seconds = flush_interval_seconds
        self.max_retries = max_retries
        self.max_requeues = max_requeues
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.enabled = enabled
        self._sleep = sleep
        self._on_flush = on_flush
        self._on_error = on_error

        self._buffer: deque[_Pending] = deque()
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer_task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

        self._sent = 0
        self._dropped = 0
        self._failed = 0
        self._flushes = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Bind to the running event loop and start the flush timer."""
        if not self.enabled or self._timer_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._timer_task = self._loop.create_task(self._timer_loop(), name="togglebox-stats")

    def stop_timer(self) -> None:
        """Cancel the flush timer and stop scheduling automatic flushes."""
        if self._timer_task is not None:
            self._timer_task.cancel()
        self._loop = None

    async def close(self, timeout: float = 2.0) -> FlushResult | None:
        """
        Stop the timer and make one best-effort final flush.

        Args:
            timeout: Seconds to wait for the final flush.

        Returns:
            The final flush result, or None if it timed out.
        """
        self.stop_timer()
        await self._wait_timer()
        try:
            return await asyncio.wait_for(self.flush(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Final stats flush timed out after {timeout}s")
            return None

    async def _wait_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _timer_loop(self) -> None:
        while True:
            await self._sleep(self.flush_interval_seconds)
            try:
                await self.flush()
            except Exception as e:
                logger.exception(f"Unexpected error in stats flush timer: {e}")

    # =========================================================================
    # Recording
    # =========================================================================

    def record(self, event: StatsEvent) -> None:
        """
        Buffer an event. Safe to call from any thread; never blocks on I/O.

        When the buffer is full the oldest event is dropped.
        """
        if not self.enabled:
            return

        with self._lock:
            if len(self._buffer) >= self.buffer_size:
                self._buffer.popleft()
                self._dropped += 1
                logger.debug("Stats buffer full, dropped oldest event")
            self._buffer.append(_Pending(event))
            reached_high_water = len(self._buffer) >= self.batch_size

        if reached_high_water:
            self._request_flush()

    def track_impression(
        self,
        experiment_key: str,
        variation_key: str,
        context: TargetingContext,
    ) -> None:
        """Record that a user was exposed to an experiment variation."""
        self.record(
            StatsEvent(
                type=StatsEventType.IMPRESSION,
                user_id=context.user_id,
                attributes=context.attributes,
                experiment_key=experiment_key,
                variation_key=variation_key,
            )
        )

    def track_conversion(
        self,
        experiment_key: str,
        metric_id: str,
        context: TargetingContext,
        variation_key: str | None = None,
        value: float | None = None,
    ) -> None:
        """
        Record a conversion for an experiment metric.

        Raises:
            InvalidContextError: If the context has no user_id.
        """
        if not context.has_user_id:
            raise InvalidContextError(
                "Conversions require a user_id",
                details={"experiment_key": experiment_key, "metric_id": metric_id},
            )
        self.record(
            StatsEvent(
                type=StatsEventType.CONVERSION,
                user_id=context.user_id,
                attributes=context.attributes,
                experiment_key=experiment_key,
                variation_key=variation_key,
                metric_id=metric_id,
                value=value,
            )
        )

    def track_event(
        self,
        event_name: str,
        context: TargetingContext | None = None,
        properties: dict[str, Any] | None = None,
        value: float | None = None,
    ) -> None:
        """
        Record a custom analytics event (user_id optional).

        Raises:
            pydantic.ValidationError: If properties holds values that are not
                JSON-serializable.
        """
        context = context or TargetingContext()
        self.record(
            StatsEvent(
                type=StatsEventType.CUSTOM,
                user_id=context.user_id,
                attributes=context.attributes,
                event_name=event_name,
                properties=properties,
                value=value,
            )
        )

    def _request_flush(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._spawn_flush()
        else:
            loop.call_soon_threadsafe(self._spawn_flush)

    def _spawn_flush(self) -> None:
        if self._loop is None or self.is_flushing:
            return
        task = self._loop.create_task(self.flush())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================================
    # Flushing
    # =========================================================================

    @property
    def is_flushing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def flush(self) -> FlushResult:
        """
        Send buffered events, or join the flush already in flight.

        Never raises for delivery failures; those are counted and reported
        through on_error.
        """
        if not self.is_flushing:
            self._inflight = asyncio.create_task(self._run_flush())
        return await asyncio.shield(self._inflight)

    async def _run_flush(self) -> FlushResult:
        with self._lock:
            batch = list(self._buffer)
            self._buffer.clear()

        if not batch:
            return FlushResult()

        self._flushes += 1
        events = [pending.event for pending in batch]
        last_error: NetworkError | None = None

        for attempt in range(self.max_retries):
            try:
                ack = await self.backend.send_events(events)
            except NetworkError as e:
                last_error = e
                if e.is_client_error:
                    return self._drop_batch(batch, e.message)
                if attempt + 1 < self.max_retries:
                    delay = min(self.retry_base_delay * 2 ** attempt, self.retry_max_delay)
                    logger.warning(
                        f"Stats send failed (attempt {attempt + 1}/{self.max_retries}), "
                        f"retrying in {delay}s: {e.message}"
                    )
                    await self._sleep(delay)
                continue
            except Exception as e:
                # Not retryable: the batch itself cannot be encoded or sent
                logger.exception(f"Unexpected error sending stats batch: {e}")
                return self._drop_batch(batch, str(e))

            return self._handle_ack(batch, ack)

        return self._requeue(batch, last_error)

    def _handle_ack(self, batch: list[_Pending], ack: EventsAck) -> FlushResult:
        retry: list[_Pending] = []
        rejected = 0
        failed_indexes: set[int] = set()

        for failure in ack.failed:
            if failure.index >= len(batch) or failure.index in failed_indexes:
                continue
            failed_indexes.add(failure.index)
            if failure.retryable:
                retry.append(batch[failure.index])
            else:
                rejected += 1

        sent = len(batch) - len(failed_indexes)
        with self._lock:
            self._sent += sent
            self._failed += rejected

        if rejected:
            logger.warning(f"Backend rejected {rejected} stats events permanently")

        result = FlushResult(sent=sent, dropped=rejected)
        if retry:
            requeue_result = self._requeue(retry, None)
            result = FlushResult(
                sent=sent,
                requeued=requeue_result.requeued,
                dropped=rejected + requeue_result.dropped,
            )

        logger.debug(f"Flushed {sent} stats events")
        self._notify(self._on_flush, result)

        if not retry and self._pending_count() >= self.batch_size and self._loop is not None:
            # More events piled up while this flush was in flight
            self._loop.call_soon(self._spawn_flush)
        return result

    def _requeue(self, batch: list[_Pending], error: NetworkError | None) -> FlushResult:
        keep = [p for p in batch if p.requeues < self.max_requeues]
        expired = len(batch) - len(keep)
        for pending in keep:
            pending.requeues += 1

        with self._lock:
            self._buffer.extendleft(reversed(keep))
            overflow = max(0, len(self._buffer) - self.buffer_size)
            for _ in range(overflow):
                self._buffer.popleft()
            self._dropped += overflow
            self._failed += expired

        if error is not None:
            logger.warning(
                f"Stats flush failed, re-queued {len(keep) - overflow} events, "
                f"dropped {expired + overflow}: {error.message}"
            )
            self._notify(
                self._on_error,
                FlushFailureError(
                    f"Failed to deliver {len(batch)} stats events: {error.message}",
                    event_count=len(batch),
                ),
            )
        return FlushResult(requeued=max(0, len(keep) - overflow), dropped=expired + overflow)

    def _drop_batch(self, batch: list[_Pending], reason: str) -> FlushResult:
        with self._lock:
            self._failed += len(batch)
        logger.error(f"Stats batch of {len(batch)} events dropped: {reason}")
        self._notify(
            self._on_error,
            FlushFailureError(
                f"Dropped {len(batch)} stats events: {reason}",
                event_count=len(batch),
            ),
        )
        return FlushResult(dropped=len(batch))

    # =========================================================================
    # Introspection
    # =========================================================================

    def _pending_count(self) -> int:
        with self._lock:
            return len(self._buffer)

    def pending_events(self) -> Sequence[StatsEvent]:
        """Snapshot of buffered events, oldest first."""
        with self._lock:
            return [pending.event for pending in self._buffer]

    @property
    def metrics(self) -> CollectorMetrics:
        with self._lock:
            return CollectorMetrics(
                buffered=len(self._buffer),
                sent=self._sent,
                dropped=self._dropped,
                failed=self._failed,
                flushes=self._flushes,
            )

    @staticmethod
    def _notify(callback: Callable | None, payload: object) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            logger.exception(f"Stats callback {callback!r} raised: {e}")
