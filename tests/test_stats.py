"""
Tests for Usage Telemetry Collection.

These tests verify buffering and delivery of stats events:
    - Bounded buffer with oldest-first dropping
    - Retry with backoff, re-queue, and the re-queue limit
    - Permanent (4xx) and partial (207) responses
    - Flush coalescing, high-water flushes and shutdown
"""

import asyncio
import threading
from unittest.mock import AsyncMock

import httpx
import pytest
from pydantic import ValidationError

from togglebox.core.exceptions import FlushFailureError, InvalidContextError
from togglebox.schemas.context import TargetingContext
from togglebox.schemas.stats import StatsEvent, StatsEventType
from togglebox.services.stats import FlushResult, StatsCollector


def event(name: str) -> StatsEvent:
    return StatsEvent(type=StatsEventType.CUSTOM, user_id="user-1", event_name=name)


def names(collector: StatsCollector) -> list[str]:
    return [e.event_name for e in collector.pending_events()]


@pytest.fixture
def make_collector(backend, recording_sleep):
    def _make(**kwargs) -> StatsCollector:
        kwargs.setdefault("sleep", recording_sleep)
        return StatsCollector(backend, **kwargs)

    return _make


class TestBuffering:
    """Tests for record() and the bounded buffer."""

    def test_record_buffers_events(self, make_collector):
        collector = make_collector()

        collector.record(event("a"))
        collector.record(event("b"))

        assert names(collector) == ["a", "b"]
        assert collector.metrics.buffered == 2

    def test_full_buffer_drops_oldest(self, make_collector):
        collector = make_collector(buffer_size=3, batch_size=3)

        for name in "abcde":
            collector.record(event(name))

        assert names(collector) == ["c", "d", "e"]
        assert collector.metrics.dropped == 2

    def test_disabled_collector_ignores_events(self, make_collector):
        collector = make_collector(enabled=False)

        collector.record(event("a"))

        assert collector.metrics.buffered == 0

    def test_track_helpers(self, make_collector):
        collector = make_collector()
        context = TargetingContext(user_id="user-1", attributes={"plan": "pro"})

        collector.track_impression("pricing-page", "control", context)
        collector.track_conversion("pricing-page", "purchase", context, value=49.0)
        collector.track_event("signup", properties={"source": "ad"})

        impression, conversion, custom = collector.pending_events()
        assert impression.type == StatsEventType.IMPRESSION
        assert impression.variation_key == "control"
        assert impression.attributes == {"plan": "pro"}
        assert conversion.metric_id == "purchase"
        assert conversion.value == 49.0
        assert custom.user_id is None
        assert custom.properties == {"source": "ad"}

    def test_conversion_requires_user(self, make_collector):
        collector = make_collector()

        with pytest.raises(InvalidContextError):
            collector.track_conversion("pricing-page", "purchase", TargetingContext())

    def test_non_json_properties_rejected_at_record_time(self, make_collector):
        """Properties that cannot go on the wire never reach the buffer."""
        collector = make_collector()
        collector.track_impression("pricing-page", "control", TargetingContext(user_id="user-1"))

        with pytest.raises(ValidationError):
            collector.track_event("signup", properties={"obj": object()})

        assert [e.type for e in collector.pending_events()] == [StatsEventType.IMPRESSION]


class TestFlush:
    """Tests for delivery, retries and re-queueing."""

    async def test_flush_sends_batch(self, make_collector, backend_stub):
        collector = make_collector()
        for name in "abc":
            collector.record(event(name))

        result = await collector.flush()

        assert result == FlushResult(sent=3)
        assert [e["eventName"] for e in backend_stub.sent_events] == ["a", "b", "c"]
        assert collector.metrics.sent == 3
        assert collector.metrics.flushes == 1
        assert collector.metrics.buffered == 0

    async def test_flush_empty_buffer(self, make_collector, backend_stub):
        result = await make_collector().flush()

        assert result == FlushResult()
        assert backend_stub.event_requests == []

    async def test_transient_failure_is_retried(self, make_collector, backend_stub, recording_sleep):
        """One failure then success delivers every event (at least once)."""
        backend_stub.events_queue.append(httpx.Response(503))
        collector = make_collector(max_retries=3)
        collector.record(event("a"))
        collector.record(event("b"))

        result = await collector.flush()

        assert result.sent == 2
        assert len(backend_stub.event_requests) == 2
        assert backend_stub.event_batches[0] == backend_stub.event_batches[1]
        assert recording_sleep.delays == [1.0]

    async def test_backoff_is_exponential_and_capped(self, make_collector, backend_stub, recording_sleep):
        backend_stub.events_queue.extend(httpx.Response(500) for _ in range(4))
        collector = make_collector(max_retries=4, retry_base_delay=1.0, retry_max_delay=3.0)
        collector.record(event("a"))

        await collector.flush()

        assert recording_sleep.delays == [1.0, 2.0, 3.0]

    async def test_exhausted_retries_requeue_batch(self, make_collector, backend_stub):
        errors = []
        backend_stub.events_queue.extend(httpx.Response(500) for _ in range(3))
        collector = make_collector(max_retries=3, on_error=errors.append)
        collector.record(event("a"))
        collector.record(event("b"))

        result = await collector.flush()

        assert result == FlushResult(requeued=2)
        assert names(collector) == ["a", "b"]
        assert isinstance(errors[0], FlushFailureError)
        assert errors[0].event_count == 2

        assert (await collector.flush()).sent == 2
        assert collector.metrics.buffered == 0

    async def test_requeued_events_stay_ahead_of_new_ones(self, make_collector, backend_stub):
        backend_stub.events_queue.append(httpx.ConnectError("down"))
        collector = make_collector(max_retries=1)
        collector.record(event("a"))

        await collector.flush()
        collector.record(event("late"))

        assert names(collector) == ["a", "late"]

    async def test_requeue_limit_drops_batch(self, make_collector, backend_stub):
        backend_stub.events_queue.extend(httpx.Response(500) for _ in range(2))
        collector = make_collector(max_retries=1, max_requeues=1)
        collector.record(event("a"))

        first = await collector.flush()
        second = await collector.flush()

        assert first.requeued == 1
        assert second.dropped == 1
        assert collector.metrics.failed == 1
        assert collector.metrics.buffered == 0

    async def test_requeue_overflow_drops_oldest(self, make_collector, backend_stub):
        """Events recorded during a failing flush push out the re-queued ones."""
        backend_stub.gate = asyncio.Event()
        backend_stub.events_queue.append(httpx.Response(500))
        collector = make_collector(buffer_size=3, batch_size=3, max_retries=1)
        collector.record(event("a"))
        collector.record(event("b"))

        flush = asyncio.create_task(collector.flush())
        await asyncio.sleep(0.01)
        for name in "cde":
            collector.record(event(name))
        backend_stub.gate.set()
        result = await flush

        assert result == FlushResult(dropped=2)
        assert names(collector) == ["c", "d", "e"]
        assert collector.metrics.dropped == 2

    async def test_client_error_is_permanent(self, make_collector, backend_stub, recording_sleep):
        errors = []
        backend_stub.events_queue.append(httpx.Response(400))
        collector = make_collector(on_error=errors.append)
        collector.record(event("a"))
        collector.record(event("b"))

        result = await collector.flush()

        assert result == FlushResult(dropped=2)
        assert len(backend_stub.event_requests) == 1
        assert recording_sleep.delays == []
        assert collector.metrics.failed == 2
        assert collector.metrics.buffered == 0
        assert isinstance(errors[0], FlushFailureError)

    async def test_unexpected_send_error_is_counted_and_reported(
        self, make_collector, backend, recording_sleep, monkeypatch
    ):
        """A non-network failure drops the batch as failed instead of losing it silently."""
        errors = []
        monkeypatch.setattr(backend, "send_events", AsyncMock(side_effect=TypeError("cannot encode")))
        collector = make_collector(on_error=errors.append)
        collector.record(event("a"))
        collector.record(event("b"))

        result = await collector.flush()

        assert result == FlushResult(dropped=2)
        assert recording_sleep.delays == []
        assert collector.metrics.failed == 2
        assert collector.metrics.buffered == 0
        assert isinstance(errors[0], FlushFailureError)
        assert errors[0].event_count == 2

        collector.record(event("c"))
        monkeypatch.undo()
        assert (await collector.flush()).sent == 1

    async def test_partial_ack_requeues_retryable_only(self, make_collector, backend_stub):
        backend_stub.events_queue.append(
            httpx.Response(
                207,
                json={
                    "accepted": 1,
                    "failed": [
                        {"index": 1, "retryable": True, "error": "throttled"},
                        {"index": 2, "retryable": False, "error": "invalid"},
                    ],
                },
            )
        )
        collector = make_collector()
        for name in "abc":
            collector.record(event(name))

        result = await collector.flush()

        assert result == FlushResult(sent=1, requeued=1, dropped=1)
        assert names(collector) == ["b"]
        assert collector.metrics.sent == 1
        assert collector.metrics.failed == 1

    async def test_concurrent_flushes_share_one_send(self, make_collector, backend_stub):
        backend_stub.gate = asyncio.Event()
        collector = make_collector()
        collector.record(event("a"))

        first = asyncio.create_task(collector.flush())
        second = asyncio.create_task(collector.flush())
        await asyncio.sleep(0.01)
        assert collector.is_flushing
        backend_stub.gate.set()

        results = await asyncio.gather(first, second)

        assert results == [FlushResult(sent=1), FlushResult(sent=1)]
        assert len(backend_stub.event_requests) == 1

    async def test_on_flush_callback(self, make_collector):
        flushed = []
        collector = make_collector(on_flush=flushed.append)
        collector.record(event("a"))

        await collector.flush()

        assert flushed == [FlushResult(sent=1)]


class TestBackgroundFlushing:
    """Tests for high-water flushes, the timer and shutdown."""

    async def test_high_water_mark_triggers_flush(self, make_collector, manual_sleep, backend_stub, wait_until):
        collector = make_collector(batch_size=2, sleep=manual_sleep)
        collector.start()

        collector.record(event("a"))
        collector.record(event("b"))

        await wait_until(lambda: collector.metrics.sent == 2)
        assert len(backend_stub.event_requests) == 1
        await collector.close()

    async def test_record_from_another_thread(self, make_collector, manual_sleep, backend_stub, wait_until):
        collector = make_collector(batch_size=2, sleep=manual_sleep)
        collector.start()

        worker = threading.Thread(target=lambda: [collector.record(event(n)) for n in "ab"])
        worker.start()
        worker.join()

        await wait_until(lambda: len(backend_stub.event_requests) == 1)
        await collector.close()

    async def test_timer_flushes(self, make_collector, manual_sleep, backend_stub, wait_until):
        collector = make_collector(flush_interval_seconds=10, sleep=manual_sleep)
        collector.start()
        collector.record(event("a"))
        await wait_until(lambda: manual_sleep.sleeping == 1)

        manual_sleep.release()

        await wait_until(lambda: len(backend_stub.event_requests) == 1)
        assert manual_sleep.delays[0] == 10
        await collector.close()

    async def test_close_flushes_remaining_events(self, make_collector, manual_sleep, backend_stub):
        collector = make_collector(sleep=manual_sleep)
        collector.start()
        collector.record(event("a"))

        result = await collector.close()

        assert result.sent == 1
        assert len(backend_stub.event_requests) == 1

    async def test_close_timeout(self, make_collector, backend_stub):
        backend_stub.gate = asyncio.Event()
        collector = make_collector()
        collector.record(event("a"))

        assert await collector.close(timeout=0.05) is None

        backend_stub.gate.set()
        assert (await collector.flush()).sent == 1
