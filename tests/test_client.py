"""
Tests for the ToggleBox Client.

These tests drive the full client (sync, cache, evaluation, stats) against
a fake backend:
    - Lifecycle: start, stop, async context manager
    - Listeners for snapshot updates and errors
    - Global context and event tracking
"""

import httpx
import pytest

from togglebox.cache.persistence import FileSnapshotPersistence
from togglebox.client import ToggleBoxClient
from togglebox.core.exceptions import InvalidContextError, NetworkError, ToggleBoxError
from togglebox.services.stats import FlushResult
from togglebox.services.sync import SyncState


@pytest.fixture
async def make_client(settings, transport, manual_sleep):
    clients = []

    def _make(client_settings=None, **kwargs) -> ToggleBoxClient:
        kwargs.setdefault("transport", transport)
        kwargs.setdefault("sleep", manual_sleep)
        client = ToggleBoxClient(client_settings or settings, **kwargs)
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.stop()


class TestLifecycle:
    """Tests for start(), stop() and the context manager."""

    async def test_context_manager(self, settings, transport, manual_sleep):
        async with ToggleBoxClient(settings, transport=transport, sleep=manual_sleep) as client:
            assert client.state == SyncState.POLLING
            assert client.snapshot_version == "1"
            assert client.is_flag_enabled("everyone", {"user_id": "user-1"}) is True

        assert client.state == SyncState.STOPPED

    async def test_start_is_idempotent(self, make_client, backend_stub):
        client = make_client()

        await client.start()
        await client.start()

        assert len(backend_stub.snapshot_requests) == 1

    async def test_snapshot_queryable_after_stop(self, make_client):
        client = make_client()
        await client.start()

        await client.stop()

        assert client.is_flag_enabled("everyone") is True
        assert client.get_config_value("theme") == "dark"

    async def test_stop_flushes_impressions(self, make_client, backend_stub):
        client = make_client()
        await client.start()
        variant = client.get_variant("pricing-page", {"user_id": "user-1"})

        await client.stop()

        (impression,) = backend_stub.sent_events
        assert impression["type"] == "impression"
        assert impression["experimentKey"] == "pricing-page"
        assert impression["variationKey"] == variant
        assert impression["userId"] == "user-1"

    async def test_calls_after_stop_are_noops(self, make_client, backend_stub):
        client = make_client()
        await client.start()
        await client.stop()

        assert await client.refresh() is False
        assert await client.flush_stats() == FlushResult()
        assert len(backend_stub.snapshot_requests) == 1

    async def test_start_after_stop_raises(self, make_client):
        client = make_client()
        await client.start()
        await client.stop()

        with pytest.raises(ToggleBoxError) as exc_info:
            await client.start()

        assert exc_info.value.error_code == "CLIENT_CLOSED"

    async def test_offline_start_fails_closed(self, make_client, backend_stub):
        backend_stub.snapshot_queue.append(httpx.ConnectError("offline"))
        client = make_client()

        await client.start()

        assert client.snapshot_version is None
        assert client.is_flag_enabled("everyone", {"user_id": "user-1"}) is False
        assert client.get_config() == {}

    async def test_offline_start_serves_persisted_snapshot(
        self, make_client, backend_stub, tmp_path, make_snapshot
    ):
        persistence = FileSnapshotPersistence(tmp_path / "snap.json", "web", "test", 86_400)
        await persistence.save(make_snapshot("7"))
        backend_stub.snapshot_queue.append(httpx.ConnectError("offline"))
        client = make_client(persistence=persistence)

        await client.start()

        assert client.snapshot_version == "7"
        assert client.is_stale() is True
        assert client.is_flag_enabled("everyone", {"user_id": "user-1"}) is True


class TestListeners:
    """Tests for on_update() and on_error()."""

    async def test_on_update_and_unsubscribe(self, make_client):
        updates = []
        client = make_client()
        unsubscribe = client.on_update(updates.append)

        await client.start()
        unsubscribe()
        await client.refresh()

        assert [s.version for s in updates] == ["1"]

    async def test_on_error_receives_network_error(self, make_client, backend_stub):
        errors = []
        backend_stub.snapshot_queue.append(httpx.Response(503))
        client = make_client()
        client.on_error(errors.append)

        await client.start()

        assert len(errors) == 1
        assert isinstance(errors[0], NetworkError)
        assert errors[0].http_status == 503

    async def test_raising_listener_does_not_block_others(self, make_client):
        def explode(snapshot):
            raise RuntimeError("listener bug")

        updates = []
        client = make_client()
        client.on_update(explode)
        client.on_update(updates.append)

        await client.start()

        assert len(updates) == 1
        assert client.snapshot_version == "1"


class TestContextAndTracking:
    """Tests for the global context and event tracking."""

    async def test_set_and_get_context(self, make_client):
        client = make_client()
        await client.start()

        client.set_context({"user_id": "user-5", "attributes": {"plan": "pro"}})

        assert client.get_context().user_id == "user-5"
        assert client.get_variant("pricing-page") in {"control", "discount"}

        client.set_context(None)
        assert client.get_context() is None
        with pytest.raises(InvalidContextError):
            client.get_variant("pricing-page")

    async def test_track_conversion_sent_on_flush(self, make_client, backend_stub):
        client = make_client()
        await client.start()

        client.track_conversion("pricing-page", "purchase", {"user_id": "user-1"}, value=49.0)
        result = await client.flush_stats()

        assert result == FlushResult(sent=1)
        (conversion,) = backend_stub.sent_events
        assert conversion["type"] == "conversion"
        assert conversion["metricId"] == "purchase"
        assert conversion["value"] == 49.0

    async def test_track_conversion_uses_global_user(self, make_client, backend_stub):
        client = make_client()
        await client.start()
        client.set_context({"user_id": "user-8"})

        client.track_conversion("pricing-page", "purchase")
        await client.flush_stats()

        assert backend_stub.sent_events[0]["userId"] == "user-8"

    async def test_track_event(self, make_client, backend_stub):
        client = make_client()
        await client.start()

        client.track_event("signup", properties={"source": "ad"})
        await client.flush_stats()

        (custom,) = backend_stub.sent_events
        assert custom["eventName"] == "signup"
        assert custom["properties"] == {"source": "ad"}

    async def test_stats_disabled_sends_nothing(self, make_client, backend_stub, settings):
        client = make_client(settings.model_copy(update={"stats_enabled": False}))
        await client.start()

        client.get_variant("pricing-page", {"user_id": "user-1"})
        client.track_event("signup")
        await client.stop()

        assert backend_stub.event_requests == []
        assert client.stats_metrics.buffered == 0
