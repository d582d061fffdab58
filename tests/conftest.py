"""
Test configuration and fixtures.

HTTP is faked with httpx.MockTransport driven by BackendStub; time is
controlled with injected sleep/clock callables.
"""

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from togglebox.core.config import ClientSettings
from togglebox.schemas.snapshot import Snapshot
from togglebox.services.backend import BackendClient

API_URL = "http://togglebox.test"
PLATFORM = "web"
ENVIRONMENT = "test"


# =============================================================================
# Payload Builders
# =============================================================================

def build_payload(
    version: str | int | None = "1",
    flags: list[dict] | None = None,
    experiments: list[dict] | None = None,
    config: dict | None = None,
) -> dict[str, Any]:
    """Backend snapshot body in wire form."""
    data: dict[str, Any] = {
        "config": config if config is not None else {"theme": "dark", "limits": {"items": 20}},
        "flags": flags if flags is not None else [
            {"flagKey": "dark-mode", "enabled": True, "rolloutPercentage": 50},
            {"flagKey": "new-checkout", "enabled": False},
            {"flagKey": "everyone", "enabled": True},
        ],
        "experiments": experiments if experiments is not None else [
            {
                "experimentKey": "pricing-page",
                "status": "running",
                "variations": [
                    {"variationKey": "control", "weight": 50, "isControl": True},
                    {"variationKey": "discount", "weight": 50, "value": {"price": 9}},
                ],
            },
            {
                "experimentKey": "onboarding",
                "status": "paused",
                "variations": [{"variationKey": "a", "weight": 100}],
            },
        ],
    }
    if version is not None:
        data["version"] = version
    return {"data": data}


@pytest.fixture
def make_payload() -> Callable[..., dict]:
    return build_payload


@pytest.fixture
def make_snapshot() -> Callable[..., Snapshot]:
    def _make(version: str = "1", **kwargs: Any) -> Snapshot:
        return Snapshot.from_payload(
            build_payload(version=version, **kwargs),
            platform=PLATFORM,
            environment=ENVIRONMENT,
        )

    return _make


# =============================================================================
# Fake Backend
# =============================================================================

class BackendStub:
    """
    httpx.MockTransport handler standing in for the ToggleBox API.

    Queued responses (httpx.Response or an exception to raise) are served
    first; afterwards the snapshot endpoint returns `payload` and the events
    endpoint answers 202. Setting `gate` holds every request until the event
    is set.
    """

    def __init__(self) -> None:
        self.payload: dict = build_payload()
        self.snapshot_queue: list[Any] = []
        self.events_queue: list[Any] = []
        self.snapshot_requests: list[httpx.Request] = []
        self.event_requests: list[httpx.Request] = []
        self.gate: asyncio.Event | None = None

    @property
    def event_batches(self) -> list[list[dict]]:
        return [json.loads(r.content)["events"] for r in self.event_requests]

    @property
    def sent_events(self) -> list[dict]:
        return [event for batch in self.event_batches for event in batch]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/snapshot"):
            self.snapshot_requests.append(request)
            queue, default = self.snapshot_queue, httpx.Response(200, json=self.payload)
        elif request.url.path.endswith("/stats/events"):
            self.event_requests.append(request)
            queue, default = self.events_queue, httpx.Response(202)
        else:
            return httpx.Response(404)

        if self.gate is not None:
            await self.gate.wait()

        if not queue:
            return default
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def backend_stub() -> BackendStub:
    return BackendStub()


@pytest.fixture
def transport(backend_stub: BackendStub) -> httpx.MockTransport:
    return httpx.MockTransport(backend_stub)


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(
        platform=PLATFORM,
        environment=ENVIRONMENT,
        api_url=API_URL,
        api_key="test-key",
        polling_interval=10_000,
        stats_flush_interval=10_000,
        cache={"enabled": False},
    )


@pytest.fixture
async def backend(settings: ClientSettings, transport: httpx.MockTransport):
    client = BackendClient(settings, transport=transport)
    yield client
    await client.close()


# =============================================================================
# Time Control
# =============================================================================

class ManualSleep:
    """Sleep replacement that only returns when the test calls release()."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._waiters: list[asyncio.Future] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future

    @property
    def sleeping(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    def release(self) -> None:
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(None)


class RecordingSleep:
    """Sleep replacement that returns immediately and records the delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def manual_sleep() -> ManualSleep:
    return ManualSleep()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def wait_until() -> Callable:
    """Poll a predicate on the event loop until it holds."""
    return _wait_until
