"""
ToggleBox Backend API Client.

Thin async wrapper over httpx for the two endpoints the client needs:

    GET  /api/v1/platforms/{platform}/environments/{environment}/snapshot
    POST /api/v1/platforms/{platform}/environments/{environment}/stats/events

Retries are not done here: the SyncManager and StatsCollector own backoff so
that at most one request per concern is in flight.
"""

import logging
from dataclasses import dataclass
from typing import Any, Sequence

import httpx
from pydantic import ValidationError

from togglebox.core.config import ClientSettings
from togglebox.core.exceptions import InvalidSnapshotError, NetworkError
from togglebox.schemas.stats import EventBatch, EventsAck, StatsEvent

logger = logging.getLogger(__name__)

USER_AGENT = "togglebox-python"


@dataclass(frozen=True)
class SnapshotResponse:
    """
    Result of a snapshot fetch.

    Attributes:
        payload: Decoded JSON body, or None when the backend answered 304.
        etag: ETag response header, if any.
    """

    payload: Any
    etag: str | None

    @property
    def not_modified(self) -> bool:
        return self.payload is None


class BackendClient:
    """
    Async client for the ToggleBox API.

    Usage:
        backend = BackendClient(settings)
        response = await backend.fetch_snapshot()
        ack = await backend.send_events(events)
        await backend.close()
    """

    def __init__(
        self,
        settings: ClientSettings,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the backend client.

        Args:
            settings: Client settings (api_url, api_key, timeout, target).
            http_client: Existing AsyncClient to use (not closed by close()).
            transport: Custom httpx transport, e.g. httpx.MockTransport in tests.
        """
        self.settings = settings
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.api_url,
            headers=self._headers(),
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.settings.api_key:
            headers["X-API-Key"] = self.settings.api_key
        return headers

    @property
    def _base_path(self) -> str:
        return (
            f"/api/v1/platforms/{self.settings.platform}"
            f"/environments/{self.settings.environment}"
        )

    # =========================================================================
    # Requests
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise NetworkError(
                f"HTTP {response.status_code} from {method} {path}: "
                f"{response.text[:200] or response.reason_phrase}",
                http_status=response.status_code,
            )
        return response

    async def fetch_snapshot(self, etag: str | None = None) -> SnapshotResponse:
        """
        Fetch the current snapshot payload.

        Args:
            etag: Version/ETag of the snapshot already held; sent as
                If-None-Match so the backend can answer 304.

        Returns:
            SnapshotResponse (payload None when not modified).

        Raises:
            NetworkError: On transport failure or an error status.
            InvalidSnapshotError: If the body is not JSON.
        """
        headers = {"If-None-Match": etag} if etag else {}
        response = await self._request("GET", f"{self._base_path}/snapshot", headers=headers)

        if response.status_code == 304:
            return SnapshotResponse(payload=None, etag=response.headers.get("ETag") or etag)

        try:
            payload = response.json()
        except ValueError as e:
            raise InvalidSnapshotError(f"Snapshot response is not JSON: {e}") from e

        return SnapshotResponse(payload=payload, etag=response.headers.get("ETag"))

    async def send_events(self, events: Sequence[StatsEvent]) -> EventsAck:
        """
        Post a batch of stats events.

        Returns:
            EventsAck. A 200/202 (with or without body) acknowledges every
            event; a 207 carries per-event failures.

        Raises:
            NetworkError: On transport failure or an error status.
        """
        body = EventBatch(events=list(events)).to_wire()
        response = await self._request("POST", f"{self._base_path}/stats/events", json=body)

        if response.status_code != 207:
            return EventsAck(accepted=len(events))

        try:
            return EventsAck.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            # Retryable: the whole batch is resent
            raise NetworkError(
                f"Unreadable partial acknowledgement: {e}",
                http_status=response.status_code,
            ) from e

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()
