"""
Pydantic Schemas for Usage Telemetry.

StatsEvents are created by the evaluation engine (impressions) or by explicit
caller calls (conversions, custom events). They are buffered by the
StatsCollector and posted in batches:

    POST .../stats/events
    {"events": [{"type": "impression", "userId": "user-1", ...}, ...]}

The backend answers 200/202 when every event was accepted, or 207 with a
partial acknowledgement:

    {"accepted": 18, "failed": [{"index": 3, "retryable": true, "error": "..."}]}
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import ConfigDict, Field, JsonValue

from togglebox.schemas.base import WireModel
from togglebox.schemas.context import AttributeValue


class StatsEventType(str, Enum):
    """Kinds of telemetry events."""

    IMPRESSION = "impression"
    CONVERSION = "conversion"
    CUSTOM = "custom"


class StatsEvent(WireModel):
    """A single telemetry event."""

    model_config = ConfigDict(frozen=True)

    type: StatsEventType
    user_id: str | None = None
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)
    experiment_key: str | None = None
    variation_key: str | None = None
    metric_id: str | None = None
    event_name: str | None = None
    value: float | None = None
    properties: dict[str, JsonValue] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBatch(WireModel):
    """Request body for the events endpoint."""

    events: list[StatsEvent]


class FailedEvent(WireModel):
    """One rejected event in a partial acknowledgement."""

    index: int = Field(..., ge=0)
    retryable: bool = False
    error: str | None = None


class EventsAck(WireModel):
    """
    Backend acknowledgement for an event batch.

    A plain 200/202 without a body is represented as accepted=len(batch) and
    no failures.
    """

    accepted: int = Field(default=0, ge=0)
    failed: list[FailedEvent] = Field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed)
