"""
Pydantic Schemas for the FastAPI Evaluation Router.

This module defines the request/response schemas of the endpoints mounted by
togglebox.integrations.fastapi. Services embedding the client use them to
expose local evaluation to frontends that cannot run the client themselves.

Design Goals:
    - Minimal payload size for low latency
    - Simple request/response structure
    - Same context shape as the client API (user_id + scalar attributes)
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from togglebox.schemas.context import TargetingContext


# =============================================================================
# Flag Evaluation
# =============================================================================

class EvaluateFlagRequest(BaseModel):
    """
    Request schema for evaluating a single feature flag.

    Example:
        POST /evaluate
        {
            "flag_key": "dark-mode",
            "context": {
                "user_id": "user-12345",
                "attributes": {"country": "US"}
            }
        }
    """

    flag_key: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="The flag key to evaluate",
        examples=["dark-mode", "new-checkout-flow"],
    )

    context: TargetingContext = Field(
        default_factory=TargetingContext,
        description="User context for evaluation",
    )

    default_value: bool = Field(
        default=False,
        description="Value to return if the flag is not found",
    )


class EvaluateFlagResponse(BaseModel):
    """
    Response schema for single flag evaluation.

    Example:
        {
            "flag_key": "dark-mode",
            "value": true,
            "variant": null,
            "reason": "ROLLOUT_MATCH"
        }
    """

    flag_key: str = Field(description="The evaluated flag key")
    value: bool = Field(description="Evaluation result (true/false)")
    variant: str | None = Field(default=None, description="Variant served when on")
    reason: str = Field(
        description="Reason for the evaluation result",
        examples=["ROLLOUT_MATCH", "RULE_MATCH", "FLAG_DISABLED", "FLAG_NOT_FOUND"],
    )


class EvaluateAllRequest(BaseModel):
    """
    Request schema for evaluating all flags for a user.

    Example:
        POST /evaluate/all
        {"context": {"user_id": "user-12345"}}
    """

    context: TargetingContext = Field(
        default_factory=TargetingContext,
        description="User context for evaluation",
    )


class EvaluateAllResponse(BaseModel):
    """
    Response schema for evaluating all flags.

    Example:
        {
            "flags": {"dark-mode": true, "new-checkout": false},
            "environment": "production",
            "snapshot_version": "42",
            "evaluated_at": "2024-01-15T10:30:00Z"
        }
    """

    flags: dict[str, bool] = Field(description="Map of flag_key to evaluation result")
    environment: str = Field(description="Environment the flags were evaluated in")
    snapshot_version: str | None = Field(description="Snapshot the results come from")
    evaluated_at: datetime = Field(description="Timestamp of evaluation")


# =============================================================================
# Experiment Assignment
# =============================================================================

class AssignRequest(BaseModel):
    """
    Request schema for experiment assignment.

    Example:
        POST /experiments/pricing-page/assign
        {"context": {"user_id": "user-12345"}}
    """

    context: TargetingContext = Field(
        default_factory=TargetingContext,
        description="User context; user_id is required",
    )


class AssignResponse(BaseModel):
    """
    Response schema for experiment assignment.

    variation_key is null when the user is not assigned (see reason).
    """

    experiment_key: str
    variation_key: str | None = None
    value: Any = None
    is_control: bool = False
    reason: str = Field(examples=["HASH_ASSIGNMENT", "NOT_RUNNING", "UNALLOCATED"])


# =============================================================================
# Event Tracking
# =============================================================================

class TrackEventRequest(BaseModel):
    """
    Request schema for recording a conversion or custom event.

    Example (conversion):
        {
            "type": "conversion",
            "experiment_key": "pricing-page",
            "metric_id": "purchase",
            "value": 49.0,
            "context": {"user_id": "user-12345"}
        }

    Example (custom):
        {"type": "custom", "event_name": "signup", "context": {}}
    """

    type: Literal["conversion", "custom"] = "custom"
    event_name: str | None = Field(default=None, max_length=100)
    experiment_key: str | None = Field(default=None, max_length=100)
    metric_id: str | None = Field(default=None, max_length=100)
    variation_key: str | None = Field(default=None, max_length=100)
    value: float | None = None
    properties: dict[str, Any] | None = None
    context: TargetingContext = Field(default_factory=TargetingContext)

    @model_validator(mode="after")
    def check_required_fields(self) -> "TrackEventRequest":
        """Conversions need experiment_key and metric_id; custom events need event_name."""
        if self.type == "conversion" and not (self.experiment_key and self.metric_id):
            raise ValueError("conversion events require experiment_key and metric_id")
        if self.type == "custom" and not self.event_name:
            raise ValueError("custom events require event_name")
        return self


class TrackEventResponse(BaseModel):
    """Response schema for event tracking."""

    accepted: bool = Field(description="False when stats collection is disabled")
    buffered: int = Field(description="Events currently waiting to be sent")


# =============================================================================
# Config & Health
# =============================================================================

class ConfigResponse(BaseModel):
    """
    Remote config of the current snapshot.

    Example:
        {"config": {"theme": "dark"}, "snapshot_version": "42", "stale": false}
    """

    config: dict[str, Any]
    snapshot_version: str | None
    stale: bool


class HealthResponse(BaseModel):
    """
    Health of the embedded client.

    status:
        healthy   - fresh snapshot
        degraded  - serving a stale snapshot
        unhealthy - no snapshot yet (evaluation fails closed)
    """

    status: Literal["healthy", "degraded", "unhealthy"]
    platform: str
    environment: str
    sync_state: str
    snapshot_version: str | None
    stats: dict[str, int]
