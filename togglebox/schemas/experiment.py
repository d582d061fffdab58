"""
Pydantic Schemas for Experiments.

An experiment splits eligible users across weighted variations. Weights are
percentages; their sum may be below 100, in which case the remaining users
are left unassigned (treated as "not in the experiment", not as an error).

Example (wire form):
    {
        "experimentKey": "pricing-page",
        "status": "running",
        "variations": [
            {"variationKey": "control", "weight": 50, "isControl": true},
            {"variationKey": "variant-a", "weight": 50, "value": {"price": 9}}
        ]
    }
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field, field_validator, model_validator

from togglebox.schemas.base import WireModel
from togglebox.schemas.flag import TargetingRule


class ExperimentStatus(str, Enum):
    """Experiment lifecycle states. Only RUNNING experiments assign users."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Variation(WireModel):
    """One arm of an experiment."""

    model_config = ConfigDict(frozen=True)

    variation_key: str = Field(..., min_length=1, max_length=100)
    weight: float = Field(..., ge=0, le=100)
    value: Any = None
    is_control: bool = False


class Experiment(WireModel):
    """
    A multi-variation experiment.

    Attributes:
        experiment_key: Machine-readable identifier.
        status: Lifecycle state.
        variations: Ordered variations; order defines the bucket ranges.
        rules: Entry rules; when present a user must match one that serves True.
        force_include_users: Users that skip entry rules.
        force_exclude_users: Users never assigned.
        scheduled_start_at: Assignments start at this instant (optional).
        scheduled_end_at: Assignments stop at this instant (optional).

    Invariants:
        - sum(variation.weight) <= 100
        - variation keys are unique
    """

    model_config = ConfigDict(frozen=True)

    experiment_key: str = Field(..., min_length=1, max_length=100)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variations: tuple[Variation, ...] = ()
    rules: tuple[TargetingRule, ...] = ()
    force_include_users: frozenset[str] = frozenset()
    force_exclude_users: frozenset[str] = frozenset()
    scheduled_start_at: datetime | None = None
    scheduled_end_at: datetime | None = None

    @field_validator("scheduled_start_at", "scheduled_end_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC so they compare with aware ones."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def validate_variations(self) -> "Experiment":
        """Reject weight totals above 100 and duplicate variation keys."""
        # Compared in basis points; two-decimal weights do not sum exactly as floats
        basis_points = sum(round(v.weight * 100) for v in self.variations)
        if basis_points > 10_000:
            raise ValueError(
                f"Variation weights for '{self.experiment_key}' sum to {basis_points / 100}, must be <= 100"
            )

        keys = [v.variation_key for v in self.variations]
        if len(keys) != len(set(keys)):
            raise ValueError(f"Duplicate variation keys in '{self.experiment_key}'")

        if (
            self.scheduled_start_at is not None
            and self.scheduled_end_at is not None
            and self.scheduled_end_at <= self.scheduled_start_at
        ):
            raise ValueError("scheduled_end_at must be after scheduled_start_at")

        return self

    @property
    def total_weight(self) -> float:
        return sum(v.weight for v in self.variations)

    def get_variation(self, variation_key: str) -> Variation | None:
        for variation in self.variations:
            if variation.variation_key == variation_key:
                return variation
        return None
