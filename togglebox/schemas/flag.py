"""
Pydantic Schemas for Feature Flags and Targeting Rules.

Flags arrive from the backend as part of a snapshot and are evaluated
locally. Models are frozen: a snapshot is never mutated after construction.

Example (wire form):
    {
        "flagKey": "dark-mode",
        "enabled": true,
        "rolloutPercentage": 50,
        "defaultVariant": "dark",
        "rules": [
            {"attribute": "plan", "operator": "equals", "value": "premium", "priority": 0},
            {"attribute": "country", "operator": "in", "value": ["CN", "RU"], "serve": false, "priority": 1}
        ],
        "forceIncludeUsers": ["qa-1"]
    }
"""

from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field, field_validator, model_validator

from togglebox.schemas.base import WireModel


class RuleOperator(str, Enum):
    """Operators supported by targeting rules."""

    EQUALS = "equals"
    IN = "in"
    PERCENTAGE_ROLLOUT = "percentageRollout"


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


class TargetingRule(WireModel):
    """
    A condition over context attributes.

    Rules are evaluated in priority order (lowest first, declaration order
    for ties); the first match wins.

    Attributes:
        attribute: Context attribute the rule reads (equals/in only).
        operator: Comparison operator.
        value: Scalar for equals, list of scalars for in, rollout percentage
            (0-100, or None to reuse the owner's percentage) for
            percentageRollout.
        priority: Sort key.
        serve: Whether a match turns the flag on (True) or off (False).
        variant: Variant served on match, overriding the flag default.
    """

    model_config = ConfigDict(frozen=True)

    attribute: str | None = None
    operator: RuleOperator
    value: Any = None
    priority: int = 0
    serve: bool = True
    variant: str | None = None

    @model_validator(mode="after")
    def validate_value_for_operator(self) -> "TargetingRule":
        """Check that value has the shape the operator needs."""
        if self.operator in (RuleOperator.EQUALS, RuleOperator.IN) and not self.attribute:
            raise ValueError(f"'{self.operator.value}' rules require an attribute")

        if self.operator == RuleOperator.EQUALS and not _is_scalar(self.value):
            raise ValueError("'equals' rules require a scalar value")

        if self.operator == RuleOperator.IN:
            if not isinstance(self.value, (list, tuple)):
                raise ValueError("'in' rules require a list value")
            if not all(_is_scalar(v) for v in self.value):
                raise ValueError("'in' rules require a list of scalars")

        if self.operator == RuleOperator.PERCENTAGE_ROLLOUT and self.value is not None:
            if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
                raise ValueError("'percentageRollout' rules require a numeric value")
            if not 0 <= self.value <= 100:
                raise ValueError("'percentageRollout' value must be between 0 and 100")

        return self


class FeatureFlag(WireModel):
    """
    A feature flag with targeting rules and percentage rollout.

    Attributes:
        flag_key: Machine-readable identifier (e.g. "dark-mode").
        enabled: Master switch; a disabled flag is always off.
        rules: Ordered targeting rules.
        rollout_percentage: Share of users (0-100) that get the flag when no
            rule matches. 100 means everyone.
        default_variant: Variant reported for users who get the flag.
        force_include_users: Users that always get the flag.
        force_exclude_users: Users that never get the flag.

    Evaluation Logic:
        1. If enabled is False -> off
        2. Force exclude / force include lists
        3. First matching rule -> rule.serve
        4. bucket(user_id:flag_key) < rollout_percentage * 100
    """

    model_config = ConfigDict(frozen=True)

    flag_key: str = Field(..., min_length=1, max_length=100)
    enabled: bool = False
    rules: tuple[TargetingRule, ...] = ()
    rollout_percentage: float = Field(default=100, ge=0, le=100)
    default_variant: str | None = None
    force_include_users: frozenset[str] = frozenset()
    force_exclude_users: frozenset[str] = frozenset()

    @field_validator("rules")
    @classmethod
    def sort_rules_by_priority(cls, v: tuple[TargetingRule, ...]) -> tuple[TargetingRule, ...]:
        """Order rules by priority; sorted() is stable so ties keep declaration order."""
        return tuple(sorted(v, key=lambda rule: rule.priority))
