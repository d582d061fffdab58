"""
Targeting Context Schema.

A TargetingContext describes who is being evaluated. The user_id is required
for any hashing-based decision (percentage rollout, experiment assignment);
attributes feed targeting rules.

Attribute values form a closed set of scalars: str, int, float, bool and
None. An attribute that is absent from the mapping is a distinct case from an
attribute present with value None; lookups return MISSING for the former.

Example:
    context = TargetingContext(
        user_id="user-12345",
        attributes={"country": "US", "plan": "premium", "beta": True},
    )
"""

from enum import Enum
from typing import Any, Mapping, Union

from pydantic import ConfigDict, Field, ValidationError

from togglebox.core.exceptions import InvalidContextError
from togglebox.schemas.base import WireModel

AttributeValue = Union[bool, int, float, str, None]


class Missing(Enum):
    """Sentinel type for an attribute that is not present in the context."""

    MISSING = "MISSING"

    def __repr__(self) -> str:
        return "MISSING"


MISSING = Missing.MISSING


class TargetingContext(WireModel):
    """
    User context for flag and experiment evaluation.

    Attributes:
        user_id: Stable user identifier used for bucketing.
        attributes: Scalar attributes used by targeting rules.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str | None = Field(
        default=None,
        max_length=255,
        description="Unique user identifier for consistent hashing",
        examples=["user-12345"],
    )

    attributes: dict[str, AttributeValue] = Field(
        default_factory=dict,
        description="Scalar attributes used by targeting rules",
        examples=[{"country": "US", "plan": "premium"}],
    )

    @property
    def has_user_id(self) -> bool:
        return bool(self.user_id)

    def get_attribute(self, name: str) -> AttributeValue | Missing:
        """Return the attribute value, or MISSING when it is absent."""
        return self.attributes.get(name, MISSING)

    def merged(self, other: "TargetingContext | None") -> "TargetingContext":
        """
        Overlay another context on top of this one.

        The other context's user_id wins when set, and its attributes replace
        ours key by key.
        """
        if other is None:
            return self
        return TargetingContext(
            user_id=other.user_id or self.user_id,
            attributes={**self.attributes, **other.attributes},
        )

    @classmethod
    def coerce(
        cls,
        value: "TargetingContext | Mapping[str, Any] | None",
    ) -> "TargetingContext | None":
        """
        Accept a context, a plain mapping, or None.

        Raises:
            InvalidContextError: If the mapping is not a valid context.
        """
        if value is None or isinstance(value, TargetingContext):
            return value
        try:
            return cls.model_validate(dict(value))
        except ValidationError as e:
            raise InvalidContextError(
                "Invalid targeting context",
                details={
                    "errors": [
                        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                        for err in e.errors()
                    ]
                },
            ) from e
