"""
Shared Pydantic base for wire models.

The ToggleBox API speaks camelCase JSON (``flagKey``, ``rolloutPercentage``)
while Python code uses snake_case attributes. Models inheriting from
WireModel accept either form on input and dump camelCase with
``model_dump(by_alias=True)``.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        """Dump to the JSON-compatible camelCase form used on the wire."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
