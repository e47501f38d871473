"""Base Pydantic model for consortium, collection and run records.

Records arrive as camelCase JSON (remote API, local store) and are written
back the same way. Unknown keys are kept so a record round-trips intact.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class FedrunModel(BaseModel):
    """Base model for all records handled by the run controller."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='allow',
        validate_assignment=True,
        use_enum_values=True,
    )

    def to_document(self) -> dict:
        """Dump as a JSON-compatible camelCase dict."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
