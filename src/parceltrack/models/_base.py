"""Base model for parceltrack wire types.

Every wire model inherits from :class:`TrackingBaseModel` which provides:

* ``alias_generator=to_camel`` so the camelCase keys used on the event
  channel map to snake_case attributes.
* Frozen instances: a snapshot handed to a reader can never change under
  it; writers build a new instance with ``model_copy(update=...)``.
* :meth:`to_wire` for the JSON-ready camelCase representation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

from parceltrack.ingestion.normalize import parse_timestamp

Timestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Datetime coerced from ISO strings or epoch seconds/milliseconds, always UTC-aware."""

OptionalTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]


class TrackingBaseModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump as JSON-compatible camelCase dict, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
