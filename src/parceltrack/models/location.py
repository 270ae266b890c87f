"""Location models."""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator

from parceltrack.geo import normalize_heading
from parceltrack.ingestion.normalize import safe_float, safe_str
from parceltrack.models._base import OptionalTimestamp, Timestamp, TrackingBaseModel


class Location(TrackingBaseModel):
    """A timestamped position fix.

    Parameters
    ----------
    latitude : float
        Degrees, within [-90, 90].
    longitude : float
        Degrees, within [-180, 180].
    timestamp : datetime
        Device time of the fix (UTC).
    accuracy : float or None
        Horizontal accuracy radius in meters.
    """

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    timestamp: Timestamp
    accuracy: float | None = Field(default=None, ge=0.0)

    @field_validator("latitude", "longitude", "accuracy", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> Any:
        parsed = safe_float(value)
        return value if parsed is None and value not in (None, "") else parsed

    def as_location(self) -> Location:
        """Plain :class:`Location` view (drops driver-specific fields)."""
        return Location(
            latitude=self.latitude,
            longitude=self.longitude,
            timestamp=self.timestamp,
            accuracy=self.accuracy,
        )


class DriverLocation(Location):
    """A position report from a driver's device.

    ``speed`` is in meters/second and ``heading`` in degrees clockwise from
    north. Both are optional on input; ingest fills them in. ``suspect`` and
    ``received_at`` are assigned by the relay, never trusted from the device.
    """

    driver_id: str = Field(..., min_length=1)
    parcel_id: str | None = None
    heading: float | None = None
    speed: float | None = Field(default=None, ge=0.0)
    suspect: bool = False
    received_at: OptionalTimestamp = None

    @field_validator("driver_id", mode="before")
    @classmethod
    def _strip_driver_id(cls, value: Any) -> Any:
        return safe_str(value) or ""

    @field_validator("parcel_id", mode="before")
    @classmethod
    def _strip_parcel_id(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("heading", mode="before")
    @classmethod
    def _normalize_heading(cls, value: Any) -> float | None:
        parsed = safe_float(value)
        return None if parsed is None else normalize_heading(parsed)

    @field_validator("speed", mode="before")
    @classmethod
    def _coerce_speed(cls, value: Any) -> Any:
        parsed = safe_float(value)
        return value if parsed is None and value not in (None, "") else parsed
