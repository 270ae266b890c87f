"""Event channel framing.

Every frame is a JSON object ``{"event": <name>, "data": <payload>}``.
Subscription events carry the bare parcel id as ``data`` (an object with
``parcelId`` is accepted too); everything else carries a camelCase model.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from parceltrack.exceptions import ProtocolError, TrackingError
from parceltrack.models._base import TrackingBaseModel


class ClientEvent(StrEnum):
    SUBSCRIBE_PARCEL = "subscribe-parcel"
    UNSUBSCRIBE_PARCEL = "unsubscribe-parcel"
    DRIVER_LOCATION_UPDATE = "driver-location-update"
    PARCEL_STATUS_UPDATE = "parcel-status-update"


class ServerEvent(StrEnum):
    DRIVER_LOCATION_UPDATE = "driver-location-update"
    PARCEL_TRACKING_UPDATE = "parcel-tracking-update"
    ETA_UPDATE = "eta-update"
    ERROR = "error"


@dataclass(frozen=True)
class Message:
    """One decoded frame."""

    event: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        data = self.data.to_wire() if isinstance(self.data, TrackingBaseModel) else self.data
        return {"event": str(self.event), "data": data}


def encode_message(event: str, data: Any = None) -> str:
    return json.dumps(Message(event=event, data=data).to_dict(), separators=(",", ":"))


def decode_message(raw: str | bytes | dict[str, Any]) -> Message:
    """Parse a frame; raises :class:`ProtocolError` when it is not one."""
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolError("Frame is not valid JSON") from exc
    else:
        payload = raw
    if not isinstance(payload, dict):
        raise ProtocolError("Frame must be a JSON object")
    event = payload.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError("Frame is missing the 'event' field")
    return Message(event=event, data=payload.get("data"))


def parcel_id_from(data: Any) -> str:
    """Extract the parcel id of a (un)subscribe payload."""
    if isinstance(data, dict):
        data = data.get("parcelId", data.get("parcel_id"))
    if isinstance(data, str) and data.strip():
        return data.strip()
    raise ProtocolError("A parcel id is required")


def error_message(exc: TrackingError, *, parcel_id: str | None = None) -> Message:
    payload: dict[str, Any] = {"code": exc.code, "message": str(exc)}
    if parcel_id is None:
        parcel_id = getattr(exc, "parcel_id", None) or None
    if parcel_id:
        payload["parcelId"] = parcel_id
    return Message(event=ServerEvent.ERROR, data=payload)
