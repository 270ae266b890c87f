"""Parcel tracking models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from parceltrack.models._base import OptionalTimestamp, Timestamp, TrackingBaseModel
from parceltrack.models.location import Location


class ParcelStatus(StrEnum):
    """Parcel lifecycle, in canonical order."""

    ACCEPTED = "accepted"
    PICKED_UP = "picked-up"
    IN_TRANSIT = "in-transit"
    DELIVERED = "delivered"


class TrackingMilestone(TrackingBaseModel):
    """One step of the delivery timeline.

    ``completed`` flips from ``False`` to ``True`` exactly once; ``timestamp``
    is assigned by the relay when it does.
    """

    id: str
    status: ParcelStatus
    title: str
    description: str
    timestamp: OptionalTimestamp = None
    location: Location | None = None
    completed: bool = False


class ParcelTracking(TrackingBaseModel):
    """Authoritative tracking record of one parcel.

    Parameters
    ----------
    parcel_id : str
        Parcel identifier.
    driver_id : str
        Driver that accepted the parcel.
    current_location : Location or None
        Latest accepted fix; ``None`` until the first report.
    route : tuple of Location
        Thinned, bounded path in chronological order.
    status : ParcelStatus
        Current lifecycle status.
    estimated_arrival : datetime or None
        Advisory ETA; may move in either direction.
    milestones : tuple of TrackingMilestone
        The canonical timeline, pending entries included.
    destination : Location or None
        Drop-off point used for ETA estimation.
    version : int
        Incremented by every write; the ordering key for clients.
    updated_at : datetime
        Server time of the last write.
    """

    parcel_id: str = Field(..., min_length=1)
    driver_id: str = Field(..., min_length=1)
    current_location: Location | None = None
    route: tuple[Location, ...] = ()
    status: ParcelStatus = ParcelStatus.ACCEPTED
    estimated_arrival: OptionalTimestamp = None
    milestones: tuple[TrackingMilestone, ...] = ()
    destination: Location | None = None
    version: int = Field(default=0, ge=0)
    updated_at: Timestamp

    @property
    def is_delivered(self) -> bool:
        return self.status == ParcelStatus.DELIVERED

    @property
    def latest_completed_milestone(self) -> TrackingMilestone | None:
        done = [m for m in self.milestones if m.completed]
        return done[-1] if done else None


class EtaUpdate(TrackingBaseModel):
    """Advisory arrival estimate; ``delay`` is in whole minutes."""

    parcel_id: str
    eta: Timestamp
    delay: int | None = Field(default=None, ge=0)
    issued_at: Timestamp
