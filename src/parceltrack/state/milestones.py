"""Parcel status state machine.

``accepted -> picked-up -> in-transit -> delivered`` (terminal). Only the
immediate successor of the current status is a valid transition, and each
transition completes exactly one milestone.
"""

from __future__ import annotations

from datetime import datetime

from parceltrack.exceptions import InvalidTransitionError
from parceltrack.models.location import Location
from parceltrack.models.tracking import ParcelStatus, TrackingMilestone

STATUS_ORDER: tuple[ParcelStatus, ...] = (
    ParcelStatus.ACCEPTED,
    ParcelStatus.PICKED_UP,
    ParcelStatus.IN_TRANSIT,
    ParcelStatus.DELIVERED,
)

_MILESTONE_TEXT: dict[ParcelStatus, tuple[str, str]] = {
    ParcelStatus.ACCEPTED: ("Order Accepted", "A driver accepted the delivery request"),
    ParcelStatus.PICKED_UP: ("Picked Up", "The driver collected the parcel from the sender"),
    ParcelStatus.IN_TRANSIT: ("In Transit", "The parcel is on its way to the recipient"),
    ParcelStatus.DELIVERED: ("Delivered", "The parcel was handed over to the recipient"),
}


def next_status(current: ParcelStatus) -> ParcelStatus | None:
    """Successor of *current*, or ``None`` when it is terminal."""
    index = STATUS_ORDER.index(current)
    if index + 1 >= len(STATUS_ORDER):
        return None
    return STATUS_ORDER[index + 1]


def is_terminal(status: ParcelStatus) -> bool:
    return next_status(status) is None


def validate_transition(current: ParcelStatus, requested: ParcelStatus | str, *, parcel_id: str = "") -> ParcelStatus:
    """Return *requested* as a :class:`ParcelStatus` if it may follow *current*.

    Raises :class:`InvalidTransitionError` for unknown statuses, repeats,
    skips, reversals and anything requested after ``delivered``.
    """
    try:
        target = ParcelStatus(requested)
    except ValueError as exc:
        raise InvalidTransitionError(
            f"Unknown parcel status {requested!r}",
            parcel_id=parcel_id,
            current=current.value,
            requested=str(requested),
        ) from exc

    expected = next_status(current)
    if expected is None:
        raise InvalidTransitionError(
            f"Parcel {parcel_id} is already {current.value}",
            parcel_id=parcel_id,
            current=current.value,
            requested=target.value,
        )
    if target != expected:
        raise InvalidTransitionError(
            f"Parcel {parcel_id} cannot move from {current.value} to {target.value} (expected {expected.value})",
            parcel_id=parcel_id,
            current=current.value,
            requested=target.value,
        )
    return target


def milestone_id(parcel_id: str, status: ParcelStatus) -> str:
    return f"{parcel_id}:{status.value}"


def initial_milestones(
    parcel_id: str,
    *,
    accepted_at: datetime,
    location: Location | None = None,
) -> tuple[TrackingMilestone, ...]:
    """The full canonical timeline with only ``Order Accepted`` completed."""
    milestones: list[TrackingMilestone] = []
    for status in STATUS_ORDER:
        title, description = _MILESTONE_TEXT[status]
        done = status == ParcelStatus.ACCEPTED
        milestones.append(
            TrackingMilestone(
                id=milestone_id(parcel_id, status),
                status=status,
                title=title,
                description=description,
                timestamp=accepted_at if done else None,
                location=location if done else None,
                completed=done,
            )
        )
    return tuple(milestones)


def complete_milestone(
    milestones: tuple[TrackingMilestone, ...],
    status: ParcelStatus,
    *,
    at: datetime,
    location: Location | None,
) -> tuple[TrackingMilestone, ...]:
    """Return *milestones* with the one for *status* completed.

    Completed milestones are never touched again.
    """
    updated: list[TrackingMilestone] = []
    for milestone in milestones:
        if milestone.status == status and not milestone.completed:
            milestone = milestone.model_copy(update={"completed": True, "timestamp": at, "location": location})
        updated.append(milestone)
    return tuple(updated)
