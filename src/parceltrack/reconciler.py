"""Viewer-side reconciliation of inbound tracking events.

Every entity is merged last-write-wins on its ordering key:

* driver locations by ``driverId``, ordered by sample ``timestamp``;
* parcel tracking by ``parcelId``, ordered by ``(version, updatedAt)``;
* ETAs by ``parcelId``, ordered by ``issuedAt``.

An update whose key is not strictly newer than the held one is ignored, so
replaying an event is a no-op and a missed update is simply superseded by
the next one. Snapshots fetched on resync go through the same check.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from parceltrack.exceptions import ProtocolError
from parceltrack.models.location import DriverLocation
from parceltrack.models.notifications import NotificationType
from parceltrack.models.tracking import EtaUpdate, ParcelTracking
from parceltrack.notifications import NotificationFeed
from parceltrack.protocol import Message, ServerEvent, decode_message
from parceltrack.state.policy import is_newer, order_key

_logger = logging.getLogger(__name__)


def _tracking_key(tracking: ParcelTracking) -> tuple[float, ...]:
    return order_key(tracking.version, tracking.updated_at)


class ClientReconciler:
    def __init__(self, feed: NotificationFeed | None = None) -> None:
        self.feed = feed or NotificationFeed()
        self._drivers: dict[str, DriverLocation] = {}
        self._tracking: dict[str, ParcelTracking] = {}
        self._etas: dict[str, EtaUpdate] = {}
        self.last_error: dict[str, Any] | None = None

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def driver_locations(self) -> Mapping[str, DriverLocation]:
        return MappingProxyType(self._drivers)

    @property
    def parcel_tracking(self) -> Mapping[str, ParcelTracking]:
        return MappingProxyType(self._tracking)

    @property
    def etas(self) -> Mapping[str, EtaUpdate]:
        return MappingProxyType(self._etas)

    def forget_parcel(self, parcel_id: str) -> None:
        """Drop local state of a parcel the relay no longer knows."""
        self._tracking.pop(parcel_id, None)
        self._etas.pop(parcel_id, None)

    # ------------------------------------------------------------------
    # Merges
    # ------------------------------------------------------------------

    def apply_driver_location(self, location: DriverLocation) -> bool:
        held = self._drivers.get(location.driver_id)
        if not is_newer(
            held=order_key(held.timestamp) if held is not None else None,
            incoming=order_key(location.timestamp),
        ):
            return False
        self._drivers[location.driver_id] = location
        self.feed.push(
            NotificationType.LOCATION,
            "Driver location updated",
            f"Driver {location.driver_id} reported a new position",
            parcel_id=location.parcel_id,
        )
        return True

    def apply_tracking(self, tracking: ParcelTracking) -> bool:
        held = self._tracking.get(tracking.parcel_id)
        if not is_newer(
            held=_tracking_key(held) if held is not None else None,
            incoming=_tracking_key(tracking),
        ):
            return False
        self._tracking[tracking.parcel_id] = tracking

        if held is not None:
            already_done = {m.id for m in held.milestones if m.completed}
            for milestone in tracking.milestones:
                if milestone.completed and milestone.id not in already_done:
                    self.feed.push(
                        NotificationType.MILESTONE,
                        milestone.title,
                        f"{milestone.title}: {milestone.description}",
                        parcel_id=tracking.parcel_id,
                    )
        return True

    def apply_eta(self, update: EtaUpdate) -> bool:
        held = self._etas.get(update.parcel_id)
        if not is_newer(
            held=order_key(held.issued_at) if held is not None else None,
            incoming=order_key(update.issued_at),
        ):
            return False
        self._etas[update.parcel_id] = update
        if update.delay:
            self.feed.push(
                NotificationType.DELAY,
                "Delivery delayed",
                f"Delivery delayed by {update.delay} minutes",
                parcel_id=update.parcel_id,
            )
        else:
            self.feed.push(
                NotificationType.ETA,
                "ETA updated",
                f"ETA updated: {update.eta.strftime('%H:%M:%S')} UTC",
                parcel_id=update.parcel_id,
            )
        return True

    def apply_message(self, message: Message | str | bytes | dict[str, Any]) -> bool:
        """Merge one server frame; returns whether local state changed."""
        if not isinstance(message, Message):
            message = decode_message(message)
        try:
            if message.event == ServerEvent.DRIVER_LOCATION_UPDATE:
                return self.apply_driver_location(DriverLocation.model_validate(message.data))
            if message.event == ServerEvent.PARCEL_TRACKING_UPDATE:
                return self.apply_tracking(ParcelTracking.model_validate(message.data))
            if message.event == ServerEvent.ETA_UPDATE:
                return self.apply_eta(EtaUpdate.model_validate(message.data))
        except ValidationError as exc:
            raise ProtocolError(f"Malformed {message.event} payload: {exc.error_count()} error(s)") from exc
        if message.event == ServerEvent.ERROR:
            self.last_error = message.data if isinstance(message.data, dict) else {"message": str(message.data)}
            _logger.warning("Relay reported error: %s", self.last_error)
            return False
        _logger.debug("Ignoring unknown event %s", message.event)
        return False
