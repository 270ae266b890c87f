"""Deterministic in-memory tracking store.

This is the only component allowed to mutate :class:`ParcelTracking`
records. Every write builds a new frozen snapshot and swaps it in with a
single assignment, so a reader holding a snapshot never sees a partially
applied update.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any

from parceltrack._constants import ARCHIVE_CAPACITY, ROUTE_MAX_POINTS, ROUTE_MIN_POINT_DISTANCE_M
from parceltrack.exceptions import ParcelNotFoundError, TrackingError
from parceltrack.models.location import Location
from parceltrack.models.tracking import ParcelStatus, ParcelTracking
from parceltrack.state.milestones import complete_milestone, initial_milestones, validate_transition
from parceltrack.state.route import extend_route

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TrackingStore:
    """Per-parcel authoritative tracking records.

    Active records live in a plain dict; delivered records can be moved to a
    bounded archive where they stay readable until evicted. State is
    volatile: nothing survives a process restart.

    ``locked(parcel_id)`` is the single-writer serialization point. The store's
    own methods are synchronous and therefore atomic on the event loop; the
    lock exists for callers composing several steps across ``await`` points.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        route_max_points: int = ROUTE_MAX_POINTS,
        route_min_point_distance_m: float = ROUTE_MIN_POINT_DISTANCE_M,
        archive_capacity: int = ARCHIVE_CAPACITY,
    ) -> None:
        self._clock = clock
        self._route_max_points = route_max_points
        self._route_min_point_distance_m = route_min_point_distance_m
        self._archive_capacity = archive_capacity
        self._parcels: dict[str, ParcelTracking] = {}
        self._archived: OrderedDict[str, ParcelTracking] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        parcel_id: str,
        driver_id: str,
        *,
        destination: Location | None = None,
    ) -> ParcelTracking:
        """Create the record for a freshly accepted parcel.

        A parcel accepted again after being archived continues the archived
        record's version, so viewers still holding the old snapshot take the
        new one as newer.
        """
        if parcel_id in self._parcels:
            raise TrackingError(f"Parcel {parcel_id!r} is already being tracked")
        now = self._clock()
        # A re-accepted parcel starts a new life; forget the archived one.
        archived = self._archived.pop(parcel_id, None)
        tracking = ParcelTracking(
            parcel_id=parcel_id,
            driver_id=driver_id,
            status=ParcelStatus.ACCEPTED,
            milestones=initial_milestones(parcel_id, accepted_at=now),
            destination=destination,
            version=archived.version + 1 if archived is not None else 1,
            updated_at=now,
        )
        self._parcels[parcel_id] = tracking
        _logger.debug("Tracking created parcel=%s driver=%s", parcel_id, driver_id)
        return tracking

    def archive(self, parcel_id: str) -> bool:
        """Move a delivered parcel out of the active table.

        Returns ``False`` (and does nothing) for unknown or undelivered parcels.
        """
        tracking = self._parcels.get(parcel_id)
        if tracking is None or not tracking.is_delivered:
            return False
        del self._parcels[parcel_id]
        if not self._lock_users.get(parcel_id):
            self._locks.pop(parcel_id, None)
        if self._archive_capacity > 0:
            self._archived[parcel_id] = tracking
            while len(self._archived) > self._archive_capacity:
                evicted, _ = self._archived.popitem(last=False)
                _logger.debug("Archived tracking evicted parcel=%s", evicted)
        _logger.debug("Tracking archived parcel=%s", parcel_id)
        return True

    @contextlib.asynccontextmanager
    async def locked(self, parcel_id: str) -> AsyncIterator[None]:
        """Hold the single-writer lock of *parcel_id*.

        Lock entries are counted per user and dropped once the last user
        leaves and the parcel is not active, so ids that never become a
        record leave nothing behind.
        """
        lock = self._locks.get(parcel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[parcel_id] = lock
        self._lock_users[parcel_id] = self._lock_users.get(parcel_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users.pop(parcel_id) - 1
            if users:
                self._lock_users[parcel_id] = users
            elif parcel_id not in self._parcels:
                self._locks.pop(parcel_id, None)

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _active(self, parcel_id: str) -> ParcelTracking:
        tracking = self._parcels.get(parcel_id)
        if tracking is None:
            raise ParcelNotFoundError(parcel_id)
        return tracking

    def _commit(self, tracking: ParcelTracking, update: dict[str, Any]) -> ParcelTracking:
        update["version"] = tracking.version + 1
        update["updated_at"] = self._clock()
        snapshot = tracking.model_copy(update=update)
        self._parcels[tracking.parcel_id] = snapshot
        return snapshot

    def apply_location(self, parcel_id: str, location: Location) -> ParcelTracking:
        """Set the current location and extend the bounded route."""
        tracking = self._active(parcel_id)
        point = location.as_location()
        route = extend_route(
            tracking.route,
            point,
            min_distance_m=self._route_min_point_distance_m,
            max_points=self._route_max_points,
        )
        # The tail is the point as stored, timestamp possibly clamped.
        return self._commit(tracking, {"current_location": route[-1], "route": route})

    def apply_milestone(self, parcel_id: str, status: ParcelStatus | str) -> ParcelTracking:
        """Advance *parcel_id* to *status*.

        The timestamp is the store clock's, never the caller's. Invalid
        transitions raise before anything is written.
        """
        tracking = self._active(parcel_id)
        target = validate_transition(tracking.status, status, parcel_id=parcel_id)
        milestones = complete_milestone(
            tracking.milestones,
            target,
            at=self._clock(),
            location=tracking.current_location,
        )
        update: dict[str, Any] = {"status": target, "milestones": milestones}
        if target == ParcelStatus.DELIVERED:
            update["estimated_arrival"] = None
        return self._commit(tracking, update)

    def set_eta(self, parcel_id: str, eta: datetime | None) -> ParcelTracking:
        tracking = self._active(parcel_id)
        return self._commit(tracking, {"estimated_arrival": eta})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_tracking(self, parcel_id: str) -> ParcelTracking:
        """Current snapshot (active or archived) or :class:`ParcelNotFoundError`."""
        tracking = self._parcels.get(parcel_id)
        if tracking is None:
            tracking = self._archived.get(parcel_id)
        if tracking is None:
            raise ParcelNotFoundError(parcel_id)
        return tracking

    def is_active(self, parcel_id: str) -> bool:
        return parcel_id in self._parcels

    def __len__(self) -> int:
        return len(self._parcels)
