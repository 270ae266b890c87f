"""Advisory arrival estimates.

ETA = now + remaining distance / smoothed speed. The remaining distance is
the great-circle distance from the current location to the destination;
the speed is an exponential moving average of the samples' speeds so a
single traffic light does not swing the estimate.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from parceltrack._constants import DELAY_THRESHOLD_MINUTES, ETA_MIN_SPEED_MPS, ETA_SMOOTHING
from parceltrack.geo import haversine_m
from parceltrack.models.location import DriverLocation
from parceltrack.models.tracking import EtaUpdate, ParcelTracking

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _EtaState:
    smoothed_speed: float | None = None
    baseline: datetime | None = None
    last_eta: datetime | None = None


class EtaEstimator:
    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        smoothing: float = ETA_SMOOTHING,
        min_speed_mps: float = ETA_MIN_SPEED_MPS,
        delay_threshold_minutes: int = DELAY_THRESHOLD_MINUTES,
    ) -> None:
        self._clock = clock
        self._smoothing = smoothing
        self._min_speed_mps = min_speed_mps
        self._delay_threshold_minutes = delay_threshold_minutes
        self._parcels: dict[str, _EtaState] = {}

    def smoothed_speed(self, parcel_id: str) -> float | None:
        state = self._parcels.get(parcel_id)
        return state.smoothed_speed if state is not None else None

    def update(self, tracking: ParcelTracking, sample: DriverLocation) -> EtaUpdate | None:
        """Fold *sample* into the parcel's speed average and re-estimate.

        Returns ``None`` when no new estimate is available: no destination,
        the parcel is delivered, the driver is (nearly) stationary, or the
        estimate did not change.
        """
        if tracking.destination is None or tracking.is_delivered:
            return None

        state = self._parcels.setdefault(tracking.parcel_id, _EtaState())
        speed = sample.speed if sample.speed is not None else 0.0
        if state.smoothed_speed is None:
            state.smoothed_speed = speed
        else:
            state.smoothed_speed = self._smoothing * speed + (1 - self._smoothing) * state.smoothed_speed

        if state.smoothed_speed < self._min_speed_mps:
            return None

        remaining = haversine_m(
            sample.latitude,
            sample.longitude,
            tracking.destination.latitude,
            tracking.destination.longitude,
        )
        now = self._clock()
        eta = now + timedelta(seconds=remaining / state.smoothed_speed)
        # Whole seconds keep clients from seeing sub-second jitter as changes.
        eta = eta.replace(microsecond=0)
        if eta == state.last_eta:
            return None
        if state.baseline is None:
            state.baseline = eta
        state.last_eta = eta

        delay: int | None = None
        slip_minutes = (eta - state.baseline).total_seconds() / 60.0
        if slip_minutes >= self._delay_threshold_minutes:
            delay = math.floor(slip_minutes)

        _logger.debug(
            "ETA parcel=%s remaining_m=%.0f speed=%.2f eta=%s delay=%s",
            tracking.parcel_id,
            remaining,
            state.smoothed_speed,
            eta.isoformat(),
            delay,
        )
        return EtaUpdate(parcel_id=tracking.parcel_id, eta=eta, delay=delay, issued_at=now)

    def forget(self, parcel_id: str) -> None:
        self._parcels.pop(parcel_id, None)
