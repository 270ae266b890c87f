"""Driver location ingest.

Validates raw position reports, checks them against the active
driver/parcel assignments and fills in derived fields (speed, heading,
suspect flag, server receive time). Only samples that pass here reach the
tracking store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from parceltrack._constants import CLOCK_SKEW_TOLERANCE_SECONDS, MAX_PLAUSIBLE_SPEED_MPS
from parceltrack.exceptions import InvalidSampleError
from parceltrack.geo import haversine_m, initial_bearing, is_valid_coordinate
from parceltrack.ingestion.normalize import safe_float
from parceltrack.models.location import DriverLocation
from parceltrack.state.policy import should_accept_sample

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class IngestedSample:
    """An accepted, enriched sample bound to one parcel."""

    parcel_id: str
    sample: DriverLocation


class LocationIngest:
    """Validate and enrich driver samples.

    The assignment registry (which driver carries which parcels) is fed by
    the relay when a parcel is accepted and released when it is delivered.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        max_plausible_speed_mps: float = MAX_PLAUSIBLE_SPEED_MPS,
        clock_skew_tolerance_seconds: float = CLOCK_SKEW_TOLERANCE_SECONDS,
    ) -> None:
        self._clock = clock
        self._max_speed = max_plausible_speed_mps
        self._skew = clock_skew_tolerance_seconds
        self._driver_by_parcel: dict[str, str] = {}
        self._parcels_by_driver: dict[str, set[str]] = {}
        # Newest accepted sample per driver. Its timestamp is the high-water
        # mark for the skew check; late samples never replace it.
        self._last_sample: dict[str, DriverLocation] = {}

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign(self, driver_id: str, parcel_id: str) -> None:
        previous = self._driver_by_parcel.get(parcel_id)
        if previous is not None and previous != driver_id:
            self._drop_parcel(previous, parcel_id)
        self._driver_by_parcel[parcel_id] = driver_id
        self._parcels_by_driver.setdefault(driver_id, set()).add(parcel_id)

    def release(self, parcel_id: str) -> None:
        driver_id = self._driver_by_parcel.pop(parcel_id, None)
        if driver_id is not None:
            self._drop_parcel(driver_id, parcel_id)

    def _drop_parcel(self, driver_id: str, parcel_id: str) -> None:
        parcels = self._parcels_by_driver.get(driver_id)
        if parcels is None:
            return
        parcels.discard(parcel_id)
        if not parcels:
            # Session over: the driver's last fix is no longer needed.
            self._parcels_by_driver.pop(driver_id, None)
            self._last_sample.pop(driver_id, None)

    def driver_for(self, parcel_id: str) -> str | None:
        return self._driver_by_parcel.get(parcel_id)

    def parcels_for(self, driver_id: str) -> frozenset[str]:
        return frozenset(self._parcels_by_driver.get(driver_id, ()))

    def last_sample(self, driver_id: str) -> DriverLocation | None:
        return self._last_sample.get(driver_id)

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def parse(self, raw: DriverLocation | Mapping[str, Any]) -> DriverLocation:
        if isinstance(raw, DriverLocation):
            return raw
        if not isinstance(raw, Mapping):
            raise InvalidSampleError(f"Location sample must be an object, got {type(raw).__name__}")
        driver_id = raw.get("driverId") or raw.get("driver_id")
        epoch = safe_float(raw.get("timestamp"))
        if epoch is not None and epoch <= 0:
            raise InvalidSampleError(
                f"Timestamp must be a positive epoch value, got {raw.get('timestamp')!r}",
                driver_id=str(driver_id) if driver_id else None,
            )
        try:
            return DriverLocation.model_validate(dict(raw))
        except ValidationError as exc:
            raise InvalidSampleError(
                f"Malformed location sample: {exc.error_count()} validation error(s)",
                driver_id=str(driver_id) if driver_id else None,
            ) from exc

    def _targets(self, sample: DriverLocation) -> list[str]:
        assigned = self._parcels_by_driver.get(sample.driver_id)
        if not assigned:
            raise InvalidSampleError(
                f"Driver {sample.driver_id} has no active assignment",
                driver_id=sample.driver_id,
                parcel_id=sample.parcel_id,
            )
        if sample.parcel_id is None:
            return sorted(assigned)
        if sample.parcel_id not in assigned:
            raise InvalidSampleError(
                f"Parcel {sample.parcel_id} is not assigned to driver {sample.driver_id}",
                driver_id=sample.driver_id,
                parcel_id=sample.parcel_id,
            )
        return [sample.parcel_id]

    def ingest(self, raw: DriverLocation | Mapping[str, Any]) -> list[IngestedSample]:
        """Validate *raw* and return one enriched sample per target parcel.

        Raises :class:`InvalidSampleError` without touching any state when the
        sample is malformed, out of range, too old, or not backed by an
        active assignment.
        """
        sample = self.parse(raw)

        if not is_valid_coordinate(sample.latitude, sample.longitude):
            raise InvalidSampleError(
                f"Coordinates out of range: ({sample.latitude}, {sample.longitude})",
                driver_id=sample.driver_id,
                parcel_id=sample.parcel_id,
            )

        targets = self._targets(sample)

        previous = self._last_sample.get(sample.driver_id)
        if not should_accept_sample(
            last_accepted=previous.timestamp if previous is not None else None,
            incoming=sample.timestamp,
            skew_allowance_seconds=self._skew,
        ):
            raise InvalidSampleError(
                f"Sample from {sample.driver_id} at {sample.timestamp.isoformat()} is older than the "
                f"last accepted one ({previous.timestamp.isoformat() if previous else '-'})",
                driver_id=sample.driver_id,
                parcel_id=sample.parcel_id,
            )

        enriched = self._enrich(sample, previous)
        if previous is None or enriched.timestamp >= previous.timestamp:
            self._last_sample[sample.driver_id] = enriched
        if enriched.suspect:
            _logger.warning(
                "Suspect sample driver=%s speed clamped to %.1f m/s",
                enriched.driver_id,
                enriched.speed,
            )
        return [
            IngestedSample(parcel_id=parcel_id, sample=enriched.model_copy(update={"parcel_id": parcel_id}))
            for parcel_id in targets
        ]

    def _enrich(self, sample: DriverLocation, previous: DriverLocation | None) -> DriverLocation:
        speed = sample.speed
        heading = sample.heading

        if previous is not None:
            distance = haversine_m(previous.latitude, previous.longitude, sample.latitude, sample.longitude)
            elapsed = (sample.timestamp - previous.timestamp).total_seconds()
            if speed is None:
                speed = distance / elapsed if elapsed > 0 else previous.speed
            if heading is None and distance > 0:
                heading = initial_bearing(previous.latitude, previous.longitude, sample.latitude, sample.longitude)
        if speed is None:
            speed = 0.0

        suspect = False
        if speed > self._max_speed:
            _logger.debug("Clamping speed %.1f m/s for driver=%s", speed, sample.driver_id)
            speed = self._max_speed
            suspect = True

        return sample.model_copy(
            update={
                "speed": speed,
                "heading": heading,
                "suspect": suspect,
                "received_at": self._clock(),
            }
        )
