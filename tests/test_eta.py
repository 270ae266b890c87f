from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from parceltrack.models.location import DriverLocation, Location
from parceltrack.models.tracking import ParcelStatus, ParcelTracking
from parceltrack.state.eta import EtaEstimator

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
# 0.09 deg of latitude is ~10 km.
DESTINATION = Location(latitude=10.09, longitude=20.0, timestamp=T0)


class _Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now


def _tracking(**update: object) -> ParcelTracking:
    base = ParcelTracking(parcel_id="PKG001", driver_id="d1", destination=DESTINATION, version=1, updated_at=T0)
    return base.model_copy(update=update)


def _sample(speed: float, lat: float = 10.0) -> DriverLocation:
    return DriverLocation(driver_id="d1", parcel_id="PKG001", latitude=lat, longitude=20.0, timestamp=T0, speed=speed)


def test_eta_is_distance_over_speed() -> None:
    estimator = EtaEstimator(clock=_Clock())

    update = estimator.update(_tracking(), _sample(10.0))

    assert update is not None
    assert update.parcel_id == "PKG001"
    assert update.issued_at == T0
    # ~10 km at 10 m/s is ~1000 s.
    assert (update.eta - T0).total_seconds() == pytest.approx(1000.7, abs=1.5)
    assert update.eta.microsecond == 0
    assert update.delay is None


def test_no_eta_without_destination_or_after_delivery() -> None:
    estimator = EtaEstimator(clock=_Clock())

    assert estimator.update(_tracking(destination=None), _sample(10.0)) is None
    assert estimator.update(_tracking(status=ParcelStatus.DELIVERED), _sample(10.0)) is None


def test_stationary_driver_keeps_previous_eta() -> None:
    estimator = EtaEstimator(clock=_Clock(), smoothing=1.0, min_speed_mps=0.5)
    assert estimator.update(_tracking(), _sample(10.0)) is not None

    assert estimator.update(_tracking(), _sample(0.0)) is None


def test_speed_is_smoothed() -> None:
    estimator = EtaEstimator(clock=_Clock(), smoothing=0.5)
    estimator.update(_tracking(), _sample(10.0))
    estimator.update(_tracking(), _sample(20.0))

    assert estimator.smoothed_speed("PKG001") == pytest.approx(15.0)


def test_unchanged_estimate_not_reissued() -> None:
    estimator = EtaEstimator(clock=_Clock(), smoothing=1.0)

    assert estimator.update(_tracking(), _sample(10.0)) is not None
    assert estimator.update(_tracking(), _sample(10.0)) is None


def test_delay_reported_against_first_estimate() -> None:
    clock = _Clock()
    estimator = EtaEstimator(clock=clock, smoothing=1.0, delay_threshold_minutes=5)
    first = estimator.update(_tracking(), _sample(10.0))
    assert first is not None

    # Half the speed from the same spot: ~1000 s later than the baseline.
    slower = estimator.update(_tracking(), _sample(5.0))
    assert slower is not None
    assert slower.delay == 16

    clock.now = T0 + timedelta(minutes=1)
    faster = estimator.update(_tracking(), _sample(10.0))
    assert faster is not None
    assert faster.delay is None


def test_forget_resets_baseline() -> None:
    estimator = EtaEstimator(clock=_Clock(), smoothing=1.0)
    estimator.update(_tracking(), _sample(10.0))

    estimator.forget("PKG001")

    assert estimator.smoothed_speed("PKG001") is None
