from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from parceltrack.models import (
    DriverLocation,
    EtaUpdate,
    Location,
    NotificationPreferences,
    NotificationType,
    ParcelStatus,
    ParcelTracking,
)


def test_location_accepts_camel_case_iso_z_timestamp() -> None:
    loc = Location.model_validate({"latitude": "19.0760", "longitude": 72.8777, "timestamp": "2024-03-01T10:00:00Z"})

    assert loc.latitude == pytest.approx(19.076)
    assert loc.timestamp == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)


def test_location_accepts_epoch_milliseconds() -> None:
    loc = Location.model_validate({"latitude": 0, "longitude": 0, "timestamp": 1_709_287_200_000})

    assert loc.timestamp == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)


@pytest.mark.parametrize("field,value", [("latitude", 91.0), ("latitude", -90.5), ("longitude", 180.1)])
def test_location_rejects_out_of_range(field: str, value: float) -> None:
    raw = {"latitude": 0.0, "longitude": 0.0, "timestamp": "2024-03-01T10:00:00Z", field: value}
    with pytest.raises(ValidationError):
        Location.model_validate(raw)


def test_location_is_frozen() -> None:
    loc = Location(latitude=1.0, longitude=2.0, timestamp=datetime(2024, 1, 1, tzinfo=UTC))
    with pytest.raises(ValidationError):
        loc.latitude = 3.0  # type: ignore[misc]


def test_driver_location_normalizes_fields() -> None:
    sample = DriverLocation.model_validate(
        {
            "driverId": "  driver-1 ",
            "parcelId": "",
            "latitude": 19.0,
            "longitude": 72.0,
            "timestamp": 1_709_287_200,
            "heading": -45,
            "speed": "12.5",
            "suspect": True,
        }
    )

    assert sample.driver_id == "driver-1"
    assert sample.parcel_id is None
    assert sample.heading == 315.0
    assert sample.speed == 12.5


def test_driver_location_requires_driver_id() -> None:
    with pytest.raises(ValidationError):
        DriverLocation.model_validate({"driverId": "   ", "latitude": 0, "longitude": 0, "timestamp": 1_700_000_000})


def test_driver_location_rejects_negative_speed() -> None:
    with pytest.raises(ValidationError):
        DriverLocation(
            driver_id="d1",
            latitude=0.0,
            longitude=0.0,
            timestamp=datetime(2024, 1, 1, tzinfo=UTC),
            speed=-1.0,
        )


def test_as_location_drops_driver_fields() -> None:
    sample = DriverLocation(
        driver_id="d1",
        parcel_id="p1",
        latitude=1.0,
        longitude=2.0,
        timestamp=datetime(2024, 1, 1, tzinfo=UTC),
        accuracy=4.0,
        speed=3.0,
    )

    plain = sample.as_location()
    assert type(plain) is Location
    assert plain.accuracy == 4.0
    assert "driverId" not in plain.to_wire()


def test_tracking_to_wire_is_camel_case() -> None:
    now = datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
    tracking = ParcelTracking(parcel_id="PKG001", driver_id="d1", version=2, updated_at=now)

    wire = tracking.to_wire()
    assert wire["parcelId"] == "PKG001"
    assert wire["driverId"] == "d1"
    assert wire["status"] == "accepted"
    assert wire["route"] == []
    assert "currentLocation" not in wire
    assert ParcelTracking.model_validate(wire) == tracking


def test_tracking_latest_completed_milestone_none_without_milestones() -> None:
    tracking = ParcelTracking(parcel_id="p", driver_id="d", updated_at=datetime(2024, 1, 1, tzinfo=UTC))
    assert tracking.latest_completed_milestone is None
    assert not tracking.is_delivered


def test_parcel_status_wire_values() -> None:
    assert [s.value for s in ParcelStatus] == ["accepted", "picked-up", "in-transit", "delivered"]


def test_eta_update_rejects_negative_delay() -> None:
    with pytest.raises(ValidationError):
        EtaUpdate(
            parcel_id="p",
            eta=datetime(2024, 1, 1, tzinfo=UTC),
            delay=-1,
            issued_at=datetime(2024, 1, 1, tzinfo=UTC),
        )


def test_preferences_master_switch() -> None:
    prefs = NotificationPreferences().with_changes(pushNotifications=False)

    assert not prefs.push_notifications
    assert not any(prefs.allows(kind) for kind in NotificationType)


def test_preferences_with_changes_accepts_snake_and_camel_keys() -> None:
    prefs = NotificationPreferences().with_changes(location_updates=False, etaChanges=False)

    assert not prefs.allows(NotificationType.LOCATION)
    assert not prefs.allows(NotificationType.ETA)
    assert prefs.allows(NotificationType.MILESTONE)
    assert prefs.allows(NotificationType.DELAY)


def test_preferences_with_changes_rejects_unknown_key() -> None:
    with pytest.raises(ValueError, match="Unknown notification preference"):
        NotificationPreferences().with_changes(smsAlerts=True)
