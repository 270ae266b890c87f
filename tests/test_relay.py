from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from parceltrack.config import TrackingConfig
from parceltrack.exceptions import InvalidSampleError, InvalidTransitionError, ParcelNotFoundError, TrackingError
from parceltrack.models.tracking import ParcelStatus
from parceltrack.reconciler import ClientReconciler
from parceltrack.relay import TrackingRelay

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=UTC)


class _Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now


def _frames(relay: TrackingRelay, connection_id: str) -> list[dict[str, Any]]:
    connection = relay.router.connection(connection_id)
    assert connection is not None
    frames = []
    while (frame := connection.queue.get_nowait()) is not None:
        frames.append(json.loads(frame))
    return frames


def _sample(seconds: int, lat: float, **extra: Any) -> dict[str, Any]:
    raw = {
        "driverId": "driver-1",
        "parcelId": "PKG001",
        "latitude": lat,
        "longitude": 72.8777,
        "timestamp": (T0 + timedelta(seconds=seconds)).isoformat(),
    }
    raw.update(extra)
    return raw


async def _relay(**config: Any) -> tuple[TrackingRelay, _Clock]:
    clock = _Clock()
    relay = TrackingRelay(TrackingConfig(**config), clock=clock)
    relay.connect("viewer")
    relay.subscribe("viewer", "PKG001")
    destination = {"latitude": 19.2, "longitude": 72.8777, "timestamp": T0}
    await relay.accept_parcel("PKG001", "driver-1", destination=destination)
    return relay, clock


@pytest.mark.asyncio
async def test_accept_publishes_initial_snapshot() -> None:
    relay, _ = await _relay()

    [frame] = _frames(relay, "viewer")

    assert frame["event"] == "parcel-tracking-update"
    assert frame["data"]["parcelId"] == "PKG001"
    assert frame["data"]["version"] == 1
    assert frame["data"]["status"] == "accepted"


@pytest.mark.asyncio
async def test_accept_twice_rejected() -> None:
    relay, _ = await _relay()

    with pytest.raises(TrackingError):
        await relay.accept_parcel("PKG001", "driver-2")


@pytest.mark.asyncio
async def test_location_report_fans_out_location_tracking_and_eta() -> None:
    relay, clock = await _relay()
    _frames(relay, "viewer")

    await relay.report_location(_sample(0, 19.0760))
    clock.now = T0 + timedelta(seconds=60)
    [tracking] = await relay.report_location(_sample(60, 19.0820))

    frames = _frames(relay, "viewer")
    events = [f["event"] for f in frames]
    assert events[:2] == ["driver-location-update", "parcel-tracking-update"]
    assert events[-3:] == ["driver-location-update", "parcel-tracking-update", "eta-update"]
    location = frames[-3]["data"]
    assert location["driverId"] == "driver-1"
    assert location["speed"] == pytest.approx(11.12, rel=1e-2)
    assert location["suspect"] is False
    assert tracking.current_location is not None
    assert tracking.current_location.latitude == 19.082
    assert tracking.estimated_arrival is not None
    assert frames[-2]["data"]["version"] == tracking.version


@pytest.mark.asyncio
async def test_implausible_jump_is_forwarded_flagged() -> None:
    relay, _ = await _relay()
    await relay.report_location(_sample(0, 19.0760))
    _frames(relay, "viewer")

    await relay.report_location(_sample(60, 19.1500))

    location = _frames(relay, "viewer")[0]["data"]
    assert location["suspect"] is True
    assert location["speed"] == 60.0
    assert relay.get_tracking("PKG001").current_location.latitude == 19.15  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_rejected_sample_changes_nothing() -> None:
    relay, _ = await _relay()
    await relay.report_location(_sample(0, 19.0760))
    before = relay.get_tracking("PKG001")
    _frames(relay, "viewer")

    with pytest.raises(InvalidSampleError):
        await relay.report_location(_sample(10, 95.0))

    assert relay.get_tracking("PKG001") is before
    assert _frames(relay, "viewer") == []


@pytest.mark.asyncio
async def test_status_flow_to_delivered_archives_unwatched_parcel() -> None:
    relay, _ = await _relay()

    for status in (ParcelStatus.PICKED_UP, ParcelStatus.IN_TRANSIT, ParcelStatus.DELIVERED):
        tracking = await relay.advance_status("PKG001", status)

    assert tracking.is_delivered
    assert relay.ingest.driver_for("PKG001") is None
    assert relay.store.is_active("PKG001")

    relay.unsubscribe("viewer", "PKG001")

    assert not relay.store.is_active("PKG001")
    assert relay.get_tracking("PKG001").is_delivered


@pytest.mark.asyncio
async def test_invalid_transition_after_delivery() -> None:
    relay, _ = await _relay()
    for status in ("picked-up", "in-transit", "delivered"):
        await relay.advance_status("PKG001", status)
    before = relay.get_tracking("PKG001")
    _frames(relay, "viewer")

    with pytest.raises(InvalidTransitionError):
        await relay.advance_status("PKG001", "picked-up")

    assert relay.get_tracking("PKG001") is before
    assert _frames(relay, "viewer") == []


@pytest.mark.asyncio
async def test_samples_after_delivery_are_rejected() -> None:
    relay, _ = await _relay()
    for status in ("picked-up", "in-transit", "delivered"):
        await relay.advance_status("PKG001", status)

    with pytest.raises(InvalidSampleError):
        await relay.report_location(_sample(0, 19.0760))


@pytest.mark.asyncio
async def test_get_tracking_missing_parcel() -> None:
    relay, _ = await _relay()

    with pytest.raises(ParcelNotFoundError):
        relay.get_tracking("missing-id")


@pytest.mark.asyncio
async def test_handle_message_subscribe_and_unsubscribe() -> None:
    relay, _ = await _relay()
    relay.connect("c2")

    await relay.handle_message("c2", '{"event":"subscribe-parcel","data":"PKG001"}')
    assert relay.router.subscribers("PKG001") == frozenset({"viewer", "c2"})

    await relay.handle_message("c2", {"event": "unsubscribe-parcel", "data": {"parcelId": "PKG001"}})
    assert relay.router.subscribers("PKG001") == frozenset({"viewer"})


@pytest.mark.asyncio
async def test_handle_message_reports_errors_to_sender_only() -> None:
    relay, _ = await _relay()
    relay.connect("driver")
    _frames(relay, "viewer")

    await relay.handle_message("driver", "garbage")
    await relay.handle_message(
        "driver", '{"event":"parcel-status-update","data":{"parcelId":"PKG001","status":"delivered"}}'
    )
    await relay.handle_message("driver", '{"event":"subscribe-parcel","data":""}')
    await relay.handle_message("driver", '{"event":"time-travel","data":null}')

    codes = [f["data"]["code"] for f in _frames(relay, "driver")]
    assert codes == ["protocol-error", "invalid-transition", "protocol-error", "protocol-error"]
    assert _frames(relay, "viewer") == []


@pytest.mark.asyncio
async def test_handle_message_location_and_status_events() -> None:
    relay, _ = await _relay()
    relay.connect("driver")

    await relay.handle_message("driver", {"event": "driver-location-update", "data": _sample(0, 19.0760)})
    await relay.handle_message(
        "driver", {"event": "parcel-status-update", "data": {"parcelId": "PKG001", "status": "picked-up"}}
    )

    tracking = relay.get_tracking("PKG001")
    assert tracking.status == ParcelStatus.PICKED_UP
    assert tracking.current_location is not None
    assert _frames(relay, "driver") == []


@pytest.mark.asyncio
async def test_disconnect_drops_subscriptions() -> None:
    relay, _ = await _relay()

    relay.disconnect("viewer")

    assert relay.router.subscriber_count("PKG001") == 0
    assert relay.router.connection("viewer") is None


@pytest.mark.asyncio
async def test_late_samples_never_rewind_the_route() -> None:
    relay, _ = await _relay()
    await relay.report_location(_sample(100, 19.0760))

    await relay.report_location(_sample(96, 19.0770))
    with pytest.raises(InvalidSampleError, match="older than"):
        await relay.report_location(_sample(92, 19.0780))

    tracking = relay.get_tracking("PKG001")
    stamps = [point.timestamp for point in tracking.route]
    assert stamps == sorted(stamps)
    assert tracking.current_location is not None
    assert tracking.current_location.timestamp == T0 + timedelta(seconds=100)


@pytest.mark.asyncio
async def test_reaccepted_parcel_supersedes_delivered_snapshot_for_viewers() -> None:
    relay, _ = await _relay()
    viewer = ClientReconciler()
    for status in (ParcelStatus.PICKED_UP, ParcelStatus.IN_TRANSIT, ParcelStatus.DELIVERED):
        viewer.apply_tracking(await relay.advance_status("PKG001", status))
    relay.unsubscribe("viewer", "PKG001")

    tracking = await relay.accept_parcel("PKG001", "driver-2")

    assert viewer.apply_tracking(tracking)
    assert viewer.parcel_tracking["PKG001"].status == ParcelStatus.ACCEPTED
    assert viewer.parcel_tracking["PKG001"].driver_id == "driver-2"


@pytest.mark.asyncio
async def test_commands_on_unknown_parcels_leave_no_locks() -> None:
    relay, _ = await _relay()
    before = relay.store.lock_count

    for i in range(50):
        with pytest.raises(ParcelNotFoundError):
            await relay.advance_status(f"missing-{i}", ParcelStatus.PICKED_UP)

    assert relay.store.lock_count == before
