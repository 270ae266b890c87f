from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from aiohttp.test_utils import TestServer

from parceltrack.client import ConnectionState, TrackingClient
from parceltrack.config import ClientConfig, TrackingConfig
from parceltrack.exceptions import ConnectionLostError, InvalidTransitionError, ParcelNotFoundError
from parceltrack.models.tracking import ParcelStatus
from parceltrack.server import TrackingServer


@contextlib.asynccontextmanager
async def _relay_server() -> AsyncIterator[tuple[TrackingServer, str]]:
    server = TrackingServer(TrackingConfig())
    test_server = TestServer(server.build_app())
    await test_server.start_server()
    try:
        yield server, str(test_server.make_url("/"))
    finally:
        await test_server.close()


def _client(base_url: str, **kwargs: Any) -> TrackingClient:
    config = ClientConfig(base_url=base_url, reconnect_initial_delay=0.2, reconnect_max_delay=0.5)
    return TrackingClient(config, **kwargs)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


def test_ws_url_derived_from_base_url() -> None:
    assert ClientConfig(base_url="http://relay:8080/").ws_url == "ws://relay:8080/ws"
    assert ClientConfig(base_url="https://relay.example").ws_url == "wss://relay.example/ws"


@pytest.mark.asyncio
async def test_subscribe_loads_snapshot_and_follows_updates() -> None:
    async with _relay_server() as (server, base_url):
        await server.relay.accept_parcel("PKG001", "driver-1")
        async with _client(base_url) as client:
            await client.connect()
            await client.subscribe("PKG001")
            await _wait_for(lambda: server.relay.router.subscriber_count("PKG001") == 1)

            assert client.reconciler.parcel_tracking["PKG001"].version == 1

            await server.relay.advance_status("PKG001", ParcelStatus.PICKED_UP)
            await _wait_for(lambda: client.reconciler.parcel_tracking["PKG001"].status == ParcelStatus.PICKED_UP)

            titles = [n.title for n in client.reconciler.feed]
            assert titles == ["Picked Up"]


@pytest.mark.asyncio
async def test_reconnect_resubscribes_and_resyncs() -> None:
    states: list[ConnectionState] = []
    async with _relay_server() as (server, base_url):
        await server.relay.accept_parcel("PKG001", "driver-1")
        async with _client(base_url, on_state_change=states.append) as client:
            await client.connect()
            await client.subscribe("PKG001")
            await _wait_for(lambda: server.relay.router.subscriber_count("PKG001") == 1)

            for ws in list(server._sockets):
                await ws.close()
            await _wait_for(lambda: client.connection_state == ConnectionState.DISCONNECTED)

            # Missed while offline; the resync snapshot must carry it.
            await server.relay.advance_status("PKG001", ParcelStatus.PICKED_UP)

            await _wait_for(lambda: client.reconnects == 1 and client.connection_state == ConnectionState.CONNECTED)
            await _wait_for(lambda: server.relay.router.subscriber_count("PKG001") == 1)

            assert client.reconciler.parcel_tracking["PKG001"].status == ParcelStatus.PICKED_UP
            assert client.subscriptions == frozenset({"PKG001"})

    assert states[:2] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    assert states[2:5] == [ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, ConnectionState.CONNECTED]


@pytest.mark.asyncio
async def test_driver_sends_location_over_event_channel() -> None:
    async with _relay_server() as (server, base_url):
        await server.relay.accept_parcel("PKG001", "driver-1")
        async with _client(base_url) as client:
            await client.connect()
            await client.send_location(
                {"driverId": "driver-1", "latitude": 19.076, "longitude": 72.8777, "timestamp": 1_709_287_200}
            )
            await _wait_for(lambda: server.relay.get_tracking("PKG001").current_location is not None)

    assert server.relay.get_tracking("PKG001").version == 2


@pytest.mark.asyncio
async def test_http_errors_map_to_tracking_errors() -> None:
    async with _relay_server() as (server, base_url):
        async with _client(base_url) as client:
            with pytest.raises(ParcelNotFoundError):
                await client.get_tracking("missing-id")

            await client.accept_parcel("PKG001", "driver-1")
            with pytest.raises(InvalidTransitionError):
                await client.update_status("PKG001", ParcelStatus.DELIVERED)

            tracking = await client.update_status("PKG001", "picked-up")

    assert tracking.status == ParcelStatus.PICKED_UP
    assert server.relay.get_tracking("PKG001").version == tracking.version


@pytest.mark.asyncio
async def test_send_without_connection_raises() -> None:
    async with TrackingClient(ClientConfig(base_url="http://127.0.0.1:9")) as client:
        with pytest.raises(ConnectionLostError):
            await client.send_location({"driverId": "d1", "latitude": 0, "longitude": 0, "timestamp": 1})


@pytest.mark.asyncio
async def test_connect_to_unreachable_relay_times_out() -> None:
    config = ClientConfig(base_url="http://127.0.0.1:9", reconnect_initial_delay=0.05)
    async with TrackingClient(config) as client:
        with pytest.raises(ConnectionLostError):
            await client.connect(timeout=0.3)
        assert client.connection_state in (ConnectionState.CONNECTING, ConnectionState.DISCONNECTED)
