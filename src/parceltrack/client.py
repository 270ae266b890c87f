"""Async client for the parceltrack relay.

Keeps one WebSocket to the relay open in the background. Every time the
socket (re)connects it re-sends the current subscriptions and fetches a
fresh snapshot of each subscribed parcel, so updates missed while offline
are replaced by current state instead of being replayed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any

import aiohttp
from pydantic import ValidationError

from parceltrack.config import ClientConfig
from parceltrack.exceptions import (
    ConnectionLostError,
    InvalidTransitionError,
    ParcelNotFoundError,
    ProtocolError,
    TrackingError,
)
from parceltrack.models.location import DriverLocation
from parceltrack.models.tracking import ParcelStatus, ParcelTracking
from parceltrack.notifications import NotificationFeed
from parceltrack.protocol import ClientEvent, Message, decode_message, encode_message
from parceltrack.reconciler import ClientReconciler

_logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class TrackingClient:
    """Viewer and driver client.

    Usage::

        async with TrackingClient(ClientConfig(base_url="http://relay:8080")) as client:
            await client.connect()
            await client.subscribe("PKG001")
            tracking = client.reconciler.parcel_tracking["PKG001"]
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        reconciler: ClientReconciler | None = None,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        on_message: Callable[[Message], None] | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._external_session = session is not None
        self._http_session = session
        self.reconciler = reconciler or ClientReconciler(
            NotificationFeed(capacity=self._config.notification_capacity)
        )
        self._on_state_change = on_state_change
        self._on_message = on_message
        self._parcels: set[str] = set()
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._runner: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()
        self._closing = False
        self._state = ConnectionState.DISCONNECTED
        self.reconnects = 0

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TrackingClient:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def subscriptions(self) -> frozenset[str]:
        return frozenset(self._parcels)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        _logger.debug("Connection state -> %s", state.value)
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _require_session(self) -> aiohttp.ClientSession:
        if self._http_session is None:
            raise TrackingError("Client not initialized. Use 'async with TrackingClient(...) as client:'")
        return self._http_session

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    async def connect(self, *, timeout: float | None = 10.0) -> None:
        """Start the background connection and wait until it is up."""
        self._require_session()
        self._closing = False
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())
        await self.wait_connected(timeout=timeout)

    async def wait_connected(self, *, timeout: float | None = 10.0) -> None:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except TimeoutError as exc:
            raise ConnectionLostError(f"Could not reach {self._config.ws_url}") from exc

    async def _run(self) -> None:
        session = self._require_session()
        delay = self._config.reconnect_initial_delay
        first = True
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with session.ws_connect(self._config.ws_url, heartbeat=self._config.heartbeat) as ws:
                    self._ws = ws
                    if not first:
                        self.reconnects += 1
                    first = False
                    delay = self._config.reconnect_initial_delay
                    await self._on_connected(ws)
                    self._connected.set()
                    self._set_state(ConnectionState.CONNECTED)
                    await self._read_loop(ws)
            except (aiohttp.ClientError, OSError) as exc:
                _logger.warning("Event channel unavailable: %s", exc)
            finally:
                self._ws = None
                self._connected.clear()
                self._set_state(ConnectionState.DISCONNECTED)
            if self._closing:
                break
            _logger.info("Reconnecting in %.1fs", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._config.reconnect_max_delay)

    async def _on_connected(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        for parcel_id in sorted(self._parcels):
            await ws.send_str(encode_message(ClientEvent.SUBSCRIBE_PARCEL, parcel_id))
        for parcel_id in sorted(self._parcels):
            await self._resync(parcel_id)

    async def _resync(self, parcel_id: str) -> None:
        try:
            await self.get_tracking(parcel_id)
        except ParcelNotFoundError:
            self.reconciler.forget_parcel(parcel_id)
        except TrackingError as exc:
            _logger.warning("Snapshot fetch failed parcel=%s: %s", parcel_id, exc)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                self._dispatch(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                _logger.warning("WebSocket error: %s", ws.exception())
                break
        _logger.info("Event channel closed code=%s", ws.close_code)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = decode_message(raw)
            self.reconciler.apply_message(message)
        except ProtocolError as exc:
            _logger.warning("Discarding malformed frame: %s", exc)
            return
        if self._on_message is not None:
            self._on_message(message)

    async def _send(self, event: str, data: Any) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise ConnectionLostError("Event channel is not connected")
        try:
            await ws.send_str(encode_message(event, data))
        except ConnectionResetError as exc:
            raise ConnectionLostError("Event channel dropped while sending") from exc

    async def subscribe(self, parcel_id: str) -> None:
        """Watch *parcel_id*; remembered across reconnects."""
        self._parcels.add(parcel_id)
        if self._ws is not None and not self._ws.closed:
            await self._send(ClientEvent.SUBSCRIBE_PARCEL, parcel_id)
            await self._resync(parcel_id)

    async def unsubscribe(self, parcel_id: str) -> None:
        self._parcels.discard(parcel_id)
        if self._ws is not None and not self._ws.closed:
            await self._send(ClientEvent.UNSUBSCRIBE_PARCEL, parcel_id)

    async def send_location(self, sample: DriverLocation | Mapping[str, Any]) -> None:
        """Report a driver position over the event channel.

        Rejections come back asynchronously as ``error`` events.
        """
        data = sample.to_wire() if isinstance(sample, DriverLocation) else dict(sample)
        await self._send(ClientEvent.DRIVER_LOCATION_UPDATE, data)

    # ------------------------------------------------------------------
    # Query / command interface
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, body: Mapping[str, Any] | None = None) -> tuple[int, Any]:
        session = self._require_session()
        url = f"{self._config.base_url.rstrip('/')}{path}"
        _logger.debug("%s %s", method, url)
        try:
            async with session.request(method, url, json=body) as resp:
                text = await resp.text()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise ConnectionLostError(f"Request to {path} failed: {exc}") from exc
        try:
            payload = json.loads(text) if text else None
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Invalid JSON from {path}: {text[:200]}") from exc
        return status, payload

    @staticmethod
    def _parse_tracking(payload: Any, path: str) -> ParcelTracking:
        try:
            return ParcelTracking.model_validate(payload)
        except ValidationError as exc:
            raise ProtocolError(f"Malformed tracking snapshot from {path}: {exc.error_count()} error(s)") from exc

    @staticmethod
    def _error_text(payload: Any) -> str:
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("error") or payload)
        return str(payload)

    async def get_tracking(self, parcel_id: str) -> ParcelTracking:
        """Fetch the current snapshot and merge it into the local view."""
        path = f"/parcels/{parcel_id}/tracking"
        status, payload = await self._request("GET", path)
        if status == 404:
            raise ParcelNotFoundError(parcel_id)
        if status != 200:
            raise TrackingError(f"HTTP {status} fetching {parcel_id}: {self._error_text(payload)}")
        tracking = self._parse_tracking(payload, path)
        self.reconciler.apply_tracking(tracking)
        return tracking

    async def accept_parcel(
        self,
        parcel_id: str,
        driver_id: str,
        *,
        destination: Mapping[str, Any] | None = None,
    ) -> ParcelTracking:
        body: dict[str, Any] = {"driverId": driver_id}
        if destination is not None:
            body["destination"] = dict(destination)
        path = f"/parcels/{parcel_id}/accept"
        status, payload = await self._request("POST", path, body)
        if status != 201:
            raise TrackingError(f"HTTP {status} accepting {parcel_id}: {self._error_text(payload)}")
        tracking = self._parse_tracking(payload, path)
        self.reconciler.apply_tracking(tracking)
        return tracking

    async def update_status(self, parcel_id: str, status: ParcelStatus | str) -> ParcelTracking:
        requested = status.value if isinstance(status, ParcelStatus) else status
        path = f"/parcels/{parcel_id}/status"
        code, payload = await self._request("POST", path, {"status": requested})
        if code == 404:
            raise ParcelNotFoundError(parcel_id)
        if code == 409:
            raise InvalidTransitionError(self._error_text(payload), parcel_id=parcel_id, requested=requested)
        if code != 200:
            raise TrackingError(f"HTTP {code} updating {parcel_id}: {self._error_text(payload)}")
        tracking = self._parse_tracking(payload, path)
        self.reconciler.apply_tracking(tracking)
        return tracking

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        runner = self._runner
        self._runner = None
        if runner is not None:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
