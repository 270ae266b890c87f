"""aiohttp server exposing the event channel and the query interface.

Routes:

* ``GET  /ws``: WebSocket event channel (JSON text frames)
* ``GET  /parcels/{parcel_id}/tracking``: snapshot for initial load/resync
* ``POST /parcels/{parcel_id}/accept``: start tracking (identity layer)
* ``POST /parcels/{parcel_id}/status``: advance the parcel's status
* ``GET  /health``: liveness and basic counters
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web
from pydantic import ValidationError

from parceltrack._mqtt import LocationMqttRuntime
from parceltrack.config import TrackingConfig
from parceltrack.exceptions import InvalidTransitionError, ParcelNotFoundError, TrackingError
from parceltrack.ingestion.mqtt import MqttIngestBridge
from parceltrack.relay import TrackingRelay
from parceltrack.router import Connection, QueueClosed

_logger = logging.getLogger(__name__)


def _error(status: int, code: str, message: str) -> web.Response:
    return web.json_response({"error": code, "message": message}, status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "bad-request", "message": "Body must be JSON"}),
            content_type="application/json",
        ) from None
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "bad-request", "message": "Body must be a JSON object"}),
            content_type="application/json",
        )
    return body


class TrackingServer:
    """HTTP/WebSocket front end of a :class:`TrackingRelay`."""

    def __init__(self, config: TrackingConfig | None = None, *, relay: TrackingRelay | None = None) -> None:
        self._config = config or (relay.config if relay is not None else TrackingConfig())
        self.relay = relay or TrackingRelay(self._config)
        self._sockets: set[web.WebSocketResponse] = set()
        self._mqtt_runtime: LocationMqttRuntime | None = None
        self._mqtt_bridge: MqttIngestBridge | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app[SERVER_KEY] = self
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/parcels/{parcel_id}/tracking", self._handle_get_tracking)
        app.router.add_post("/parcels/{parcel_id}/accept", self._handle_accept)
        app.router.add_post("/parcels/{parcel_id}/status", self._handle_status)
        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        return app

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _on_startup(self, _app: web.Application) -> None:
        settings = self._config.mqtt
        if not settings.enabled:
            return
        loop = asyncio.get_running_loop()
        self._mqtt_bridge = MqttIngestBridge(self.relay)
        runtime = LocationMqttRuntime(loop=loop, settings=settings, on_message=self._mqtt_bridge.on_message)
        try:
            await loop.run_in_executor(None, runtime.start)
        except OSError:
            _logger.exception("MQTT runtime start failed host=%s port=%s", settings.host, settings.port)
            return
        self._mqtt_runtime = runtime

    async def _on_shutdown(self, _app: web.Application) -> None:
        runtime = self._mqtt_runtime
        self._mqtt_runtime = None
        if runtime is not None:
            await asyncio.get_running_loop().run_in_executor(None, runtime.stop)
        if self._mqtt_bridge is not None:
            await self._mqtt_bridge.drain()
        for ws in list(self._sockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        connection_id = uuid.uuid4().hex
        connection = self.relay.connect(connection_id)
        writer = asyncio.create_task(self._write_loop(ws, connection))
        self._sockets.add(ws)
        _logger.info("WebSocket connected id=%s remote=%s", connection_id, request.remote)

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self.relay.handle_message(connection_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    _logger.warning("WebSocket error id=%s: %s", connection_id, ws.exception())
        finally:
            self._sockets.discard(ws)
            self.relay.disconnect(connection_id)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
            _logger.info("WebSocket closed id=%s code=%s", connection_id, ws.close_code)
        return ws

    async def _write_loop(self, ws: web.WebSocketResponse, connection: Connection) -> None:
        queue = connection.queue
        while True:
            try:
                frame = await queue.get()
            except QueueClosed:
                break
            try:
                await ws.send_str(frame)
            except ConnectionResetError:
                _logger.debug("Send failed, peer gone id=%s", connection.connection_id)
                break
        if queue.overflowed and not ws.closed:
            await ws.close(code=WSCloseCode.TRY_AGAIN_LATER, message=b"Outbound queue overflow")

    # ------------------------------------------------------------------
    # Query / command interface
    # ------------------------------------------------------------------

    async def _handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "parcels": len(self.relay.store),
                "connections": len(self.relay.router),
                "mqtt": self._mqtt_runtime is not None and self._mqtt_runtime.is_running,
            }
        )

    async def _handle_get_tracking(self, request: web.Request) -> web.Response:
        parcel_id = request.match_info["parcel_id"]
        try:
            tracking = self.relay.get_tracking(parcel_id)
        except ParcelNotFoundError as exc:
            return _error(404, exc.code, str(exc))
        return web.json_response(tracking.to_wire())

    async def _handle_accept(self, request: web.Request) -> web.Response:
        parcel_id = request.match_info["parcel_id"]
        body = await _json_body(request)
        driver_id = body.get("driverId")
        if not isinstance(driver_id, str) or not driver_id.strip():
            return _error(400, "bad-request", "driverId is required")
        destination = body.get("destination")
        if destination is not None and not isinstance(destination, dict):
            return _error(400, "bad-request", "destination must be an object")
        try:
            tracking = await self.relay.accept_parcel(parcel_id, driver_id.strip(), destination=destination)
        except ValidationError as exc:
            return _error(400, "bad-request", f"Invalid destination: {exc.error_count()} error(s)")
        except TrackingError as exc:
            return _error(409, "conflict", str(exc))
        return web.json_response(tracking.to_wire(), status=201)

    async def _handle_status(self, request: web.Request) -> web.Response:
        parcel_id = request.match_info["parcel_id"]
        body = await _json_body(request)
        status = body.get("status")
        if not isinstance(status, str):
            return _error(400, "bad-request", "status is required")
        try:
            tracking = await self.relay.advance_status(parcel_id, status)
        except ParcelNotFoundError as exc:
            return _error(404, exc.code, str(exc))
        except InvalidTransitionError as exc:
            return _error(409, exc.code, str(exc))
        return web.json_response(tracking.to_wire())


SERVER_KEY = web.AppKey("parceltrack_server", TrackingServer)


def run(config: TrackingConfig | None = None) -> None:
    """Run the relay until interrupted."""
    config = config or TrackingConfig.from_env()
    server = TrackingServer(config)
    web.run_app(server.build_app(), host=config.host, port=config.port, print=None)
