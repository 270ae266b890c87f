"""Internal MQTT runtime for driver devices publishing over MQTT.

paho-mqtt runs its network loop on its own thread; every publish is copied
into an immutable :class:`MqttMessage` and scheduled onto the relay's
asyncio loop, so nothing downstream ever runs on the paho thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from parceltrack.config import MqttSettings

# Broker reconnect backoff handled by paho itself.
_RECONNECT_MIN_DELAY_S = 1
_RECONNECT_MAX_DELAY_S = 60


@dataclass(frozen=True)
class MqttMessage:
    """Raw inbound MQTT publish, handed to the asyncio loop as-is."""

    topic: str
    payload: bytes


class LocationMqttRuntime:
    """Subscribes to driver location topics and forwards publishes.

    ``start`` and ``stop`` block on network I/O; the server calls them in an
    executor.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        settings: MqttSettings,
        on_message: Callable[[MqttMessage], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._settings = settings
        self._on_message = on_message
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None

    @property
    def is_running(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _handle_connect(
        self,
        client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.is_failure:
            self._logger.warning("MQTT broker refused connection: %s", reason_code)
            return
        # Subscriptions do not survive a clean reconnect; renew them every time.
        topic = self._settings.topic
        client.subscribe(topic, qos=0)
        self._logger.info("MQTT connected host=%s, listening on %s", self._settings.host, topic)

    def _handle_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if self._client is not None:
            self._logger.warning("MQTT connection lost (%s), paho will retry", reason_code)

    def _handle_message(self, _c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._logger.debug("MQTT publish topic=%s bytes=%d", msg.topic, len(msg.payload))
        message = MqttMessage(topic=msg.topic, payload=bytes(msg.payload))
        try:
            self._loop.call_soon_threadsafe(self._on_message, message)
        except RuntimeError:
            # Loop already closed during shutdown.
            self._logger.debug("MQTT publish dropped, event loop closed topic=%s", msg.topic)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _build_client(self) -> mqtt.Client:
        settings = self._settings
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        client.reconnect_delay_set(min_delay=_RECONNECT_MIN_DELAY_S, max_delay=_RECONNECT_MAX_DELAY_S)
        if settings.username:
            client.username_pw_set(settings.username, settings.password)
        if settings.tls:
            client.tls_set()
        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        client.on_message = self._handle_message
        return client

    def start(self) -> None:
        """Connect to the broker and start the network thread.

        Raises ``OSError`` when the broker cannot be reached.
        """
        self.stop()
        settings = self._settings
        self._logger.debug(
            "MQTT start host=%s port=%s tls=%s client_id=%s",
            settings.host,
            settings.port,
            settings.tls,
            settings.client_id,
        )
        client = self._build_client()
        client.connect(settings.host, settings.port, keepalive=settings.keepalive)
        client.loop_start()
        self._client = client

    def stop(self) -> None:
        """Disconnect and join the network thread; no-op when not started."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
        self._logger.debug("MQTT runtime stopped")
