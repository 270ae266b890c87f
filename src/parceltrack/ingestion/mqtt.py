"""MQTT ingestion helpers.

Translates raw MQTT publishes on ``parceltrack/drivers/<driverId>/location``
into location samples for the relay.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from parceltrack._mqtt import MqttMessage
from parceltrack.exceptions import InvalidSampleError, TrackingError
from parceltrack.ingestion.normalize import safe_str

if TYPE_CHECKING:
    from parceltrack.relay import TrackingRelay

_logger = logging.getLogger(__name__)


def driver_id_from_topic(topic: str) -> str | None:
    """``parceltrack/drivers/<id>/location`` -> ``<id>``."""
    parts = topic.split("/")
    try:
        index = parts.index("drivers")
    except ValueError:
        return None
    if index + 1 >= len(parts):
        return None
    return safe_str(parts[index + 1])


def decode_location_payload(topic: str, payload: bytes) -> dict[str, Any]:
    """Parse a JSON location publish.

    The driver id falls back to the topic segment when the body omits it.
    """
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidSampleError(f"MQTT payload on {topic} is not JSON") from exc
    if not isinstance(parsed, dict):
        raise InvalidSampleError(f"MQTT payload on {topic} is not an object")
    if not parsed.get("driverId") and not parsed.get("driver_id"):
        driver_id = driver_id_from_topic(topic)
        if driver_id:
            parsed["driverId"] = driver_id
    return parsed


class MqttIngestBridge:
    """Feeds MQTT location publishes into a :class:`TrackingRelay`.

    ``on_message`` runs on the event loop (the runtime schedules it with
    ``call_soon_threadsafe``) and starts one task per publish.
    """

    def __init__(self, relay: TrackingRelay) -> None:
        self._relay = relay
        self._tasks: set[asyncio.Task[None]] = set()

    def on_message(self, message: MqttMessage) -> None:
        task = asyncio.get_running_loop().create_task(self._ingest(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _ingest(self, message: MqttMessage) -> None:
        try:
            sample = decode_location_payload(message.topic, message.payload)
        except InvalidSampleError as exc:
            _logger.warning("Rejected MQTT publish: %s", exc)
            return
        try:
            await self._relay.report_location(sample)
        except TrackingError as exc:
            # Already logged by the relay for rejected samples.
            _logger.debug("MQTT sample on %s not applied: %s", message.topic, exc)
        except Exception:
            _logger.exception("Unexpected failure ingesting MQTT sample on %s", message.topic)

    async def drain(self) -> None:
        """Wait for in-flight ingestion tasks."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
