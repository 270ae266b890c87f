"""Tracking relay: ingest -> store -> fan-out.

The relay owns one instance of each component and is the only place that
composes them. Every per-parcel write runs under ``store.locked(parcel_id)``
and publishes the resulting snapshot before the lock is released, so
subscribers see the updates of a parcel in write order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from parceltrack._redact import redact_for_log
from parceltrack.config import TrackingConfig
from parceltrack.exceptions import InvalidSampleError, ParcelNotFoundError, ProtocolError, TrackingError
from parceltrack.ingestion.location import LocationIngest
from parceltrack.models.location import DriverLocation, Location
from parceltrack.models.tracking import EtaUpdate, ParcelStatus, ParcelTracking
from parceltrack.protocol import ClientEvent, Message, ServerEvent, decode_message, error_message, parcel_id_from
from parceltrack.router import Connection, SubscriptionRouter
from parceltrack.state.eta import EtaEstimator
from parceltrack.state.store import TrackingStore

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TrackingRelay:
    """Wires location ingest, the tracking store, ETA and the router."""

    def __init__(
        self,
        config: TrackingConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or TrackingConfig()
        self._clock = clock
        cfg = self._config
        self.store = TrackingStore(
            clock=clock,
            route_max_points=cfg.route_max_points,
            route_min_point_distance_m=cfg.route_min_point_distance_m,
            archive_capacity=cfg.archive_capacity,
        )
        self.ingest = LocationIngest(
            clock=clock,
            max_plausible_speed_mps=cfg.max_plausible_speed_mps,
            clock_skew_tolerance_seconds=cfg.clock_skew_tolerance_seconds,
        )
        self.eta = EtaEstimator(
            clock=clock,
            smoothing=cfg.eta_smoothing,
            min_speed_mps=cfg.eta_min_speed_mps,
            delay_threshold_minutes=cfg.delay_threshold_minutes,
        )
        self.router = SubscriptionRouter(
            queue_size=cfg.outbound_queue_size,
            overflow_policy=cfg.overflow_policy,
            on_overflow=self._on_overflow,
        )

    @property
    def config(self) -> TrackingConfig:
        return self._config

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def accept_parcel(
        self,
        parcel_id: str,
        driver_id: str,
        *,
        destination: Location | Mapping[str, Any] | None = None,
    ) -> ParcelTracking:
        """Start tracking *parcel_id*, carried by *driver_id*.

        The caller (identity layer) vouches for the driver/parcel pairing. A
        destination given without a timestamp is stamped with the relay clock.
        """
        if destination is not None and not isinstance(destination, Location):
            destination = Location.model_validate({"timestamp": self._clock(), **dict(destination)})
        async with self.store.locked(parcel_id):
            tracking = self.store.create(parcel_id, driver_id, destination=destination)
            self.ingest.assign(driver_id, parcel_id)
            self.eta.forget(parcel_id)
            self._publish_tracking(tracking)
        _logger.info("Parcel %s accepted by driver %s", parcel_id, driver_id)
        return tracking

    async def report_location(self, raw: DriverLocation | Mapping[str, Any]) -> list[ParcelTracking]:
        """Ingest one driver sample and fan out the resulting updates.

        Raises :class:`InvalidSampleError` when the sample is rejected; no
        state changes in that case.
        """
        try:
            accepted = self.ingest.ingest(raw)
        except InvalidSampleError as exc:
            _logger.warning("Rejected location sample: %s", exc)
            raise

        snapshots: list[ParcelTracking] = []
        for item in accepted:
            async with self.store.locked(item.parcel_id):
                try:
                    tracking = self.store.apply_location(item.parcel_id, item.sample)
                except ParcelNotFoundError:
                    # Released between ingest and apply (delivered meanwhile).
                    _logger.debug("Dropping sample for untracked parcel=%s", item.parcel_id)
                    continue
                eta_update = self.eta.update(tracking, item.sample)
                if eta_update is not None:
                    tracking = self.store.set_eta(item.parcel_id, eta_update.eta)
                self.router.publish(item.parcel_id, Message(ServerEvent.DRIVER_LOCATION_UPDATE, item.sample))
                self._publish_tracking(tracking)
                if eta_update is not None:
                    self._publish_eta(eta_update)
            snapshots.append(tracking)
        return snapshots

    async def advance_status(self, parcel_id: str, status: ParcelStatus | str) -> ParcelTracking:
        """Move *parcel_id* to its next lifecycle status.

        Raises :class:`InvalidTransitionError` (state unchanged) or
        :class:`ParcelNotFoundError`.
        """
        async with self.store.locked(parcel_id):
            try:
                tracking = self.store.apply_milestone(parcel_id, status)
            except TrackingError as exc:
                _logger.warning("Rejected status update parcel=%s status=%s: %s", parcel_id, status, exc)
                raise
            self._publish_tracking(tracking)
            if tracking.is_delivered:
                self.ingest.release(parcel_id)
                self.eta.forget(parcel_id)
        _logger.info("Parcel %s is now %s", parcel_id, tracking.status.value)
        if tracking.is_delivered:
            self._maybe_archive(parcel_id)
        return tracking

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_tracking(self, parcel_id: str) -> ParcelTracking:
        return self.store.get_tracking(parcel_id)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def connect(self, connection_id: str) -> Connection:
        return self.router.register(connection_id)

    def subscribe(self, connection_id: str, parcel_id: str) -> None:
        self.router.subscribe(connection_id, parcel_id)
        _logger.debug("Connection %s subscribed to %s", connection_id, parcel_id)

    def unsubscribe(self, connection_id: str, parcel_id: str) -> None:
        self.router.unsubscribe(connection_id, parcel_id)
        _logger.debug("Connection %s unsubscribed from %s", connection_id, parcel_id)
        self._maybe_archive(parcel_id)

    def disconnect(self, connection_id: str) -> None:
        parcels = self.router.disconnect(connection_id)
        for parcel_id in parcels:
            self._maybe_archive(parcel_id)

    def _on_overflow(self, connection_id: str, parcels: set[str]) -> None:
        for parcel_id in parcels:
            self._maybe_archive(parcel_id)

    def _maybe_archive(self, parcel_id: str) -> None:
        if self.router.subscriber_count(parcel_id) == 0 and self.store.archive(parcel_id):
            _logger.info("Parcel %s delivered and unwatched, archived", parcel_id)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def handle_message(self, connection_id: str, raw: str | bytes | dict[str, Any]) -> None:
        """Decode and dispatch one inbound frame from *connection_id*.

        Failures are isolated to this call: tracking errors are reported to
        the sender as an ``error`` event, anything unexpected is logged and
        reported as ``internal-error``.
        """
        parcel_hint: str | None = None
        try:
            message = decode_message(raw)
            _logger.debug("Inbound %s from %s: %s", message.event, connection_id, redact_for_log(message.data))
            if message.event == ClientEvent.SUBSCRIBE_PARCEL:
                parcel_hint = parcel_id_from(message.data)
                self.subscribe(connection_id, parcel_hint)
            elif message.event == ClientEvent.UNSUBSCRIBE_PARCEL:
                parcel_hint = parcel_id_from(message.data)
                self.unsubscribe(connection_id, parcel_hint)
            elif message.event == ClientEvent.DRIVER_LOCATION_UPDATE:
                if not isinstance(message.data, dict):
                    raise InvalidSampleError("Location sample must be an object")
                parcel_hint = message.data.get("parcelId")
                await self.report_location(message.data)
            elif message.event == ClientEvent.PARCEL_STATUS_UPDATE:
                parcel_hint = parcel_id_from(message.data)
                status = message.data.get("status") if isinstance(message.data, dict) else None
                if not isinstance(status, str):
                    raise ProtocolError("A status is required")
                await self.advance_status(parcel_hint, status)
            else:
                raise ProtocolError(f"Unknown event {message.event!r}")
        except TrackingError as exc:
            self.router.send_to(connection_id, error_message(exc, parcel_id=parcel_hint))
        except Exception:
            _logger.exception("Unexpected failure handling frame from %s", connection_id)
            self.router.send_to(
                connection_id,
                Message(ServerEvent.ERROR, {"code": "internal-error", "message": "Internal error"}),
            )

    # ------------------------------------------------------------------
    # Fan-out helpers
    # ------------------------------------------------------------------

    def _publish_tracking(self, tracking: ParcelTracking) -> None:
        self.router.publish(tracking.parcel_id, Message(ServerEvent.PARCEL_TRACKING_UPDATE, tracking))

    def _publish_eta(self, update: EtaUpdate) -> None:
        self.router.publish(update.parcel_id, Message(ServerEvent.ETA_UPDATE, update))
