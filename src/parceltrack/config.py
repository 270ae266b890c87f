"""Relay and client configuration for parceltrack."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from parceltrack import _constants as c
from parceltrack.exceptions import TrackingConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _coerce_env(raw: str, default: Any) -> Any:
    """Parse an environment string into the type of the field default."""
    if isinstance(default, bool):
        return _env_bool(raw, default)
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as exc:
        raise TrackingConfigError(f"Invalid numeric value {raw!r}") from exc
    return raw


def _read_env(prefix: str, fields: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    env = os.environ
    values: dict[str, Any] = {}
    for field_name, default in fields.items():
        if field_name in overrides:
            continue
        raw = env.get(f"{prefix}{field_name.upper()}")
        if raw is not None:
            values[field_name] = _coerce_env(raw, default)
    return values


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Optional MQTT ingest for driver devices that cannot hold a WebSocket."""

    enabled: bool = False
    host: str = "localhost"
    port: int = 1883
    topic: str = c.MQTT_LOCATION_TOPIC
    keepalive: int = 60
    username: str | None = None
    password: str | None = None
    tls: bool = False
    client_id: str = "parceltrack-relay"


@dataclasses.dataclass(frozen=True)
class TrackingConfig:
    """Relay configuration.

    Parameters
    ----------
    host : str
        Interface the HTTP/WebSocket server binds to.
    port : int
        TCP port of the server.
    max_plausible_speed_mps : float
        Speeds above this are clamped and the sample flagged suspect.
    clock_skew_tolerance_seconds : float
        How far a sample may go back in time relative to the previous
        accepted sample of the same driver before it is rejected.
    route_max_points : int
        Hard cap on retained route points per parcel (at least 3).
    route_min_point_distance_m : float
        Points closer than this to the previous retained point do not
        grow the route.
    outbound_queue_size : int
        Bound of each connection's outbound queue.
    overflow_policy : str
        ``"drop-oldest"`` or ``"disconnect"``.
    archive_capacity : int
        Delivered parcels kept readable after their last viewer left.
    eta_smoothing : float
        Weight of the newest speed in the exponential moving average.
    eta_min_speed_mps : float
        Below this smoothed speed the previous ETA is kept.
    delay_threshold_minutes : int
        Minimum slip past the baseline ETA that is reported as a delay.
    mqtt : MqttSettings
        MQTT ingest settings.
    """

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    max_plausible_speed_mps: float = c.MAX_PLAUSIBLE_SPEED_MPS
    clock_skew_tolerance_seconds: float = c.CLOCK_SKEW_TOLERANCE_SECONDS
    route_max_points: int = c.ROUTE_MAX_POINTS
    route_min_point_distance_m: float = c.ROUTE_MIN_POINT_DISTANCE_M
    outbound_queue_size: int = c.OUTBOUND_QUEUE_SIZE
    overflow_policy: str = c.OVERFLOW_DROP_OLDEST
    archive_capacity: int = c.ARCHIVE_CAPACITY
    eta_smoothing: float = c.ETA_SMOOTHING
    eta_min_speed_mps: float = c.ETA_MIN_SPEED_MPS
    delay_threshold_minutes: int = c.DELAY_THRESHOLD_MINUTES
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.route_max_points < 3:
            raise TrackingConfigError("route_max_points must be at least 3")
        if self.route_min_point_distance_m < 0:
            raise TrackingConfigError("route_min_point_distance_m must not be negative")
        if self.outbound_queue_size <= 0:
            raise TrackingConfigError("outbound_queue_size must be positive")
        if self.overflow_policy not in c.OVERFLOW_POLICIES:
            raise TrackingConfigError(
                f"overflow_policy must be one of {sorted(c.OVERFLOW_POLICIES)}, got {self.overflow_policy!r}"
            )
        if self.max_plausible_speed_mps <= 0:
            raise TrackingConfigError("max_plausible_speed_mps must be positive")
        if not 0 < self.eta_smoothing <= 1:
            raise TrackingConfigError("eta_smoothing must be in (0, 1]")
        if self.archive_capacity < 0:
            raise TrackingConfigError("archive_capacity must not be negative")

    @classmethod
    def from_env(cls, **overrides: Any) -> TrackingConfig:
        """Create configuration from environment variables.

        Reads ``PARCELTRACK_<FIELD>`` for every top-level field (e.g.
        ``PARCELTRACK_PORT``, ``PARCELTRACK_OVERFLOW_POLICY``) and
        ``PARCELTRACK_MQTT_<FIELD>`` for the MQTT settings. Explicit
        keyword arguments override environment values.
        """
        mqtt_defaults = {f.name: f.default for f in dataclasses.fields(MqttSettings)}
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, MqttSettings):
            mqtt = mqtt_overrides
        else:
            mqtt_kwargs = _read_env("PARCELTRACK_MQTT_", mqtt_defaults, {})
            if isinstance(mqtt_overrides, dict):
                mqtt_kwargs.update(mqtt_overrides)
            mqtt = MqttSettings(**mqtt_kwargs)

        defaults = {f.name: f.default for f in dataclasses.fields(cls) if f.name != "mqtt"}
        config_kwargs: dict[str, Any] = {"mqtt": mqtt}
        config_kwargs.update(_read_env("PARCELTRACK_", defaults, overrides))
        config_kwargs.update(overrides)
        return cls(**config_kwargs)


@dataclasses.dataclass(frozen=True)
class ClientConfig:
    """Viewer/driver client configuration.

    ``base_url`` is the relay's HTTP root; the WebSocket endpoint is
    derived from it.
    """

    base_url: str = "http://localhost:8080"
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    heartbeat: float = 20.0
    notification_capacity: int = 100

    @property
    def ws_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://") :] + "/ws"
        if base.startswith("http://"):
            return "ws://" + base[len("http://") :] + "/ws"
        return base + "/ws"

    @classmethod
    def from_env(cls, **overrides: Any) -> ClientConfig:
        """Create configuration from ``PARCELTRACK_CLIENT_<FIELD>`` variables."""
        defaults = {f.name: f.default for f in dataclasses.fields(cls)}
        config_kwargs = _read_env("PARCELTRACK_CLIENT_", defaults, overrides)
        config_kwargs.update(overrides)
        return cls(**config_kwargs)
