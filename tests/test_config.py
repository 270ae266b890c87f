from __future__ import annotations

import pytest

from parceltrack.config import ClientConfig, MqttSettings, TrackingConfig
from parceltrack.exceptions import TrackingConfigError


def test_defaults() -> None:
    config = TrackingConfig()

    assert config.port == 8080
    assert config.max_plausible_speed_mps == 60.0
    assert config.overflow_policy == "drop-oldest"
    assert config.mqtt == MqttSettings()
    assert not config.mqtt.enabled


@pytest.mark.parametrize(
    "overrides",
    [
        {"route_max_points": 2},
        {"route_min_point_distance_m": -1.0},
        {"outbound_queue_size": 0},
        {"overflow_policy": "block"},
        {"max_plausible_speed_mps": 0.0},
        {"eta_smoothing": 0.0},
        {"eta_smoothing": 1.5},
        {"archive_capacity": -1},
    ],
)
def test_invalid_values_rejected(overrides: dict[str, object]) -> None:
    with pytest.raises(TrackingConfigError):
        TrackingConfig(**overrides)  # type: ignore[arg-type]


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PARCELTRACK_PORT", "9090")
    monkeypatch.setenv("PARCELTRACK_OVERFLOW_POLICY", "disconnect")
    monkeypatch.setenv("PARCELTRACK_ETA_SMOOTHING", "0.5")
    monkeypatch.setenv("PARCELTRACK_MQTT_ENABLED", "yes")
    monkeypatch.setenv("PARCELTRACK_MQTT_HOST", "broker.local")

    config = TrackingConfig.from_env()

    assert config.port == 9090
    assert config.overflow_policy == "disconnect"
    assert config.eta_smoothing == 0.5
    assert config.mqtt.enabled
    assert config.mqtt.host == "broker.local"


def test_from_env_overrides_win(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PARCELTRACK_PORT", "9090")

    config = TrackingConfig.from_env(port=7000, mqtt={"port": 8883, "tls": True})

    assert config.port == 7000
    assert config.mqtt.port == 8883
    assert config.mqtt.tls


def test_from_env_rejects_bad_number(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PARCELTRACK_ROUTE_MAX_POINTS", "lots")

    with pytest.raises(TrackingConfigError, match="Invalid numeric value"):
        TrackingConfig.from_env()


def test_client_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PARCELTRACK_CLIENT_BASE_URL", "https://relay.example")
    monkeypatch.setenv("PARCELTRACK_CLIENT_RECONNECT_MAX_DELAY", "5")

    config = ClientConfig.from_env()

    assert config.ws_url == "wss://relay.example/ws"
    assert config.reconnect_max_delay == 5.0
