from __future__ import annotations

import pytest

import parceltrack.__main__ as cli
from parceltrack.config import TrackingConfig


def test_main_passes_overrides_to_server(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[TrackingConfig] = []
    monkeypatch.setattr(cli, "run", captured.append)
    monkeypatch.setenv("PARCELTRACK_OVERFLOW_POLICY", "disconnect")

    cli.main(["--host", "127.0.0.1", "--port", "9000", "--log-level", "DEBUG"])

    [config] = captured
    assert config.host == "127.0.0.1"
    assert config.port == 9000
    assert config.overflow_policy == "disconnect"


def test_main_rejects_unknown_log_level() -> None:
    with pytest.raises(SystemExit):
        cli.main(["--log-level", "LOUD"])
