"""Run the tracking relay: ``python -m parceltrack``."""

from __future__ import annotations

import argparse
import logging
from typing import Any

from parceltrack.config import TrackingConfig
from parceltrack.server import run


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="parceltrack", description="Real-time parcel tracking relay")
    parser.add_argument("--host", default=None, help="Bind address (default: PARCELTRACK_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="TCP port (default: PARCELTRACK_PORT or 8080)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, Any] = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    run(TrackingConfig.from_env(**overrides))


if __name__ == "__main__":
    main()
