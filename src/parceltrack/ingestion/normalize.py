"""Normalization helpers.

Centralizes lenient parsing of device payloads (numbers sent as strings,
epoch timestamps in seconds or milliseconds, ISO-8601 strings).
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

from parceltrack._constants import MS_THRESHOLD


def safe_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def normalize_timestamp_seconds(value: Any) -> float | None:
    """Normalize epoch timestamps to seconds.

    - Empty/missing -> None
    - <= 0 -> None (treated as missing; location ingest rejects such
      samples up front with an explicit message)
    - Milliseconds (> 1e11) -> seconds
    """

    ts = safe_float(value)
    if ts is None or ts <= 0:
        return None
    if ts > MS_THRESHOLD:
        ts /= 1000.0
    return ts


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce a wire timestamp into a timezone-aware UTC datetime.

    Accepts ``datetime`` objects (naive ones are taken as UTC), epoch
    seconds or milliseconds, numeric strings and ISO-8601 strings
    (including the ``Z`` suffix JavaScript's ``Date.toJSON`` produces).
    Anything else is returned unchanged so the model validator reports it.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = normalize_timestamp_seconds(value)
        return datetime.fromtimestamp(seconds, tz=UTC) if seconds is not None else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        seconds = normalize_timestamp_seconds(text) if _looks_numeric(text) else None
        if seconds is not None:
            return datetime.fromtimestamp(seconds, tz=UTC)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return value  # type: ignore[return-value]
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return value  # type: ignore[no-any-return]


def _looks_numeric(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True
