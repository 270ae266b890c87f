"""Deterministic ordering policy.

This module contains *no* payload parsing; it only decides, given
already-normalized timestamps/versions, whether an update may be applied.
"""

from __future__ import annotations

from datetime import datetime


def should_accept_sample(
    *,
    last_accepted: datetime | None,
    incoming: datetime,
    skew_allowance_seconds: float,
) -> bool:
    """Decide whether a driver sample is fresh enough to ingest.

    A sample may go back in time by at most the skew allowance relative to
    the previous accepted sample of the same driver.
    """
    if last_accepted is None:
        return True
    return (incoming - last_accepted).total_seconds() >= -skew_allowance_seconds


def is_newer(
    *,
    held: tuple[float, ...] | None,
    incoming: tuple[float, ...],
) -> bool:
    """Last-write-wins check on ordering keys.

    Equal keys are *not* newer: replaying an update already applied is a
    no-op, which keeps merges idempotent.
    """
    if held is None:
        return True
    return incoming > held


def order_key(*parts: datetime | int | float | None) -> tuple[float, ...]:
    """Build a comparable key; missing parts sort first."""
    key: list[float] = []
    for part in parts:
        if part is None:
            key.append(float("-inf"))
        elif isinstance(part, datetime):
            key.append(part.timestamp())
        else:
            key.append(float(part))
    return tuple(key)
