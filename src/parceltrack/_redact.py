"""Redaction for DEBUG traces of inbound frames.

Frames come from untrusted devices: they may carry credentials (MQTT
passwords, bearer tokens) and arbitrarily long strings or route arrays.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

_MASK = "<redacted>"
_MAX_DEPTH = 20

# Compared case-insensitively, so camelCase and snake_case keys both match.
_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "apikey",
        "api_key",
        "accesstoken",
        "access_token",
        "authorization",
        "cookie",
        "password",
        "refreshtoken",
        "secret",
        "token",
    }
)


def _is_secret(key: object) -> bool:
    return str(key).lower() in _SECRET_KEYS


def redact_for_log(value: Any, *, max_string: int = 512, max_items: int = 50) -> Any:
    """Return a log-safe copy of *value*.

    Secret-looking keys are masked, strings longer than *max_string* are
    cut, sequences keep their first *max_items* entries plus a count of
    the rest. Pydantic models are redacted in their wire form.
    """

    def walk(item: Any, depth: int) -> Any:
        if depth > _MAX_DEPTH:
            return "<max-depth>"
        if item is None or isinstance(item, (bool, int, float)):
            return item
        if isinstance(item, str):
            return item if len(item) <= max_string else f"{item[:max_string]}…<truncated>"
        if isinstance(item, (bytes, bytearray)):
            return f"<bytes:{len(item)}b>"
        if isinstance(item, BaseModel):
            item = item.model_dump(mode="json", by_alias=True, exclude_none=True)
        if isinstance(item, Mapping):
            return {str(k): _MASK if _is_secret(k) else walk(v, depth + 1) for k, v in item.items()}
        if isinstance(item, Sequence):
            head = [walk(v, depth + 1) for v in item[:max_items]]
            if len(item) > max_items:
                head.append(f"<{len(item) - max_items} more>")
            return head
        return repr(item)

    return walk(value, 0)
