"""Viewer notification models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from parceltrack.models._base import Timestamp, TrackingBaseModel


class NotificationType(StrEnum):
    LOCATION = "location"
    ETA = "eta"
    MILESTONE = "milestone"
    DELAY = "delay"


class NotificationPreferences(TrackingBaseModel):
    """Which event classes surface as user-visible alerts.

    ``push_notifications`` is the master switch: when it is off nothing
    surfaces, whatever the other flags say.
    """

    push_notifications: bool = True
    location_updates: bool = True
    eta_changes: bool = True
    milestone_alerts: bool = True
    delay_warnings: bool = True

    def with_changes(self, **flags: Any) -> NotificationPreferences:
        """Return a copy with *flags* applied (snake_case or camelCase keys)."""
        merged = self.model_dump()
        for key, value in flags.items():
            name = _FIELD_BY_ALIAS.get(key, key)
            if name not in merged:
                raise ValueError(f"Unknown notification preference {key!r}")
            merged[name] = bool(value)
        return NotificationPreferences(**merged)

    def allows(self, kind: NotificationType) -> bool:
        if not self.push_notifications:
            return False
        if kind == NotificationType.LOCATION:
            return self.location_updates
        if kind == NotificationType.ETA:
            return self.eta_changes
        if kind == NotificationType.MILESTONE:
            return self.milestone_alerts
        if kind == NotificationType.DELAY:
            return self.delay_warnings
        return False


_FIELD_BY_ALIAS: dict[str, str] = {
    field.alias: name for name, field in NotificationPreferences.model_fields.items() if field.alias
}


class Notification(TrackingBaseModel):
    id: str
    type: NotificationType
    title: str
    message: str
    timestamp: Timestamp
    parcel_id: str | None = None
    read: bool = False
