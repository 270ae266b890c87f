"""Viewer-side notification feed."""

from __future__ import annotations

import itertools
from collections import deque
from collections.abc import Callable, Iterator
from datetime import UTC, datetime

from parceltrack.models.notifications import Notification, NotificationPreferences, NotificationType


def _utcnow() -> datetime:
    return datetime.now(UTC)


class NotificationFeed:
    """Newest-first bounded list of alerts, filtered by preferences."""

    def __init__(
        self,
        preferences: NotificationPreferences | None = None,
        *,
        capacity: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.preferences = preferences or NotificationPreferences()
        self._items: deque[Notification] = deque(maxlen=capacity)
        self._clock = clock
        self._ids = itertools.count(1)

    def update_preferences(self, **flags: bool) -> NotificationPreferences:
        self.preferences = self.preferences.with_changes(**flags)
        return self.preferences

    def push(
        self,
        kind: NotificationType,
        title: str,
        message: str,
        *,
        parcel_id: str | None = None,
    ) -> Notification | None:
        """Add an alert unless the preferences mute *kind*."""
        if not self.preferences.allows(kind):
            return None
        notification = Notification(
            id=str(next(self._ids)),
            type=kind,
            title=title,
            message=message,
            timestamp=self._clock(),
            parcel_id=parcel_id,
        )
        self._items.appendleft(notification)
        return notification

    def mark_read(self, notification_id: str) -> bool:
        for index, item in enumerate(self._items):
            if item.id == notification_id:
                if not item.read:
                    self._items[index] = item.model_copy(update={"read": True})
                return True
        return False

    def mark_all_read(self) -> None:
        for index, item in enumerate(self._items):
            if not item.read:
                self._items[index] = item.model_copy(update={"read": True})

    def delete(self, notification_id: str) -> bool:
        for item in self._items:
            if item.id == notification_id:
                self._items.remove(item)
                return True
        return False

    def clear(self) -> None:
        self._items.clear()

    @property
    def unread_count(self) -> int:
        return sum(1 for item in self._items if not item.read)

    def __iter__(self) -> Iterator[Notification]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)
