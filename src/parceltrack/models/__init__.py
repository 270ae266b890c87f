"""Wire models for the tracking relay."""

from parceltrack.models._base import TrackingBaseModel
from parceltrack.models.location import DriverLocation, Location
from parceltrack.models.notifications import Notification, NotificationPreferences, NotificationType
from parceltrack.models.tracking import EtaUpdate, ParcelStatus, ParcelTracking, TrackingMilestone

__all__ = [
    "DriverLocation",
    "EtaUpdate",
    "Location",
    "Notification",
    "NotificationPreferences",
    "NotificationType",
    "ParcelStatus",
    "ParcelTracking",
    "TrackingBaseModel",
    "TrackingMilestone",
]
