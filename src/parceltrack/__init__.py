"""parceltrack - Real-time parcel tracking relay and client."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("parceltrack")
except PackageNotFoundError:
    __version__ = "0+local"
from parceltrack.client import ConnectionState, TrackingClient
from parceltrack.config import ClientConfig, MqttSettings, TrackingConfig
from parceltrack.exceptions import (
    ConnectionLostError,
    InvalidSampleError,
    InvalidTransitionError,
    ParcelNotFoundError,
    ProtocolError,
    TrackingConfigError,
    TrackingError,
)
from parceltrack.models import (
    DriverLocation,
    EtaUpdate,
    Location,
    Notification,
    NotificationPreferences,
    NotificationType,
    ParcelStatus,
    ParcelTracking,
    TrackingMilestone,
)
from parceltrack.notifications import NotificationFeed
from parceltrack.reconciler import ClientReconciler
from parceltrack.relay import TrackingRelay
from parceltrack.server import TrackingServer

__all__ = [
    "__version__",
    "ClientConfig",
    "ClientReconciler",
    "ConnectionLostError",
    "ConnectionState",
    "DriverLocation",
    "EtaUpdate",
    "InvalidSampleError",
    "InvalidTransitionError",
    "Location",
    "MqttSettings",
    "Notification",
    "NotificationFeed",
    "NotificationPreferences",
    "NotificationType",
    "ParcelNotFoundError",
    "ParcelStatus",
    "ParcelTracking",
    "ProtocolError",
    "TrackingClient",
    "TrackingConfig",
    "TrackingConfigError",
    "TrackingError",
    "TrackingMilestone",
    "TrackingRelay",
    "TrackingServer",
]
