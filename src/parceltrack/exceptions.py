"""Custom exception hierarchy for parceltrack."""

from __future__ import annotations


class TrackingError(Exception):
    """Base exception for all parceltrack errors."""

    code: str = "tracking-error"


class TrackingConfigError(TrackingError):
    """Invalid or missing configuration."""

    code = "config-error"


class InvalidSampleError(TrackingError):
    """Malformed or implausible location sample.

    The sample is dropped and no state changes.
    """

    code = "invalid-sample"

    def __init__(
        self,
        message: str,
        *,
        driver_id: str | None = None,
        parcel_id: str | None = None,
    ) -> None:
        self.driver_id = driver_id
        self.parcel_id = parcel_id
        super().__init__(message)


class InvalidTransitionError(TrackingError):
    """Out-of-order or repeated status transition."""

    code = "invalid-transition"

    def __init__(
        self,
        message: str,
        *,
        parcel_id: str = "",
        current: str | None = None,
        requested: str | None = None,
    ) -> None:
        self.parcel_id = parcel_id
        self.current = current
        self.requested = requested
        super().__init__(message)


class ParcelNotFoundError(TrackingError):
    """No tracking record exists for the requested parcel id."""

    code = "not-found"

    def __init__(self, parcel_id: str) -> None:
        self.parcel_id = parcel_id
        super().__init__(f"No tracking record for parcel {parcel_id!r}")


class ProtocolError(TrackingError):
    """Inbound frame could not be decoded into a known event."""

    code = "protocol-error"


class ConnectionLostError(TrackingError):
    """The event channel dropped.

    Transient: the client reconnects, re-subscribes and resyncs from a
    snapshot instead of surfacing this to the user.
    """

    code = "connection-lost"
