"""Internal constants shared across the library."""

#: Mean Earth radius used by the haversine helpers.
EARTH_RADIUS_M = 6_371_000.0

#: Above this ground speed a sample is clamped and flagged suspect (216 km/h).
MAX_PLAUSIBLE_SPEED_MPS = 60.0

#: Tolerated device clock skew between consecutive samples of one driver.
CLOCK_SKEW_TOLERANCE_SECONDS = 5.0

ROUTE_MAX_POINTS = 500
ROUTE_MIN_POINT_DISTANCE_M = 5.0

OUTBOUND_QUEUE_SIZE = 256
OVERFLOW_DROP_OLDEST = "drop-oldest"
OVERFLOW_DISCONNECT = "disconnect"
OVERFLOW_POLICIES: frozenset[str] = frozenset({OVERFLOW_DROP_OLDEST, OVERFLOW_DISCONNECT})

ARCHIVE_CAPACITY = 1000

ETA_SMOOTHING = 0.3
ETA_MIN_SPEED_MPS = 0.5
DELAY_THRESHOLD_MINUTES = 5

MQTT_LOCATION_TOPIC = "parceltrack/drivers/+/location"

# Threshold to distinguish seconds from milliseconds.
MS_THRESHOLD = 1e11
