"""Route thinning and bounding.

The route keeps the shape of the path with a bounded number of points:

* the tail is always the latest fix;
* a fix within ``min_distance_m`` of the point before the tail replaces the
  tail instead of growing the route, so interior points stay spaced out;
* a fix older than the tail (late, but inside the skew tolerance) replaces
  the tail with its timestamp clamped to the tail's, so timestamps never
  decrease along the route;
* past ``max_points`` the interior is decimated (every other point dropped)
  while the first and last points are kept.
"""

from __future__ import annotations

from parceltrack.geo import haversine_m
from parceltrack.models.location import Location


def _distance(a: Location, b: Location) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def extend_route(
    route: tuple[Location, ...],
    point: Location,
    *,
    min_distance_m: float,
    max_points: int,
) -> tuple[Location, ...]:
    points = list(route)
    if points and point.timestamp < points[-1].timestamp:
        points[-1] = point.model_copy(update={"timestamp": points[-1].timestamp})
    elif len(points) >= 2 and _distance(points[-2], points[-1]) < min_distance_m:
        points[-1] = point
    else:
        points.append(point)
    return tuple(bound_route(points, max_points=max_points))


def bound_route(points: list[Location], *, max_points: int) -> list[Location]:
    while len(points) > max_points:
        interior = points[1:-1]
        points = [points[0], *interior[::2], points[-1]]
    return points
