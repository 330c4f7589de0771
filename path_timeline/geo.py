"""Geospatial utilities: distances, speeds and polygon geometry."""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from shapely.geometry import Point, Polygon

METERS_PER_DEGREE: float = 111_320.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """

    r = 6_371_000.0  # mean Earth radius in meters
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return r * c


def meters_to_degrees(meters: float, latitude: float) -> float:
    """Convert a distance to degrees of longitude at the given latitude.

    Used to build bounding boxes for nearby-place lookups; the longitude degree is the
    shorter one, so the box is never too small.
    """

    cos_lat = math.cos(math.radians(latitude))
    if cos_lat < 1e-9:
        return 180.0
    return meters / (METERS_PER_DEGREE * cos_lat)


def speed_kmh(distance_m: float, seconds: float) -> float:
    """Average speed in km/h; zero duration means infinite speed unless nothing moved."""

    if seconds <= 0:
        return 0.0 if distance_m <= 0 else math.inf
    return distance_m / seconds * 3.6


def path_length_m(coords: Iterable[tuple[float, float]]) -> float:
    """Sum of Haversine distances along a sequence of (lat, lon) pairs."""

    total = 0.0
    prev: tuple[float, float] | None = None
    for lat, lon in coords:
        if prev is not None:
            total += haversine_m(prev[0], prev[1], lat, lon)
        prev = (lat, lon)
    return total


def weighted_centroid(coords: Iterable[tuple[float, float, float | None]]) -> tuple[float, float]:
    """Centroid of (lat, lon, accuracy_m) triples weighted by 1/accuracy.

    Missing or non-positive accuracy counts as weight 1.

    Raises:
        ValueError: If ``coords`` is empty.
    """

    sum_w = 0.0
    sum_lat = 0.0
    sum_lon = 0.0
    for lat, lon, accuracy in coords:
        w = 1.0 / accuracy if accuracy is not None and accuracy > 0 else 1.0
        sum_w += w
        sum_lat += lat * w
        sum_lon += lon * w
    if sum_w == 0.0:
        raise ValueError("centroid of empty point set")
    return sum_lat / sum_w, sum_lon / sum_w


def _shapely_polygon(polygon: Sequence[tuple[float, float]]) -> Polygon:
    # shapely works in (x, y) = (lon, lat)
    return Polygon([(lon, lat) for lat, lon in polygon])


def polygon_contains(polygon: Sequence[tuple[float, float]], lat: float, lon: float) -> bool:
    """Check whether (lat, lon) lies inside or on the boundary of the polygon."""

    if len(polygon) < 3:
        return False
    return _shapely_polygon(polygon).covers(Point(lon, lat))


def polygon_centroid(polygon: Sequence[tuple[float, float]]) -> tuple[float, float]:
    """Mean of the polygon's unique vertices as (lat, lon).

    A closing vertex that repeats the first one is not counted twice.

    Raises:
        ValueError: If the polygon has no vertices.
    """

    unique = list(dict.fromkeys((float(lat), float(lon)) for lat, lon in polygon))
    if not unique:
        raise ValueError("polygon has no vertices")
    return (
        sum(lat for lat, _ in unique) / len(unique),
        sum(lon for _, lon in unique) / len(unique),
    )


def polygon_area_m2(polygon: Sequence[tuple[float, float]]) -> float:
    """Approximate polygon area in square meters.

    Vertices are projected to a local equirectangular plane (111 320 m per degree,
    longitude scaled by the cosine of the mean latitude) and measured with shapely.
    """

    if len(polygon) < 3:
        return 0.0
    mean_lat = sum(lat for lat, _ in polygon) / len(polygon)
    kx = METERS_PER_DEGREE * math.cos(math.radians(mean_lat))
    projected = Polygon([(lon * kx, lat * METERS_PER_DEGREE) for lat, lon in polygon])
    return abs(projected.area)
