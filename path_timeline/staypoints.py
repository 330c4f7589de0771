"""Stay-point detection: a distance/time sweep over filtered points."""

from __future__ import annotations

import logging
from typing import Sequence

from path_timeline.config import VisitDetection
from path_timeline.geo import haversine_m, weighted_centroid
from path_timeline.models import RawPoint, StayPoint

logger = logging.getLogger(__name__)


def _weight(p: RawPoint) -> float:
    return 1.0 / p.accuracy_m if p.accuracy_m is not None and p.accuracy_m > 0 else 1.0


class _Cluster:
    """Open cluster with a running accuracy-weighted centroid."""

    __slots__ = ("points", "_w", "_lat", "_lon")

    def __init__(self, first: RawPoint) -> None:
        self.points: list[RawPoint] = []
        self._w = 0.0
        self._lat = 0.0
        self._lon = 0.0
        self.add(first)

    def add(self, p: RawPoint) -> None:
        w = _weight(p)
        self.points.append(p)
        self._w += w
        self._lat += p.latitude * w
        self._lon += p.longitude * w

    @property
    def centroid(self) -> tuple[float, float]:
        return self._lat / self._w, self._lon / self._w

    def distance_to(self, p: RawPoint) -> float:
        lat, lon = self.centroid
        return haversine_m(lat, lon, p.latitude, p.longitude)


def _stay_point(points: Sequence[RawPoint]) -> StayPoint:
    lat, lon = weighted_centroid((p.latitude, p.longitude, p.accuracy_m) for p in points)
    return StayPoint(
        latitude=lat,
        longitude=lon,
        start_ms=points[0].timestamp_ms,
        end_ms=points[-1].timestamp_ms,
        points=tuple(points),
    )


def _qualifies(points: Sequence[RawPoint], params: VisitDetection) -> bool:
    if len(points) < params.minimum_adjacent_points:
        return False
    return (points[-1].timestamp_ms - points[0].timestamp_ms) / 1000.0 >= params.minimum_stay_time_s


def _coalesce(stays: list[StayPoint], params: VisitDetection) -> list[StayPoint]:
    max_gap_ms = params.max_merge_time_between_same_stay_points_s * 1000.0
    out: list[StayPoint] = []
    for sp in stays:
        if out:
            prev = out[-1]
            close = haversine_m(prev.latitude, prev.longitude, sp.latitude, sp.longitude) <= params.search_distance_m
            if close and sp.start_ms - prev.end_ms < max_gap_ms:
                out[-1] = _stay_point(prev.points + sp.points)
                continue
        out.append(sp)
    return out


def detect_stay_points(
    points: Sequence[RawPoint],
    params: VisitDetection,
    max_gap_s: float,
) -> list[StayPoint]:
    """Cluster consecutive points into stay points.

    A cluster opens at a point and grows while each next point lies within
    ``search_distance_m`` of the running centroid. The first point outside, or a time
    gap larger than ``max_gap_s``, closes it and opens the next cluster. Clusters with
    fewer than ``minimum_adjacent_points`` points or shorter than
    ``minimum_stay_time_s`` are transit. Nearby stay points separated by less than
    ``max_merge_time_between_same_stay_points_s`` are coalesced.

    Args:
        points: Usable points (processed, not invalid, not ignored).
        params: Clustering parameters.
        max_gap_s: Sampling gap treated as a discontinuity.

    Returns:
        Stay points ordered by time, without overlaps.
    """

    pts = sorted(points, key=lambda p: p.timestamp_ms)
    if not pts:
        return []

    max_gap_ms = max_gap_s * 1000.0
    closed: list[list[RawPoint]] = []
    cluster = _Cluster(pts[0])
    for prev, p in zip(pts, pts[1:]):
        if p.timestamp_ms - prev.timestamp_ms > max_gap_ms or cluster.distance_to(p) > params.search_distance_m:
            closed.append(cluster.points)
            cluster = _Cluster(p)
        else:
            cluster.add(p)
    closed.append(cluster.points)

    stays = [_stay_point(c) for c in closed if _qualifies(c, params)]
    merged = _coalesce(stays, params)
    logger.debug("Stay points: %s clusters, %s stays, %s after coalescing", len(closed), len(stays), len(merged))
    return merged
