"""Anomaly filter for raw points.

Two kinds of evidence mark a point invalid:

- its own reported accuracy is worse than ``max_accuracy_m``;
- it disagrees with both sides: the previous valid point and the next point that is
  consistent with that previous valid point. A pair disagrees on implausible speed or
  on a long distance jump within a short time.

A single aberrant neighbour therefore never flags a good point, while a short excursion
of several bad fixes is still caught, since its points are skipped when looking for the
successor. Edge points, which have one side only, are judged against their two nearest
neighbours on that side with relaxed thresholds.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Sequence

from path_timeline.config import AnomalyFilterConfig
from path_timeline.geo import haversine_m, speed_kmh
from path_timeline.models import RawPoint
from path_timeline.store import TimelineStore
from path_timeline.timeutils import HOUR_MS

logger = logging.getLogger(__name__)


def _implausible(a: RawPoint, b: RawPoint, cfg: AnomalyFilterConfig, tolerance: float = 1.0) -> bool:
    distance = haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
    if distance < cfg.min_distance_m:
        return False
    seconds = max(abs(b.timestamp_ms - a.timestamp_ms) / 1000.0, cfg.min_time_delta_s)
    if speed_kmh(distance, seconds) > cfg.max_speed_kmh * tolerance:
        return True
    return seconds <= cfg.distance_jump_window_s and distance > cfg.max_distance_jump_m * tolerance


def _successor(pts: Sequence[RawPoint], i: int, anchor: RawPoint, cfg: AnomalyFilterConfig) -> RawPoint:
    """First point after ``i`` consistent with ``anchor``, else simply the next one."""

    for q in pts[i + 1 : i + 1 + cfg.lookahead_points]:
        if not _implausible(anchor, q, cfg):
            return q
    return pts[i + 1]


def find_anomalies(points: Sequence[RawPoint], cfg: AnomalyFilterConfig) -> set[int]:
    """Return ids of the points to flag invalid.

    Args:
        points: Candidate points (any order); already-invalid points must be excluded.
        cfg: Thresholds.

    Returns:
        Point ids to flag invalid. Inaccurate points are always flagged; the neighbour
        checks need at least 3 remaining points.
    """

    flagged = {p.point_id for p in points if p.accuracy_m is not None and p.accuracy_m > cfg.max_accuracy_m}
    pts = sorted((p for p in points if p.point_id not in flagged), key=lambda p: p.timestamp_ms)
    n = len(pts)
    if n < 3:
        return flagged

    edge = cfg.edge_tolerance
    # last two points that survived, most recent last
    valid: list[RawPoint] = []

    for i, p in enumerate(pts):
        if not valid:
            # leading edge: both following neighbours must disagree
            bad = (
                i + 2 < n
                and _implausible(p, pts[i + 1], cfg, edge)
                and _implausible(p, pts[i + 2], cfg, edge)
            )
        elif i + 1 == n:
            # trailing edge: the two last survivors must disagree
            bad = _implausible(valid[-1], p, cfg, edge) and (
                len(valid) < 2 or _implausible(valid[-2], p, cfg, edge)
            )
        else:
            bad = _implausible(valid[-1], p, cfg) and _implausible(p, _successor(pts, i, valid[-1], cfg), cfg)

        if bad:
            flagged.add(p.point_id)
        else:
            valid = (valid + [p])[-2:]
    return flagged


class AnomalyFilter:
    """Flags implausible raw points of a window as invalid."""

    def __init__(self, config: AnomalyFilterConfig | None = None) -> None:
        self._cfg = config or AnomalyFilterConfig()

    def apply(self, store: TimelineStore, user: str, start_ms: int, end_ms: int) -> int:
        """Re-evaluate the invalid flag of the real points in ``[start_ms, end_ms]``.

        Points up to ``history_lookback_hours`` outside the window give context but are
        not modified. Flags inside the window are recomputed from scratch, so running
        twice changes nothing.

        Returns:
            Number of points in the window that are invalid afterwards.
        """

        margin = int(self._cfg.history_lookback_hours * HOUR_MS)
        pts = store.find_points(user, start_ms - margin, end_ms + margin, include_synthetic=False)

        def in_window(p: RawPoint) -> bool:
            return start_ms <= p.timestamp_ms <= end_ms

        context = [p for p in pts if in_window(p) or not p.invalid]
        flagged = find_anomalies(context, self._cfg)

        changes = [
            replace(p, invalid=p.point_id in flagged)
            for p in pts
            if in_window(p) and p.invalid != (p.point_id in flagged)
        ]
        if changes:
            store.update_points(user, changes)
        invalid = sum(1 for p in pts if in_window(p) and p.point_id in flagged)
        if invalid:
            logger.info("Anomaly filter: %s invalid point(s) for user %s", invalid, user)
        return invalid
