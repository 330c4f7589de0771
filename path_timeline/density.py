"""Density normalization: synthetic gap filling and near-duplicate suppression."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from itertools import pairwise
from typing import Sequence

from path_timeline.config import DensityConfig, LocationDensity
from path_timeline.geo import haversine_m
from path_timeline.models import RawPoint
from path_timeline.store import TimelineStore

logger = logging.getLogger(__name__)


def _lerp(a: float, b: float, ratio: float) -> float:
    return a + (b - a) * ratio


def _lerp_optional(a: float | None, b: float | None, ratio: float) -> float | None:
    if a is None:
        return b
    if b is None:
        return a
    return _lerp(a, b, ratio)


class SyntheticPointGenerator:
    """Linear interpolation between two real points."""

    def generate(
        self,
        start: RawPoint,
        end: RawPoint,
        *,
        interval_s: int,
        max_distance_m: float,
        max_gap_s: float,
    ) -> list[RawPoint]:
        """Points at ``start + k * interval`` strictly before ``end``.

        Nothing is generated when the pair is farther apart than ``max_distance_m`` or
        ``max_gap_s``. Position, accuracy and elevation are interpolated by time
        fraction; an endpoint without accuracy/elevation takes the other one's value.

        Returns:
            Unsaved synthetic points (``point_id`` 0), flagged processed and synthetic.
        """

        total_ms = end.timestamp_ms - start.timestamp_ms
        if total_ms <= 0 or interval_s <= 0:
            return []
        if total_ms / 1000.0 > max_gap_s:
            return []
        if haversine_m(start.latitude, start.longitude, end.latitude, end.longitude) > max_distance_m:
            return []

        out: list[RawPoint] = []
        step_ms = interval_s * 1000
        t = start.timestamp_ms + step_ms
        while t < end.timestamp_ms:
            ratio = (t - start.timestamp_ms) / total_ms
            out.append(
                RawPoint(
                    point_id=0,
                    timestamp_ms=t,
                    latitude=_lerp(start.latitude, end.latitude, ratio),
                    longitude=_lerp(start.longitude, end.longitude, ratio),
                    accuracy_m=_lerp_optional(start.accuracy_m, end.accuracy_m, ratio),
                    elevation_m=_lerp_optional(start.elevation_m, end.elevation_m, ratio),
                    processed=True,
                    synthetic=True,
                )
            )
            t += step_ms
        return out


def _loser(earlier: RawPoint, later: RawPoint) -> RawPoint:
    """Which of two near-duplicate points to ignore."""

    if earlier.synthetic != later.synthetic:
        return earlier if earlier.synthetic else later
    a1, a2 = earlier.accuracy_m, later.accuracy_m
    if a1 is not None and a2 is not None:
        if a1 != a2:
            return earlier if a1 > a2 else later
    elif a1 is not None:
        return later
    elif a2 is not None:
        return earlier
    return earlier


def select_points_to_ignore(points: Sequence[RawPoint], tolerance_s: float) -> set[int]:
    """Ids of points closer than ``tolerance_s`` to the previously kept point.

    Rules, in order: synthetic loses to real, worse accuracy loses, missing accuracy
    loses, otherwise the earlier point loses.
    """

    tolerance_ms = tolerance_s * 1000.0
    ignored: set[int] = set()
    anchor: RawPoint | None = None
    for p in sorted(points, key=lambda x: x.timestamp_ms):
        if anchor is None or p.timestamp_ms - anchor.timestamp_ms >= tolerance_ms:
            anchor = p
            continue
        lost = _loser(anchor, p)
        ignored.add(lost.point_id)
        if lost is anchor:
            anchor = p
    return ignored


@dataclass(frozen=True, slots=True)
class DensityResult:
    synthetic_removed: int
    synthetic_created: int
    ignored: int


class DensityNormalizer:
    """Keeps a window close to the target density.

    Existing synthetic points and ignore flags of the window are rebuilt from the real
    points on every run, which makes the stage idempotent.
    """

    def __init__(self, config: DensityConfig | None = None, generator: SyntheticPointGenerator | None = None) -> None:
        self._cfg = config or DensityConfig()
        self._generator = generator or SyntheticPointGenerator()

    def normalize(
        self,
        store: TimelineStore,
        user: str,
        start_ms: int,
        end_ms: int,
        limits: LocationDensity,
    ) -> DensityResult:
        max_gap_s = limits.max_interpolation_gap_minutes * 60.0
        removed = store.delete_synthetic_points(user, start_ms, end_ms)

        # one gap of context on each side so pairs straddling the window are filled
        margin = int(max_gap_s * 1000)
        real = [
            p
            for p in store.find_points(user, start_ms - margin, end_ms + margin, include_synthetic=False)
            if not p.invalid
        ]
        synthetic: list[RawPoint] = []
        for a, b in pairwise(real):
            if b.timestamp_ms < start_ms or a.timestamp_ms > end_ms:
                continue
            if (b.timestamp_ms - a.timestamp_ms) / 1000.0 <= self._cfg.gap_threshold_s:
                continue
            synthetic.extend(
                s
                for s in self._generator.generate(
                    a,
                    b,
                    interval_s=self._cfg.interval_s,
                    max_distance_m=limits.max_interpolation_distance_m,
                    max_gap_s=max_gap_s,
                )
                if start_ms <= s.timestamp_ms <= end_ms
            )
        created = store.insert_points(user, synthetic)

        window = [p for p in store.find_points(user, start_ms, end_ms) if not p.invalid]
        to_ignore = select_points_to_ignore(window, self._cfg.tolerance_s)
        changes = [replace(p, ignored=p.point_id in to_ignore) for p in window if p.ignored != (p.point_id in to_ignore)]
        # invalid points never stay ignored from an earlier run
        changes.extend(
            replace(p, ignored=False) for p in store.find_points(user, start_ms, end_ms) if p.invalid and p.ignored
        )
        if changes:
            store.update_points(user, changes)

        logger.info(
            "Density: user=%s removed=%s synthetic, created=%s, ignored=%s",
            user,
            removed,
            len(created),
            len(to_ignore),
        )
        return DensityResult(synthetic_removed=removed, synthetic_created=len(created), ignored=len(to_ignore))
