"""Trip building, transport mode inference and duplicate trip merging."""

from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from dataclasses import replace
from itertools import pairwise
from typing import Callable, Mapping, Sequence

from path_timeline.config import TransportModeBand
from path_timeline.geo import haversine_m, path_length_m, speed_kmh
from path_timeline.models import ProcessedVisit, RawPoint, SignificantPlace, TransportMode, TransportModeOverride, Trip
from path_timeline.store import TimelineStore

logger = logging.getLogger(__name__)

# relative speed change that starts a new movement segment
SEGMENT_SPEED_CHANGE: float = 0.5


def classify_speed(speed: float, bands: Sequence[TransportModeBand]) -> TransportMode:
    """First band (ascending by ceiling) whose ceiling is not exceeded."""

    ordered = sorted(bands, key=lambda b: math.inf if b.max_kmh is None else b.max_kmh)
    for band in ordered:
        if band.max_kmh is None or speed <= band.max_kmh:
            return band.mode
    return TransportMode.UNKNOWN


def infer_transport_mode(points: Sequence[RawPoint], bands: Sequence[TransportModeBand]) -> TransportMode:
    """Classify movement from point-to-point speeds.

    The track is cut into segments wherever the speed changes by more than 50 %. Each
    segment is classified by its average speed; the mode covering most minutes wins.
    """

    legs: list[tuple[float, float]] = []
    for a, b in pairwise(sorted(points, key=lambda p: p.timestamp_ms)):
        seconds = (b.timestamp_ms - a.timestamp_ms) / 1000.0
        if seconds <= 0:
            continue
        legs.append((haversine_m(a.latitude, a.longitude, b.latitude, b.longitude), seconds))
    if not legs:
        return TransportMode.UNKNOWN

    segments: list[list[tuple[float, float]]] = [[legs[0]]]
    prev_speed = speed_kmh(*legs[0])
    for leg in legs[1:]:
        v = speed_kmh(*leg)
        changed = v > 0 if prev_speed <= 0 else abs(v - prev_speed) / prev_speed > SEGMENT_SPEED_CHANGE
        if changed:
            segments.append([])
        segments[-1].append(leg)
        prev_speed = v

    minutes: Counter[TransportMode] = Counter()
    for seg in segments:
        distance = sum(d for d, _ in seg)
        seconds = sum(s for _, s in seg)
        minutes[classify_speed(speed_kmh(distance, seconds), bands)] += seconds / 60.0
    order = {band.mode: i for i, band in enumerate(bands)}
    return max(minutes, key=lambda m: (minutes[m], -order.get(m, len(order))))


def build_trip(
    prev: ProcessedVisit,
    nxt: ProcessedVisit,
    places: Mapping[int, SignificantPlace],
    points: Sequence[RawPoint],
    bands: Sequence[TransportModeBand],
    override: TransportModeOverride | None = None,
) -> Trip:
    """Unsaved trip (``trip_id`` 0) exactly spanning the gap between two visits.

    Args:
        prev: Visit the trip starts from.
        nxt: Visit the trip ends at.
        places: Places of both visits.
        points: Usable points in ``[prev.end_ms, nxt.start_ms]``.
        bands: Transport mode speed bands.
        override: User correction for exactly this time range.
    """

    a, b = places[prev.place_id], places[nxt.place_id]
    estimated = haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
    travelled = path_length_m((p.latitude, p.longitude) for p in points)
    if override is not None:
        mode = override.mode
    elif len(points) >= 2:
        mode = infer_transport_mode(points, bands)
    else:
        mode = classify_speed(speed_kmh(estimated, (nxt.start_ms - prev.end_ms) / 1000.0), bands)
    return Trip(
        trip_id=0,
        start_ms=prev.end_ms,
        end_ms=nxt.start_ms,
        start_place_id=prev.place_id,
        end_place_id=nxt.place_id,
        start_visit_id=prev.visit_id,
        end_visit_id=nxt.visit_id,
        estimated_distance_m=estimated,
        travelled_distance_m=travelled,
        transport_mode=mode,
    )


def build_trips(
    visits: Sequence[ProcessedVisit],
    places: Mapping[int, SignificantPlace],
    points_between: Callable[[int, int], Sequence[RawPoint]],
    bands: Sequence[TransportModeBand],
    override_for: Callable[[int, int], TransportModeOverride | None] = lambda s, e: None,
) -> list[Trip]:
    """Trips for every pair of consecutive visits with a gap between them."""

    ordered = sorted(visits, key=lambda v: v.start_ms)
    return [
        build_trip(prev, nxt, places, points_between(prev.end_ms, nxt.start_ms), bands, override_for(prev.end_ms, nxt.start_ms))
        for prev, nxt in pairwise(ordered)
        if nxt.start_ms > prev.end_ms
    ]


def _same_metrics(a: Trip, b: Trip) -> bool:
    return (
        a.start_place_id == b.start_place_id
        and a.end_place_id == b.end_place_id
        and a.transport_mode == b.transport_mode
        and math.isclose(a.estimated_distance_m, b.estimated_distance_m, abs_tol=1e-6)
        and math.isclose(a.travelled_distance_m, b.travelled_distance_m, abs_tol=1e-6)
    )


def reconcile_trips(store: TimelineStore, user: str, drafts: Sequence[Trip], start_ms: int, end_ms: int) -> Counter[str]:
    """Replace the trips touching ``[start_ms, end_ms]`` with ``drafts``.

    Identical trips are kept untouched; a trip with the same range and visits but new
    metrics is updated in place.
    """

    stats: Counter[str] = Counter()
    existing = {
        (t.start_ms, t.end_ms, t.start_visit_id, t.end_visit_id): t
        for t in store.find_trips_overlapping(user, start_ms, end_ms)
    }
    for draft in drafts:
        key = (draft.start_ms, draft.end_ms, draft.start_visit_id, draft.end_visit_id)
        current = existing.pop(key, None)
        if current is None:
            store.insert_trip(user, draft)
            stats["inserted"] += 1
        elif _same_metrics(current, draft):
            stats["unchanged"] += 1
        else:
            store.update_trip(user, replace(draft, trip_id=current.trip_id, version=current.version))
            stats["updated"] += 1
    stats["deleted"] = store.delete_trips(user, [t.trip_id for t in existing.values()])
    return stats


def find_redundant_trips(trips: Sequence[Trip]) -> list[Trip]:
    """Duplicates to drop: per (start place, end place), trips contained in a wider one.

    The widest trip of an overlapping group survives (ties: lower id). Partial
    overlaps that are not containment are left alone and logged.
    """

    groups: dict[tuple[int, int], list[Trip]] = defaultdict(list)
    for t in trips:
        groups[(t.start_place_id, t.end_place_id)].append(t)

    redundant: list[Trip] = []
    for group in groups.values():
        kept: list[Trip] = []
        for t in sorted(group, key=lambda x: (-(x.end_ms - x.start_ms), x.trip_id)):
            if any(k.start_ms <= t.start_ms and t.end_ms <= k.end_ms for k in kept):
                redundant.append(t)
                continue
            if any(k.start_ms < t.end_ms and t.start_ms < k.end_ms for k in kept):
                logger.warning("Trip %s partially overlaps another trip between the same places", t.trip_id)
            kept.append(t)
    return redundant
