"""Visit merging and reconciliation with the existing visit history.

Two steps:

1. :func:`merge_visits_chronologically` folds the raw visits of a window into candidate
   visits.
2. :func:`plan_visit_changes` matches candidates against the processed visits already
   stored for the window and classifies every change as a :class:`MergeOutcome`.
   Existing visits are extended, reshaped or split rather than deleted and recreated,
   so their ids survive recalculation.
"""

from __future__ import annotations

import bisect
import logging
from collections import Counter
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Mapping, Sequence

from path_timeline.config import VisitMerging
from path_timeline.geo import haversine_m, path_length_m
from path_timeline.models import ProcessedVisit, RawPoint, SignificantPlace, Visit
from path_timeline.store import TimelineStore

logger = logging.getLogger(__name__)


def _points_between(points: Sequence[RawPoint], lo_ms: int, hi_ms: int) -> Sequence[RawPoint]:
    """Points with ``lo_ms < timestamp < hi_ms``; ``points`` must be time ordered."""

    keys = [p.timestamp_ms for p in points]
    return points[bisect.bisect_right(keys, lo_ms) : bisect.bisect_left(keys, hi_ms)]


def places_close(
    places: Mapping[int, SignificantPlace],
    a: int,
    b: int,
    max_distance_m: float,
) -> bool:
    """Same place, or two places whose centroids are within ``max_distance_m``."""

    if a == b:
        return True
    pa, pb = places.get(a), places.get(b)
    if pa is None or pb is None:
        return False
    return haversine_m(pa.latitude, pa.longitude, pb.latitude, pb.longitude) <= max_distance_m


def merge_visits_chronologically(
    visits: Sequence[Visit],
    places: Mapping[int, SignificantPlace],
    params: VisitMerging,
    points: Sequence[RawPoint] = (),
) -> list[Visit]:
    """Merge consecutive raw visits into candidate visits.

    Two neighbours merge when they are at the same or a close place (centroids within
    ``min_distance_between_visits_m``) and the gap is at most
    ``max_merge_time_between_same_visits_s``. Neighbours at the same place with a
    longer gap still merge when nothing moved in between: fewer than three points
    were recorded, or their path is no longer than ``min_distance_between_visits_m``.

    Args:
        visits: Raw visits of the window.
        places: Places referenced by the visits.
        params: Merge parameters.
        points: Usable points of the window, time ordered.

    Returns:
        Candidates ordered by start, without overlaps and with positive duration.
    """

    ordered = sorted(visits, key=lambda v: v.start_ms)
    if not ordered:
        return []

    max_gap_ms = params.max_merge_time_between_same_visits_s * 1000.0
    out: list[Visit] = []
    current = ordered[0]
    for nxt in ordered[1:]:
        gap_ms = nxt.start_ms - current.end_ms
        merge = gap_ms <= max_gap_ms and places_close(
            places, current.place_id, nxt.place_id, params.min_distance_between_visits_m
        )
        if not merge and nxt.place_id == current.place_id:
            between = _points_between(points, current.end_ms, nxt.start_ms)
            if len(between) < 3:
                merge = True
            else:
                travelled = path_length_m((p.latitude, p.longitude) for p in between)
                merge = travelled <= params.min_distance_between_visits_m

        if merge:
            current = replace(current, end_ms=max(current.end_ms, nxt.end_ms))
            continue
        out.append(current)
        # never start before the previous candidate ended
        current = replace(nxt, start_ms=max(nxt.start_ms, current.end_ms))
    out.append(current)

    return [v for v in out if v.end_ms > v.start_ms]


class MergeOutcome(str, Enum):
    """How a candidate visit changes the stored history."""

    INSERT = "insert"
    UNCHANGED = "unchanged"
    EXTEND_EARLIER = "extend_earlier"
    EXTEND_LATER = "extend_later"
    EXTEND_BOTH = "extend_both"
    RESHAPE = "reshape"
    SPLIT_AND_INSERT = "split_and_insert"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class VisitChange:
    """One planned change.

    ``visit`` is the existing visit the change applies to; for ``SPLIT_AND_INSERT`` it
    is the visit being split, for ``INSERT`` it is None.
    """

    outcome: MergeOutcome
    place_id: int
    start_ms: int
    end_ms: int
    visit: ProcessedVisit | None = None


def classify_change(existing: ProcessedVisit, candidate: Visit) -> MergeOutcome:
    """Outcome of applying ``candidate`` to the visit it claimed."""

    if (candidate.start_ms, candidate.end_ms, candidate.place_id) == (
        existing.start_ms,
        existing.end_ms,
        existing.place_id,
    ):
        return MergeOutcome.UNCHANGED
    earlier = candidate.start_ms < existing.start_ms
    later = candidate.end_ms > existing.end_ms
    covers = candidate.start_ms <= existing.start_ms and candidate.end_ms >= existing.end_ms
    if not covers or candidate.place_id != existing.place_id:
        return MergeOutcome.RESHAPE
    if earlier and later:
        return MergeOutcome.EXTEND_BOTH
    if earlier:
        return MergeOutcome.EXTEND_EARLIER
    if later:
        return MergeOutcome.EXTEND_LATER
    return MergeOutcome.RESHAPE


def _overlap_ms(v: ProcessedVisit, c: Visit) -> int:
    return min(v.end_ms, c.end_ms) - max(v.start_ms, c.start_ms)


def plan_visit_changes(
    existing: Sequence[ProcessedVisit],
    candidates: Sequence[Visit],
    same_location: Callable[[int, int], bool],
) -> list[VisitChange]:
    """Match candidates with existing visits of the same window.

    Each candidate claims the unclaimed existing visit it overlaps at the same
    location, preferring the same place and then the largest overlap. A candidate
    whose only overlapping visit is already claimed splits it (``SPLIT_AND_INSERT``).
    Existing visits left unclaimed are deleted.

    Args:
        existing: Processed visits overlapping the window.
        candidates: Output of :func:`merge_visits_chronologically`.
        same_location: ``(existing_place_id, candidate_place_id) -> bool``.

    Returns:
        Changes in candidate order, followed by deletions.
    """

    claimed: set[int] = set()
    changes: list[VisitChange] = []
    for c in sorted(candidates, key=lambda v: v.start_ms):
        overlapping = [
            v
            for v in existing
            if v.start_ms < c.end_ms and c.start_ms < v.end_ms and same_location(v.place_id, c.place_id)
        ]
        if not overlapping:
            changes.append(VisitChange(MergeOutcome.INSERT, c.place_id, c.start_ms, c.end_ms))
            continue

        free = [v for v in overlapping if v.visit_id not in claimed]
        if free:
            target = max(free, key=lambda v: (v.place_id == c.place_id, _overlap_ms(v, c), -v.visit_id))
            claimed.add(target.visit_id)
            changes.append(VisitChange(classify_change(target, c), c.place_id, c.start_ms, c.end_ms, target))
        else:
            source = max(overlapping, key=lambda v: (_overlap_ms(v, c), -v.visit_id))
            changes.append(VisitChange(MergeOutcome.SPLIT_AND_INSERT, c.place_id, c.start_ms, c.end_ms, source))

    for v in existing:
        if v.visit_id not in claimed:
            changes.append(VisitChange(MergeOutcome.DELETE, v.place_id, v.start_ms, v.end_ms, v))
    return changes


def apply_visit_changes(store: TimelineStore, user: str, changes: Sequence[VisitChange]) -> Counter[MergeOutcome]:
    """Write planned changes: deletions first, then updates, then insertions."""

    outcomes: Counter[MergeOutcome] = Counter(c.outcome for c in changes)
    store.delete_visits(user, [c.visit.visit_id for c in changes if c.outcome is MergeOutcome.DELETE and c.visit])
    for c in changes:
        if c.visit is None or c.outcome in (MergeOutcome.DELETE, MergeOutcome.UNCHANGED, MergeOutcome.SPLIT_AND_INSERT):
            continue
        store.update_visit(user, replace(c.visit, place_id=c.place_id, start_ms=c.start_ms, end_ms=c.end_ms))
    for c in changes:
        if c.outcome in (MergeOutcome.INSERT, MergeOutcome.SPLIT_AND_INSERT):
            store.insert_visit(user, c.place_id, c.start_ms, c.end_ms)

    changed = {k.value: n for k, n in outcomes.items() if k is not MergeOutcome.UNCHANGED}
    if changed:
        logger.info("Visit changes for user %s: %s", user, changed)
    return outcomes
