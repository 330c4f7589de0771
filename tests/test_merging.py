from collections import Counter

from path_timeline.config import VisitMerging
from path_timeline.merging import (
    MergeOutcome,
    apply_visit_changes,
    merge_visits_chronologically,
    places_close,
    plan_visit_changes,
)
from path_timeline.models import ProcessedVisit, SignificantPlace, Visit

from tracks import at, raw_point

PARAMS = VisitMerging()
PLACES = {
    1: SignificantPlace(1, 50.0, 8.0),
    2: SignificantPlace(2, 50.001, 8.0),  # ~111 m from 1
    3: SignificantPlace(3, 50.03, 8.0),
}


def _visit(place_id, start_ms, end_ms):
    p = PLACES[place_id]
    return Visit(place_id, p.latitude, p.longitude, start_ms, end_ms)


def _same_location(a, b):
    return places_close(PLACES, a, b, PARAMS.min_distance_between_visits_m)


def test_places_close():
    assert places_close(PLACES, 1, 1, 10.0)
    assert places_close(PLACES, 1, 2, 200.0)
    assert not places_close(PLACES, 1, 3, 200.0)
    assert not places_close(PLACES, 1, 99, 200.0)


def test_short_gap_at_close_place_merges():
    merged = merge_visits_chronologically([_visit(1, at(0, 9), at(0, 10)), _visit(2, at(0, 10, 4), at(0, 11))], PLACES, PARAMS)
    assert merged == [_visit(1, at(0, 9), at(0, 11))]


def test_distinct_places_stay_apart_and_never_overlap():
    merged = merge_visits_chronologically(
        [_visit(1, at(0, 9), at(0, 10, 5)), _visit(3, at(0, 10), at(0, 11))], PLACES, PARAMS
    )
    assert [(v.place_id, v.start_ms, v.end_ms) for v in merged] == [
        (1, at(0, 9), at(0, 10, 5)),
        (3, at(0, 10, 5), at(0, 11)),
    ]


def test_long_gap_at_same_place_merges_only_without_movement():
    first, second = _visit(1, at(0, 9), at(0, 10)), _visit(1, at(0, 11), at(0, 12))

    quiet = [raw_point(1, at(0, 10, 30), 50.0, 8.0)]
    assert len(merge_visits_chronologically([first, second], PLACES, PARAMS, quiet)) == 1

    trip = [raw_point(i, at(0, 10, 10 + i), 50.0 + 0.003 * i, 8.0) for i in range(1, 6)]
    trip.sort(key=lambda p: p.timestamp_ms)
    assert len(merge_visits_chronologically([first, second], PLACES, PARAMS, trip)) == 2


def test_plan_outcomes():
    existing = ProcessedVisit(10, 1, at(0, 9), at(0, 10))

    def outcome(candidate):
        (change,) = [c for c in plan_visit_changes([existing], [candidate], _same_location) if c.visit is existing]
        return change.outcome

    assert outcome(_visit(1, at(0, 9), at(0, 10))) is MergeOutcome.UNCHANGED
    assert outcome(_visit(1, at(0, 8), at(0, 10))) is MergeOutcome.EXTEND_EARLIER
    assert outcome(_visit(1, at(0, 9), at(0, 11))) is MergeOutcome.EXTEND_LATER
    assert outcome(_visit(1, at(0, 8), at(0, 11))) is MergeOutcome.EXTEND_BOTH
    assert outcome(_visit(1, at(0, 9, 10), at(0, 9, 50))) is MergeOutcome.RESHAPE
    assert outcome(_visit(2, at(0, 9), at(0, 10))) is MergeOutcome.RESHAPE


def test_plan_inserts_and_deletes():
    existing = ProcessedVisit(10, 1, at(0, 9), at(0, 10))
    changes = plan_visit_changes([existing], [_visit(3, at(0, 9), at(0, 10))], _same_location)
    assert [c.outcome for c in changes] == [MergeOutcome.INSERT, MergeOutcome.DELETE]


def test_apply_preserves_ids_and_splits(store):
    long_visit = store.insert_visit("u", 1, at(0, 9), at(0, 12))
    gone = store.insert_visit("u", 3, at(0, 13), at(0, 14))
    candidates = [_visit(1, at(0, 9), at(0, 10)), _visit(1, at(0, 11), at(0, 12))]

    changes = plan_visit_changes(store.visits("u"), candidates, _same_location)
    outcomes = apply_visit_changes(store, "u", changes)

    assert outcomes == Counter(
        {MergeOutcome.RESHAPE: 1, MergeOutcome.SPLIT_AND_INSERT: 1, MergeOutcome.DELETE: 1}
    )
    visits = store.visits("u")
    assert [(v.start_ms, v.end_ms) for v in visits] == [(at(0, 9), at(0, 10)), (at(0, 11), at(0, 12))]
    assert visits[0].visit_id == long_visit.visit_id
    assert visits[0].version == 2
    assert store.get_visit("u", gone.visit_id) is None


def test_unchanged_visit_keeps_version(store):
    v = store.insert_visit("u", 1, at(0, 9), at(0, 10))
    apply_visit_changes(store, "u", plan_visit_changes([v], [_visit(1, at(0, 9), at(0, 10))], _same_location))
    assert store.get_visit("u", v.visit_id).version == 1
