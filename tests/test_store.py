from dataclasses import replace

import pytest

from path_timeline.errors import ConflictError, StorageError
from path_timeline.models import SignificantPlace, TransportMode, TransportModeOverride, Trip
from path_timeline.store import TimelineStore

from tracks import HOME, OFFICE, at, raw_point


def _place(store, lat_lon, **kwargs):
    return store.create_place("u", SignificantPlace(place_id=0, latitude=lat_lon[0], longitude=lat_lon[1], **kwargs))


def test_insert_points_assigns_ids_and_skips_duplicate_timestamps(store):
    first = store.insert_points("u", [raw_point(0, at(0, 1), *HOME), raw_point(0, at(0, 2), *HOME)])
    again = store.insert_points("u", [raw_point(0, at(0, 1), *OFFICE), raw_point(0, at(0, 3), *HOME)])
    assert [p.point_id for p in first] == [1, 2]
    assert [p.timestamp_ms for p in again] == [at(0, 3)]
    assert store.count_points("u") == 3
    assert store.count_points("other") == 0


def test_real_point_replaces_synthetic_at_same_timestamp(store):
    (synthetic,) = store.insert_points("u", [raw_point(0, at(0, 1), *HOME, synthetic=True)])
    assert store.insert_points("u", [raw_point(0, at(0, 1), *OFFICE, synthetic=True)]) == []

    (real,) = store.insert_points("u", [raw_point(0, at(0, 1), *OFFICE, processed=False)])
    (stored,) = store.find_points("u", at(0, 1), at(0, 1))
    assert stored == real
    assert not stored.synthetic and stored.point_id != synthetic.point_id
    assert store.insert_points("u", [raw_point(0, at(0, 1), *HOME, synthetic=True)]) == []


def test_find_points_bounds_are_inclusive(store):
    store.insert_points("u", [raw_point(0, at(0, h), *HOME) for h in range(5)])
    assert [p.timestamp_ms for p in store.find_points("u", at(0, 1), at(0, 3))] == [at(0, 1), at(0, 2), at(0, 3)]


def test_stale_update_raises_conflict(store):
    place = _place(store, HOME)
    updated = store.update_place("u", replace(place, name="Home"))
    assert updated.version == 2

    with pytest.raises(ConflictError) as info:
        store.update_place("u", replace(place, name="Stale"))
    assert info.value.retryable
    assert info.value.expected == 1
    assert info.value.actual == 2
    assert store.get_place("u", place.place_id).name == "Home"


def test_bulk_point_update_is_all_or_nothing(store):
    a, b = store.insert_points("u", [raw_point(0, at(0, 1), *HOME), raw_point(0, at(0, 2), *HOME)])
    store.update_points("u", [replace(b, invalid=True)])
    with pytest.raises(ConflictError):
        store.update_points("u", [replace(a, ignored=True), replace(b, ignored=True)])
    assert not store.find_points("u", at(0, 0), at(0, 3))[0].ignored


def test_atomic_rolls_back_on_error(store):
    visit = store.insert_visit("u", 1, at(0, 1), at(0, 2))
    with pytest.raises(RuntimeError):
        with store.atomic("u"):
            store.update_visit("u", replace(visit, end_ms=at(0, 3)))
            store.insert_visit("u", 1, at(0, 4), at(0, 5))
            store.insert_points("u", [raw_point(0, at(0, 4), *HOME)])
            raise RuntimeError("boom")
    assert store.visits("u") == [visit]
    assert store.count_points("u") == 0


def test_visit_neighbours_are_strict(store):
    a = store.insert_visit("u", 1, at(0, 0), at(0, 1))
    b = store.insert_visit("u", 2, at(0, 2), at(0, 3))
    assert store.last_visit_before("u", at(0, 2)) == a
    assert store.last_visit_before("u", at(0, 1)) is None
    assert store.first_visit_after("u", at(0, 1)) == b
    assert store.first_visit_after("u", at(0, 2)) is None


def test_find_nearby_places_uses_polygon_or_radius(store):
    near = _place(store, (50.0005, 8.0))
    _place(store, OFFICE)
    fenced = _place(
        store,
        (50.01, 8.01),
        polygon=((49.99, 7.99), (49.99, 8.01), (50.01, 8.01), (50.01, 7.99)),
    )
    found = {p.place_id for p in store.find_nearby_places("u", *HOME, 100.0)}
    assert found == {near.place_id, fenced.place_id}


def test_affected_days_spans_multi_day_visits(store):
    store.insert_visit("u", 1, at(0, 20), at(2, 3))
    store.insert_visit("u", 2, at(5, 1), at(5, 2))
    days = store.affected_days("u", [1], "UTC")
    assert [d.isoformat() for d in days] == ["2025-01-01", "2025-01-02", "2025-01-03"]


def test_snapshot_round_trip(store, tmp_path):
    store.insert_points("u", [raw_point(0, at(0, 1), *HOME, accuracy=None)])
    place = _place(store, HOME, polygon=((50.0, 8.0), (50.0, 8.001), (50.001, 8.0)))
    visit = store.insert_visit("u", place.place_id, at(0, 1), at(0, 2))
    store.insert_trip(
        "u",
        Trip(0, at(0, 2), at(0, 3), place.place_id, place.place_id, visit.visit_id, visit.visit_id, 0.0, 12.5,
             TransportMode.WALKING),
    )
    store.add_override("u", TransportModeOverride(at(0, 2), at(0, 3), TransportMode.CYCLING))

    path = tmp_path / "timeline.json"
    store.save(path)
    loaded = TimelineStore.load(path)

    assert loaded.to_dict() == store.to_dict()
    assert loaded.get_place("u", place.place_id).polygon == place.polygon
    assert loaded.find_override("u", at(0, 2), at(0, 3)).mode is TransportMode.CYCLING
    # ids keep counting after a reload
    assert loaded.insert_visit("u", place.place_id, at(0, 5), at(0, 6)).visit_id == visit.visit_id + 1


def test_load_missing_and_corrupted_snapshots(tmp_path):
    assert TimelineStore.load(tmp_path / "missing.json").users() == []
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        TimelineStore.load(broken)
