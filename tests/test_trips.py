import pytest

from path_timeline.config import DEFAULT_TRANSPORT_BANDS
from path_timeline.models import ProcessedVisit, SignificantPlace, TransportMode, TransportModeOverride, Trip
from path_timeline.trips import build_trips, classify_speed, find_redundant_trips, infer_transport_mode, reconcile_trips

from tracks import HOME, OFFICE, at, raw_point

BANDS = DEFAULT_TRANSPORT_BANDS
PLACES = {1: SignificantPlace(1, *HOME), 2: SignificantPlace(2, *OFFICE)}


def _line(start_ms, seconds, kmh, every_s=30, first_id=1, lat0=50.0):
    step_deg = kmh / 3.6 * every_s / 111_195.0
    return [
        raw_point(first_id + i, start_ms + i * every_s * 1000, lat0 + i * step_deg, 8.0)
        for i in range(seconds // every_s + 1)
    ]


def test_classify_speed_bands():
    assert classify_speed(5.0, BANDS) is TransportMode.WALKING
    assert classify_speed(7.0, BANDS) is TransportMode.WALKING
    assert classify_speed(15.0, BANDS) is TransportMode.CYCLING
    assert classify_speed(80.0, BANDS) is TransportMode.DRIVING
    assert classify_speed(300.0, BANDS) is TransportMode.TRANSIT


def test_mode_with_most_minutes_wins():
    walk = _line(at(0, 8), 600, 5.0)
    drive = _line(at(0, 8, 10), 1200, 60.0, first_id=100, lat0=walk[-1].latitude)
    assert infer_transport_mode(walk, BANDS) is TransportMode.WALKING
    assert infer_transport_mode(walk + drive[1:], BANDS) is TransportMode.DRIVING
    assert infer_transport_mode(walk[:1], BANDS) is TransportMode.UNKNOWN


def test_trips_fill_gaps_between_consecutive_visits():
    visits = [
        ProcessedVisit(1, 1, at(0, 0), at(0, 8)),
        ProcessedVisit(2, 2, at(0, 8, 30), at(0, 17)),
        ProcessedVisit(3, 1, at(0, 17), at(0, 23)),  # no gap, no trip
    ]
    points = _line(at(0, 8), 1800, 6.0)
    trips = build_trips(visits, PLACES, lambda s, e: [p for p in points if s <= p.timestamp_ms <= e], BANDS)

    assert len(trips) == 1
    trip = trips[0]
    assert (trip.start_ms, trip.end_ms) == (visits[0].end_ms, visits[1].start_ms)
    assert (trip.start_visit_id, trip.end_visit_id) == (1, 2)
    assert trip.estimated_distance_m == pytest.approx(3336, rel=0.01)
    assert trip.travelled_distance_m == pytest.approx(3000, rel=0.01)
    assert trip.transport_mode is TransportMode.WALKING


def test_override_and_speed_fallback():
    visits = [ProcessedVisit(1, 1, at(0, 0), at(0, 8)), ProcessedVisit(2, 2, at(0, 8, 15), at(0, 17))]

    # no points: 3.3 km in 15 minutes
    (trip,) = build_trips(visits, PLACES, lambda s, e: [], BANDS)
    assert trip.transport_mode is TransportMode.CYCLING

    override = TransportModeOverride(at(0, 8), at(0, 8, 15), TransportMode.TRANSIT)
    (trip,) = build_trips(visits, PLACES, lambda s, e: [], BANDS, lambda s, e: override)
    assert trip.transport_mode is TransportMode.TRANSIT


def _trip(trip_id, start_ms, end_ms, start_place=1, end_place=2):
    return Trip(trip_id, start_ms, end_ms, start_place, end_place, 1, 2, 100.0, 120.0)


def test_redundant_trips_are_contained_duplicates():
    wide = _trip(1, at(0, 8), at(0, 9))
    inner = _trip(2, at(0, 8, 10), at(0, 8, 50))
    partial = _trip(3, at(0, 8, 30), at(0, 9, 30))
    other_route = _trip(4, at(0, 8, 10), at(0, 8, 50), end_place=3)
    assert find_redundant_trips([wide, inner, partial, other_route]) == [inner]


def test_reconcile_keeps_updates_and_replaces(store):
    draft = _trip(0, at(0, 8), at(0, 9))
    assert reconcile_trips(store, "u", [draft], at(0, 0), at(0, 23))["inserted"] == 1
    (stored,) = store.trips("u")

    assert reconcile_trips(store, "u", [draft], at(0, 0), at(0, 23))["unchanged"] == 1
    assert store.get_trip("u", stored.trip_id).version == 1

    walked = Trip(0, at(0, 8), at(0, 9), 1, 2, 1, 2, 100.0, 150.0, TransportMode.WALKING)
    stats = reconcile_trips(store, "u", [walked], at(0, 0), at(0, 23))
    assert stats["updated"] == 1
    updated = store.get_trip("u", stored.trip_id)
    assert (updated.version, updated.travelled_distance_m, updated.transport_mode) == (2, 150.0, TransportMode.WALKING)

    moved = _trip(0, at(0, 8, 5), at(0, 9))
    stats = reconcile_trips(store, "u", [moved], at(0, 0), at(0, 23))
    assert (stats["inserted"], stats["deleted"]) == (1, 1)
    assert store.get_trip("u", stored.trip_id) is None
