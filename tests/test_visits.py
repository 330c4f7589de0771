import csv

import pytest

from path_timeline.models import ProcessedVisit, SignificantPlace, TransportMode, Trip
from path_timeline.visits import sum_visits, write_timeline_csv

from tracks import at


def test_sum_visits_clips_to_range():
    visits = [ProcessedVisit(1, 1, at(-1, 20), at(0, 8)), ProcessedVisit(2, 2, at(0, 9), at(0, 10))]

    total = sum_visits(visits, at(0), at(1) - 1)
    assert total.visits == 2
    assert total.total_seconds == pytest.approx(9 * 3600)
    assert total.total_hhmmss == "09:00:00"
    assert sum_visits(visits).total_seconds == pytest.approx(13 * 3600)


def test_write_timeline_csv(tmp_path):
    places = {1: SignificantPlace(1, 50.0, 8.0, name="Home")}
    items = [
        ProcessedVisit(1, 1, at(0), at(0, 8)),
        Trip(1, at(0, 8), at(0, 8, 30), 1, 2, 1, 2, 3300.0, 3410.4, TransportMode.WALKING),
        ProcessedVisit(2, 2, at(0, 8, 30), at(0, 17)),
    ]
    out = tmp_path / "timeline.csv"
    write_timeline_csv(items, places, out, "Europe/Berlin")

    with out.open(encoding="utf-8", newline="") as f:
        rows = list(csv.DictReader(f))
    assert [(r["kind"], r["id"]) for r in rows] == [("visit", "1"), ("trip", "1"), ("visit", "2")]
    assert rows[0]["place_name"] == "Home"
    assert rows[0]["start_time"] == "2025-01-01 01:00:00+01:00"
    assert rows[1]["distance_m"] == "3410.4"
    assert rows[2]["place_name"] == ""
    assert rows[2]["duration_hhmmss"] == "08:30:00"
