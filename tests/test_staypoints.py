from path_timeline.config import VisitDetection
from path_timeline.staypoints import detect_stay_points

from tracks import HOME, OFFICE, at, raw_point

PARAMS = VisitDetection()
MAX_GAP_S = 1440 * 60.0


def _cluster(place, start_ms, count, every_s=60, first_id=1):
    return [
        raw_point(first_id + i, start_ms + i * every_s * 1000, place[0] + 0.00001 * (i % 2), place[1])
        for i in range(count)
    ]


def test_dense_cluster_becomes_one_stay_point():
    points = _cluster(HOME, at(0, 9), 10)
    stays = detect_stay_points(points, PARAMS, MAX_GAP_S)
    assert len(stays) == 1
    sp = stays[0]
    assert (sp.start_ms, sp.end_ms) == (at(0, 9), at(0, 9, 9))
    assert len(sp.points) == 10
    assert abs(sp.latitude - HOME[0]) < 0.0001


def test_too_few_points_or_too_short_is_not_a_stay():
    assert detect_stay_points(_cluster(HOME, at(0, 9), 4), PARAMS, MAX_GAP_S) == []
    # 10 points but only 90 s
    assert detect_stay_points(_cluster(HOME, at(0, 9), 10, every_s=10), PARAMS, MAX_GAP_S) == []


def test_leaving_the_radius_closes_the_cluster():
    points = _cluster(HOME, at(0, 9), 10) + _cluster(OFFICE, at(0, 10), 10, first_id=20)
    stays = detect_stay_points(points, PARAMS, MAX_GAP_S)
    assert [round(sp.latitude, 2) for sp in stays] == [50.0, 50.03]


def test_long_sampling_gap_splits_stays():
    points = _cluster(HOME, at(0, 9), 10) + _cluster(HOME, at(0, 15), 10, first_id=20)
    stays = detect_stay_points(points, PARAMS, max_gap_s=3600.0)
    assert len(stays) == 2
    assert all(a.end_ms < b.start_ms for a, b in zip(stays, stays[1:]))


def test_short_excursion_is_coalesced():
    before = _cluster(HOME, at(0, 9), 10)
    excursion = [raw_point(50, at(0, 9, 10), 50.002, 8.0), raw_point(51, at(0, 9, 11), 50.002, 8.0)]
    after = _cluster(HOME, at(0, 9, 12), 10, first_id=60)
    stays = detect_stay_points(before + excursion + after, PARAMS, MAX_GAP_S)
    assert len(stays) == 1
    assert (stays[0].start_ms, stays[0].end_ms) == (at(0, 9), at(0, 9, 21))
    assert len(stays[0].points) == 20


def test_empty_input():
    assert detect_stay_points([], PARAMS, MAX_GAP_S) == []
