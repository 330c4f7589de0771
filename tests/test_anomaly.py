from dataclasses import replace

from path_timeline.anomaly import AnomalyFilter, find_anomalies
from path_timeline.config import AnomalyFilterConfig

from tracks import at, raw_point

CFG = AnomalyFilterConfig()


def _track(n=14, spike_at=(), spike=(51.69, 5.29), every_min=1):
    if isinstance(spike_at, int):
        spike_at = (spike_at,)
    points = []
    for i in range(n):
        lat, lon = (spike if i in spike_at else (50.0 + i * 0.0001, 8.0))
        points.append(raw_point(i + 1, at(0, 10, i * every_min), lat, lon))
    return points


def test_single_spike_is_the_only_invalid_point():
    points = _track(spike_at=7)
    assert find_anomalies(points, CFG) == {8}


def test_clean_track_has_no_anomalies():
    assert find_anomalies(_track(), CFG) == set()


def test_consecutive_outliers_are_all_flagged():
    assert find_anomalies(_track(spike_at=(7, 8)), CFG) == {8, 9}
    assert find_anomalies(_track(spike_at=(4, 5, 6)), CFG) == {5, 6, 7}


def test_persistent_shift_is_kept():
    # no later point agrees with the old position, so the track is trusted from there on
    points = _track(spike_at=range(7, 14))
    assert find_anomalies(points, CFG) == set()


def test_long_jump_within_a_minute_is_flagged():
    # ~7.7 km in 60 s stays below the speed ceiling
    assert find_anomalies(_track(spike_at=7, spike=(50.07, 8.0)), CFG) == {8}
    assert find_anomalies(_track(spike_at=7, spike=(50.07, 8.0), every_min=5), CFG) == set()


def test_inaccurate_points_are_flagged_on_their_own():
    points = _track()
    points[3] = replace(points[3], accuracy_m=250.0)
    assert find_anomalies(points, CFG) == {4}
    assert find_anomalies(points[3:5], CFG) == {4}
    assert find_anomalies(points, replace(CFG, max_accuracy_m=500.0)) == set()


def test_result_does_not_depend_on_input_order():
    points = _track(spike_at=7)
    assert find_anomalies(list(reversed(points)), CFG) == {8}


def test_edge_spikes_are_detected():
    assert find_anomalies(_track(spike_at=0), CFG) == {1}
    assert find_anomalies(_track(spike_at=13), CFG) == {14}


def test_fewer_than_three_points_are_never_judged():
    points = _track(n=2, spike_at=1)
    assert find_anomalies(points, CFG) == set()


def test_short_hops_are_plausible_even_without_elapsed_time():
    a = raw_point(1, at(0, 10), 50.0, 8.0)
    b = raw_point(2, at(0, 10), 50.0005, 8.0)  # ~56 m, same instant
    c = raw_point(3, at(0, 10, 1), 50.0, 8.0)
    assert find_anomalies([a, b, c], CFG) == set()


def test_filter_flags_points_in_store_and_is_idempotent(store):
    store.insert_points("u", _track(spike_at=7))
    f = AnomalyFilter(CFG)

    assert f.apply(store, "u", at(0, 10), at(0, 11)) == 1
    flagged = [p for p in store.find_points("u", at(0, 10), at(0, 11)) if p.invalid]
    assert [p.latitude for p in flagged] == [51.69]
    versions = {p.point_id: p.version for p in store.find_points("u", at(0, 10), at(0, 11))}

    assert f.apply(store, "u", at(0, 10), at(0, 11)) == 1
    assert {p.point_id: p.version for p in store.find_points("u", at(0, 10), at(0, 11))} == versions
    assert not any(p.invalid for p in store.find_points("u", at(0, 10), at(0, 11)) if p.latitude < 51.0)


def test_filter_leaves_points_outside_window_alone(store):
    store.insert_points("u", _track(spike_at=7))
    assert AnomalyFilter(CFG).apply(store, "u", at(0, 10, 9), at(0, 11)) == 0
    assert not any(p.invalid for p in store.find_points("u", at(0, 10), at(0, 11)))
