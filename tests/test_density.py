import pytest

from path_timeline.config import DensityConfig, LocationDensity
from path_timeline.density import DensityNormalizer, SyntheticPointGenerator, select_points_to_ignore

from tracks import at, raw_point

LIMITS = LocationDensity()


def _pair(gap_s=120, end=(50.0001, 8.0001)):
    a = raw_point(1, at(0, 9), 50.0, 8.0, accuracy=10.0, elevation_m=100.0)
    b = raw_point(2, at(0, 9) + gap_s * 1000, end[0], end[1], accuracy=20.0, elevation_m=110.0)
    return a, b


def test_generator_fills_gap_at_fixed_interval():
    a, b = _pair()
    generated = SyntheticPointGenerator().generate(a, b, interval_s=15, max_distance_m=50.0, max_gap_s=86400.0)

    assert len(generated) == 7
    assert [p.timestamp_ms - a.timestamp_ms for p in generated] == [15_000 * k for k in range(1, 8)]
    assert all(p.synthetic and p.processed for p in generated)

    mid = generated[3]
    assert mid.latitude == pytest.approx(50.00005)
    assert mid.longitude == pytest.approx(8.00005)
    assert mid.accuracy_m == pytest.approx(15.0)
    assert mid.elevation_m == pytest.approx(105.0)


def test_generator_respects_limits():
    gen = SyntheticPointGenerator()
    far_a, far_b = _pair(end=(50.001, 8.0))  # ~111 m apart
    assert gen.generate(far_a, far_b, interval_s=15, max_distance_m=50.0, max_gap_s=86400.0) == []
    a, b = _pair(gap_s=3600)
    assert gen.generate(a, b, interval_s=15, max_distance_m=50.0, max_gap_s=1800.0) == []
    assert gen.generate(b, a, interval_s=15, max_distance_m=50.0, max_gap_s=86400.0) == []


def test_ignore_rules():
    t = at(0, 9)
    real = raw_point(1, t, 50.0, 8.0, accuracy=30.0)
    synthetic = raw_point(2, t + 3000, 50.0, 8.0, accuracy=5.0, synthetic=True)
    assert select_points_to_ignore([real, synthetic], tolerance_s=7) == {2}

    worse = raw_point(1, t, 50.0, 8.0, accuracy=30.0)
    better = raw_point(2, t + 3000, 50.0, 8.0, accuracy=5.0)
    assert select_points_to_ignore([worse, better], tolerance_s=7) == {1}

    unknown = raw_point(1, t, 50.0, 8.0, accuracy=None)
    known = raw_point(2, t + 3000, 50.0, 8.0, accuracy=50.0)
    assert select_points_to_ignore([unknown, known], tolerance_s=7) == {1}

    tie_a = raw_point(1, t, 50.0, 8.0, accuracy=10.0)
    tie_b = raw_point(2, t + 3000, 50.0, 8.0, accuracy=10.0)
    assert select_points_to_ignore([tie_a, tie_b], tolerance_s=7) == {1}

    spaced = raw_point(2, t + 7000, 50.0, 8.0)
    assert select_points_to_ignore([tie_a, spaced], tolerance_s=7) == set()


def test_normalize_is_idempotent(store):
    store.insert_points("u", list(_pair()))
    normalizer = DensityNormalizer(DensityConfig(target_points_per_minute=4))

    first = normalizer.normalize(store, "u", at(0, 9), at(0, 10), LIMITS)
    assert (first.synthetic_removed, first.synthetic_created, first.ignored) == (0, 7, 0)
    snapshot = [(p.timestamp_ms, p.latitude, p.longitude, p.synthetic) for p in store.find_points("u", at(0, 9), at(0, 10))]
    assert len(snapshot) == 9

    second = normalizer.normalize(store, "u", at(0, 9), at(0, 10), LIMITS)
    assert (second.synthetic_removed, second.synthetic_created) == (7, 7)
    again = [(p.timestamp_ms, p.latitude, p.longitude, p.synthetic) for p in store.find_points("u", at(0, 9), at(0, 10))]
    assert again == snapshot


def test_normalize_ignores_near_duplicates_and_skips_invalid(store):
    t = at(0, 9)
    store.insert_points(
        "u",
        [
            raw_point(0, t, 50.0, 8.0, accuracy=20.0),
            raw_point(0, t + 2000, 50.0, 8.0, accuracy=5.0),
            raw_point(0, t + 20_000, 50.0, 8.0, accuracy=5.0),
            raw_point(0, t + 21_000, 51.0, 8.0, accuracy=5.0, invalid=True),
        ],
    )
    result = DensityNormalizer().normalize(store, "u", t, t + 60_000, LIMITS)
    assert result.synthetic_created == 0
    assert result.ignored == 1
    by_ts = {p.timestamp_ms - t: p for p in store.find_points("u", t, t + 60_000)}
    assert by_ts[0].ignored
    assert not by_ts[2000].ignored
    assert not by_ts[21_000].ignored
