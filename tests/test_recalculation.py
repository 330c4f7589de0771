import threading

import pytest

from path_timeline.config import DetectionParameters
from path_timeline.errors import RecalculationWindowError
from path_timeline.recalculation import (
    RecalculationReport,
    RecalculationScheduler,
    TimeWindow,
    affected_windows,
    day_window,
    expand_to_visits,
    explicit_window,
    merge_windows,
)
from path_timeline.timeutils import HOUR_MS

from tracks import at, raw_point

PARAMS = DetectionParameters()


def test_merge_windows_joins_overlapping_ranges():
    merged = merge_windows([TimeWindow(5, 8), TimeWindow(0, 3), TimeWindow(3, 4), TimeWindow(10, 12)])
    assert merged == [TimeWindow(0, 4), TimeWindow(5, 8), TimeWindow(10, 12)]


def test_day_window_adds_lookaround_in_local_time():
    w = day_window(at(0, 12), at(0, 13), PARAMS, "UTC")
    assert w == TimeWindow(at(0) - 48 * HOUR_MS, at(1) - 1 + 48 * HOUR_MS)

    berlin = day_window(at(0, 12), at(0, 12), PARAMS, "Europe/Berlin")
    assert berlin.start_ms == at(0) - HOUR_MS - 48 * HOUR_MS


def test_expand_to_visits(store):
    store.insert_visit("u", 1, at(0, 1), at(0, 5))
    assert expand_to_visits(store, "u", TimeWindow(at(0, 3), at(0, 4))) == TimeWindow(at(0, 1), at(0, 5))
    # inclusive bounds: a visit ending exactly at the window start counts
    assert expand_to_visits(store, "u", TimeWindow(at(0, 5), at(0, 6))) == TimeWindow(at(0, 1), at(0, 6))


def test_affected_windows(store):
    with pytest.raises(RecalculationWindowError):
        affected_windows(store, "u", [], PARAMS, "UTC")

    points = [raw_point(1, at(0, 9), 50.0, 8.0), raw_point(2, at(1, 9), 50.0, 8.0), raw_point(3, at(20, 9), 50.0, 8.0)]
    windows = affected_windows(store, "u", points, PARAMS, "UTC")
    assert windows == [
        TimeWindow(at(-2), at(4) - 1),
        TimeWindow(at(18), at(23) - 1),
    ]


def test_explicit_window_without_data(store):
    with pytest.raises(RecalculationWindowError):
        explicit_window(store, "u", TimeWindow(at(0), at(1)))


class _SlowPipeline:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = []

    def trigger_recalculation(self, user, window=None):
        self.calls.append((user, window))
        self.started.set()
        self.release.wait(5)
        return RecalculationReport(user)


def test_scheduler_coalesces_triggers_per_user():
    pipe = _SlowPipeline()
    with RecalculationScheduler(pipe, max_workers=2) as scheduler:
        first = scheduler.submit("u")
        assert pipe.started.wait(5)
        second = scheduler.submit("u")
        third = scheduler.submit("u", TimeWindow(0, 10))
        assert second is third
        pipe.release.set()
        assert first.result(5).ok
        assert second.result(5).user == "u"

    assert pipe.calls == [("u", None), ("u", TimeWindow(0, 10)), ("u", None)]
