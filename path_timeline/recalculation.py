"""Affected-window computation, recalculation reports and per-user scheduling."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

from path_timeline.config import DetectionParameters
from path_timeline.errors import RecalculationWindowError, TimelineError
from path_timeline.models import RawPoint
from path_timeline.store import TimelineStore
from path_timeline.timeutils import HOUR_MS, day_bounds_ms, local_date

if TYPE_CHECKING:
    from path_timeline.pipeline import LocationPipeline

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Inclusive range of epoch milliseconds."""

    start_ms: int
    end_ms: int

    def overlaps(self, other: TimeWindow) -> bool:
        return self.start_ms <= other.end_ms and other.start_ms <= self.end_ms

    def union(self, other: TimeWindow) -> TimeWindow:
        return TimeWindow(min(self.start_ms, other.start_ms), max(self.end_ms, other.end_ms))


def merge_windows(windows: Sequence[TimeWindow]) -> list[TimeWindow]:
    out: list[TimeWindow] = []
    for w in sorted(windows, key=lambda x: x.start_ms):
        if out and out[-1].overlaps(w):
            out[-1] = out[-1].union(w)
        else:
            out.append(w)
    return out


def expand_to_visits(store: TimelineStore, user: str, window: TimeWindow) -> TimeWindow:
    """Grow the window so it fully contains every visit overlapping it."""

    overlapping = store.find_visits_overlapping(user, window.start_ms, window.end_ms)
    if not overlapping:
        return window
    return TimeWindow(
        min(window.start_ms, min(v.start_ms for v in overlapping)),
        max(window.end_ms, max(v.end_ms for v in overlapping)),
    )


def day_window(start_ms: int, end_ms: int, params: DetectionParameters, tz_name: str) -> TimeWindow:
    """[local day of start - lookback, end of local day of end + lookahead]."""

    margin = int(params.visit_merging.search_duration_hours * HOUR_MS)
    day_start, _ = day_bounds_ms(local_date(start_ms, tz_name), tz_name)
    _, day_end = day_bounds_ms(local_date(end_ms, tz_name), tz_name)
    return TimeWindow(day_start - margin, day_end - 1 + margin)


def affected_windows(
    store: TimelineStore,
    user: str,
    points: Sequence[RawPoint],
    params: DetectionParameters,
    tz_name: str,
) -> list[TimeWindow]:
    """Disjoint windows covering ``points`` and every visit they may reshape.

    Raises:
        RecalculationWindowError: If there are no points.
    """

    if not points:
        raise RecalculationWindowError(f"no points to recalculate for user {user}")
    windows = merge_windows([day_window(p.timestamp_ms, p.timestamp_ms, params, tz_name) for p in points])
    return merge_windows([expand_to_visits(store, user, w) for w in windows])


def explicit_window(store: TimelineStore, user: str, window: TimeWindow) -> TimeWindow:
    """Caller-supplied window grown to overlapping visits.

    Raises:
        RecalculationWindowError: If neither points nor visits fall into it.
    """

    expanded = expand_to_visits(store, user, window)
    if not store.find_points(user, expanded.start_ms, expanded.end_ms) and not store.find_visits_overlapping(
        user, expanded.start_ms, expanded.end_ms
    ):
        raise RecalculationWindowError(f"window {window} of user {user} has no data")
    return expanded


@dataclass(frozen=True, slots=True)
class WindowResult:
    """What one window run changed."""

    window: TimeWindow
    invalid_points: int
    synthetic_points: int
    ignored_points: int
    stay_points: int
    visit_outcomes: dict[str, int]
    trip_changes: dict[str, int]
    places_created: int


@dataclass(frozen=True, slots=True)
class WindowFailure:
    """A window whose recalculation was rolled back; safe to re-trigger."""

    window: TimeWindow
    error: TimelineError
    retryable: bool = True


@dataclass(slots=True)
class RecalculationReport:
    user: str
    completed: list[WindowResult] = field(default_factory=list)
    failed: list[WindowFailure] = field(default_factory=list)
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed

    def extend(self, other: RecalculationReport) -> None:
        self.completed.extend(other.completed)
        self.failed.extend(other.failed)
        self.skipped += other.skipped

    def visit_outcomes(self) -> Counter[str]:
        total: Counter[str] = Counter()
        for r in self.completed:
            total.update(r.visit_outcomes)
        return total


class RecalculationScheduler:
    """Runs recalculations off the caller's thread.

    Triggers for one user are serialised: while a run is in flight, further triggers
    for that user are coalesced into a single pending run whose ``Future`` all those
    callers share. Different users run in parallel.
    """

    def __init__(self, pipeline: LocationPipeline, max_workers: int = 4) -> None:
        self._pipeline = pipeline
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="recalc")
        self._lock = threading.Lock()
        self._running: set[str] = set()
        self._pending: dict[str, tuple[list[TimeWindow | None], Future[RecalculationReport]]] = {}

    def submit(self, user: str, window: TimeWindow | None = None) -> Future[RecalculationReport]:
        with self._lock:
            job = self._pending.get(user)
            if job is not None:
                job[0].append(window)
                return job[1]
            fut: Future[RecalculationReport] = Future()
            self._pending[user] = ([window], fut)
            if user not in self._running:
                self._running.add(user)
                self._executor.submit(self._drain, user)
            return fut

    def _drain(self, user: str) -> None:
        while True:
            with self._lock:
                job = self._pending.pop(user, None)
                if job is None:
                    self._running.discard(user)
                    return
            windows, fut = job
            if not fut.set_running_or_notify_cancel():
                continue
            try:
                report = RecalculationReport(user)
                for w in _dedupe(windows):
                    report.extend(self._pipeline.trigger_recalculation(user, w))
            except Exception as exc:
                logger.exception("Recalculation for user %s crashed", user)
                fut.set_exception(exc)
            else:
                fut.set_result(report)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> RecalculationScheduler:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


def _dedupe(windows: Sequence[TimeWindow | None]) -> list[TimeWindow | None]:
    explicit = merge_windows([w for w in windows if w is not None])
    # "all unprocessed points" runs last so it sees the explicit windows' results
    return [*explicit, None] if any(w is None for w in windows) else list(explicit)
