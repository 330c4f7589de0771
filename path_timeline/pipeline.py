"""Per-user location processing pipeline.

Stages, run over one time window at a time::

    anomaly filter -> density normalizer -> stay points -> visits -> visit merge -> trips

:class:`LocationPipeline` is the entry point for importers and UI layers: ingestion,
recalculation, timeline queries, parameter management, preview and place geometry
edits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Iterable, Sequence

from path_timeline.anomaly import AnomalyFilter
from path_timeline.config import DetectionParameters, ParameterHistory, ParameterLookup, PipelineSettings
from path_timeline.density import DensityNormalizer
from path_timeline.errors import DataError, RecalculationWindowError, TimelineError
from path_timeline.geo import polygon_area_m2, polygon_centroid, polygon_contains
from path_timeline.geocode import GeocodeQueue, PlaceCreated
from path_timeline.ingest import IngestResult, ingest_points
from path_timeline.merging import apply_visit_changes, merge_visits_chronologically, places_close, plan_visit_changes
from path_timeline.models import PointInput, SignificantPlace, TimelineItem, TransportMode, TransportModeOverride, Trip
from path_timeline.places import PlaceResolver
from path_timeline.recalculation import (
    RecalculationReport,
    TimeWindow,
    WindowFailure,
    WindowResult,
    affected_windows,
    explicit_window,
)
from path_timeline.staypoints import detect_stay_points
from path_timeline.store import TimelineStore
from path_timeline.timeutils import day_bounds_ms, day_start_ms
from path_timeline.trips import build_trips, find_redundant_trips, reconcile_trips
from path_timeline.visits import detect_visits

logger = logging.getLogger(__name__)

# polygon edits below these thresholds do not invalidate visits
CENTROID_CHANGE_DEG: float = 0.0001
AREA_CHANGE_M2: float = 1.0


@dataclass(frozen=True, slots=True)
class _DetectionResult:
    stay_points: int
    visit_outcomes: dict[str, int]
    trip_changes: dict[str, int]
    created: tuple[SignificantPlace, ...]


class LocationPipeline:
    """Turns a user's raw points into visits and trips."""

    def __init__(
        self,
        store: TimelineStore,
        settings: PipelineSettings | None = None,
        lookup: ParameterLookup | None = None,
        events: GeocodeQueue | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or PipelineSettings()
        self.lookup = lookup or ParameterLookup(
            store, self.settings.default_parameters, ttl_seconds=self.settings.parameter_cache_ttl_s
        )
        self.events = events if events is not None else GeocodeQueue()
        self._anomaly = AnomalyFilter(self.settings.anomaly)
        self._density = DensityNormalizer(self.settings.density)

    # -- ingestion and queries ------------------------------------------------------

    def put(self, user: str, points: Iterable[PointInput]) -> IngestResult:
        """Store new raw points as unprocessed; run :meth:`trigger_recalculation` next."""

        return ingest_points(self.store, user, points)

    def get_timeline(self, user: str, start_ms: int, end_ms: int) -> list[TimelineItem]:
        """Visits and trips overlapping ``[start_ms, end_ms]`` ordered by start."""

        items: list[TimelineItem] = [
            *self.store.find_visits_overlapping(user, start_ms, end_ms),
            *self.store.find_trips_overlapping(user, start_ms, end_ms),
        ]
        items.sort(key=lambda i: (i.start_ms, isinstance(i, Trip)))
        return items

    def get_detection_parameters(self, user: str) -> ParameterHistory:
        return self.lookup.history(user)

    def save_detection_parameters(self, user: str, params: DetectionParameters) -> None:
        """Store a new history entry. Visits change only after a recalculation."""

        self.lookup.save(user, params)

    # -- recalculation --------------------------------------------------------------

    def trigger_recalculation(self, user: str, window: TimeWindow | None = None) -> RecalculationReport:
        """Recalculate the windows affected by unprocessed points, or one given window.

        Each window commits atomically. A failing window is rolled back and reported
        in ``failed``; the other windows still run.
        """

        report = RecalculationReport(user)
        params = self.lookup.current(user)
        try:
            if window is None:
                windows = affected_windows(
                    self.store, user, self.store.find_unprocessed_points(user), params, self.settings.tz_name
                )
            else:
                windows = [explicit_window(self.store, user, window)]
        except RecalculationWindowError as exc:
            logger.info("Nothing to recalculate: %s", exc)
            report.skipped += 1
            return report

        for w in windows:
            try:
                report.completed.append(self.run_window(user, w, params))
            except TimelineError as exc:
                logger.warning("Recalculation of %s for user %s failed: %s", w, user, exc)
                report.failed.append(WindowFailure(window=w, error=exc))
        return report

    def run_window(self, user: str, window: TimeWindow, params: DetectionParameters) -> WindowResult:
        """Run all stages over one window inside a single transaction."""

        ws, we = window.start_ms, window.end_ms
        with self.store.atomic(user):
            fresh = [replace(p, processed=True) for p in self.store.find_points(user, ws, we) if not p.processed]
            self.store.update_points(user, fresh)
            invalid = self._anomaly.apply(self.store, user, ws, we)
            density = self._density.normalize(self.store, user, ws, we, params.location_density)
            detected = self._detect(self.store, user, window, params)

        for place in detected.created:
            self.events.publish(PlaceCreated(user, place.place_id, place.latitude, place.longitude))
        logger.info(
            "Recalculated user %s window %s..%s: %s stay points, visits %s, trips %s",
            user,
            ws,
            we,
            detected.stay_points,
            detected.visit_outcomes,
            detected.trip_changes,
        )
        return WindowResult(
            window=window,
            invalid_points=invalid,
            synthetic_points=density.synthetic_created,
            ignored_points=density.ignored,
            stay_points=detected.stay_points,
            visit_outcomes=detected.visit_outcomes,
            trip_changes=detected.trip_changes,
            places_created=len(detected.created),
        )

    def _detect(
        self,
        store: TimelineStore,
        user: str,
        window: TimeWindow,
        params: DetectionParameters,
    ) -> _DetectionResult:
        """Stay points, visits, visit merge and trips for one window of ``store``."""

        ws, we = window.start_ms, window.end_ms
        vm = params.visit_merging
        points = store.find_points(user, ws, we, usable_only=True)
        stays = detect_stay_points(
            points, params.visit_detection, params.location_density.max_interpolation_gap_minutes * 60.0
        )

        resolver = PlaceResolver(store)
        raw_visits = detect_visits(user, stays, resolver, vm.place_search_radius_m)
        places = {p.place_id: p for p in store.places(user)}
        candidates = merge_visits_chronologically(raw_visits, places, vm, points)

        def same_location(a: int, b: int) -> bool:
            return places_close(places, a, b, vm.min_distance_between_visits_m)

        changes = plan_visit_changes(store.find_visits_overlapping(user, ws, we), candidates, same_location)
        outcomes = apply_visit_changes(store, user, changes)

        sequence = store.find_visits_overlapping(user, ws, we)
        before = store.last_visit_before(user, ws)
        after = store.first_visit_after(user, we)
        sequence = [v for v in (before, *sequence, after) if v is not None]
        drafts = build_trips(
            sequence,
            places,
            lambda s, e: store.find_points(user, s, e, usable_only=True),
            self.settings.transport_bands,
            lambda s, e: store.find_override(user, s, e),
        )
        span_start = sequence[0].end_ms if sequence else ws
        span_end = sequence[-1].start_ms if sequence else we
        trip_stats = reconcile_trips(store, user, drafts, min(ws, span_start), max(we, span_end))

        redundant = find_redundant_trips(store.find_trips_overlapping(user, ws, we))
        if redundant:
            trip_stats["merged"] = store.delete_trips(user, [t.trip_id for t in redundant])

        return _DetectionResult(
            stay_points=len(stays),
            visit_outcomes={k.value: n for k, n in outcomes.items()},
            trip_changes=dict(trip_stats),
            created=tuple(resolver.created),
        )

    # -- preview --------------------------------------------------------------------

    def preview_detection(self, user: str, params: DetectionParameters, day: date) -> list[TimelineItem]:
        """Simulate stay point, visit and trip detection for one day.

        The user's points around ``day`` are copied into a scratch store, so nothing
        in the real store changes.

        Raises:
            ConfigurationError: If ``params`` is invalid.
        """

        params.validate()
        tz = self.settings.tz_name
        start = day_start_ms(day - timedelta(days=1), tz)
        end = day_start_ms(day + timedelta(days=2), tz) - 1
        scratch = TimelineStore()
        scratch.insert_points(user, [replace(p, processed=True) for p in self.store.find_points(user, start, end)])
        self._detect(scratch, user, TimeWindow(start, end), params)

        day_start, day_end = day_bounds_ms(day, tz)
        items: list[TimelineItem] = [
            *scratch.find_visits_overlapping(user, day_start, day_end - 1),
            *scratch.find_trips_overlapping(user, day_start, day_end - 1),
        ]
        items.sort(key=lambda i: (i.start_ms, isinstance(i, Trip)))
        return items

    # -- corrections ----------------------------------------------------------------

    def update_place_geometry(
        self,
        user: str,
        place_id: int,
        polygon: Sequence[Sequence[float]] | None,
    ) -> RecalculationReport:
        """Set or clear a place polygon and rebuild the visits it affects.

        A significant change (polygon added or removed, centroid moved, area changed)
        deletes the trips and visits of the place and of other places now inside the
        polygon, marks the points of the affected days unprocessed and recalculates.

        Raises:
            DataError: Unknown place or malformed polygon.
        """

        place = self.store.get_place(user, place_id)
        if place is None:
            raise DataError(f"unknown place {place_id} for user {user}")
        shape = _validate_polygon(polygon)
        lat, lon = polygon_centroid(shape) if shape else (place.latitude, place.longitude)
        significant = _geometry_changed(place, shape, lat, lon)

        with self.store.atomic(user):
            self.store.update_place(user, replace(place, polygon=shape, latitude=lat, longitude=lon))
            if significant:
                affected = {place_id}
                if shape:
                    affected |= {
                        p.place_id for p in self.store.places(user) if polygon_contains(shape, p.latitude, p.longitude)
                    }
                days = self.store.affected_days(user, affected, self.settings.tz_name)
                for pid in affected:
                    self.store.delete_trips(user, [t.trip_id for t in self.store.trips_for_place(user, pid)])
                    self.store.delete_visits(user, [v.visit_id for v in self.store.visits_for_place(user, pid)])
                for d in days:
                    lo, hi = day_bounds_ms(d, self.settings.tz_name)
                    self.store.mark_points_unprocessed(user, lo, hi - 1)
                logger.info("Place %s geometry changed, %s day(s) to rebuild", place_id, len(days))

        if not significant:
            return RecalculationReport(user)
        return self.trigger_recalculation(user)

    def override_transport_mode(self, user: str, trip_id: int, mode: TransportMode) -> Trip:
        """Pin the transport mode of a trip; survives later recalculations of its range."""

        trip = self.store.get_trip(user, trip_id)
        if trip is None:
            raise DataError(f"unknown trip {trip_id} for user {user}")
        self.store.add_override(user, TransportModeOverride(trip.start_ms, trip.end_ms, mode))
        return self.store.update_trip(user, replace(trip, transport_mode=mode))


def _validate_polygon(polygon: Sequence[Sequence[float]] | None) -> tuple[tuple[float, float], ...] | None:
    if not polygon:
        return None
    try:
        shape = tuple((float(v[0]), float(v[1])) for v in polygon)
    except (TypeError, ValueError, IndexError) as exc:
        raise DataError(f"malformed polygon: {exc}") from exc
    if len(set(shape)) < 3:
        raise DataError("polygon needs at least 3 distinct vertices")
    if any(not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0) for lat, lon in shape):
        raise DataError("polygon vertex out of range")
    return shape


def _geometry_changed(
    place: SignificantPlace,
    shape: tuple[tuple[float, float], ...] | None,
    lat: float,
    lon: float,
) -> bool:
    if (place.polygon is None) != (shape is None):
        return True
    if shape is None or place.polygon is None:
        return False
    if abs(place.latitude - lat) > CENTROID_CHANGE_DEG or abs(place.longitude - lon) > CENTROID_CHANGE_DEG:
        return True
    return abs(polygon_area_m2(place.polygon) - polygon_area_m2(shape)) > AREA_CHANGE_M2
