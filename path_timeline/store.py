"""In-memory timeline store with optimistic versioning and JSON snapshots.

All entities are immutable snapshots. ``update_*`` accepts a new value that still
carries the version it was read at; the store refuses it with ``ConflictError`` when
the stored version moved on, and otherwise stores it with ``version + 1``.

``atomic(user)`` makes a block of mutations all-or-nothing for one user.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from path_timeline.config import DetectionParameters, LocationDensity, VisitDetection, VisitMerging
from path_timeline.errors import ConflictError, StorageError
from path_timeline.geo import haversine_m, meters_to_degrees, polygon_contains
from path_timeline.models import (
    ProcessedVisit,
    RawPoint,
    SignificantPlace,
    TransportMode,
    TransportModeOverride,
    Trip,
)
from path_timeline.timeutils import local_date

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _UserTables:
    points: dict[int, RawPoint] = field(default_factory=dict)
    point_ids_by_ts: dict[int, int] = field(default_factory=dict)
    places: dict[int, SignificantPlace] = field(default_factory=dict)
    visits: dict[int, ProcessedVisit] = field(default_factory=dict)
    trips: dict[int, Trip] = field(default_factory=dict)
    overrides: list[TransportModeOverride] = field(default_factory=list)
    parameters: list[DetectionParameters] = field(default_factory=list)

    def copy(self) -> _UserTables:
        # values are frozen, copying the containers is enough
        return _UserTables(
            points=dict(self.points),
            point_ids_by_ts=dict(self.point_ids_by_ts),
            places=dict(self.places),
            visits=dict(self.visits),
            trips=dict(self.trips),
            overrides=list(self.overrides),
            parameters=list(self.parameters),
        )


def _overlaps(start_ms: int, end_ms: int, lo: int, hi: int) -> bool:
    """Inclusive interval overlap."""

    return start_ms <= hi and end_ms >= lo


class TimelineStore:
    """Per-user point, place, visit and trip tables."""

    def __init__(self) -> None:
        self._users: dict[str, _UserTables] = {}
        self._lock = threading.RLock()
        self._ids = {kind: itertools.count(1) for kind in ("point", "place", "visit", "trip")}

    def _t(self, user: str) -> _UserTables:
        tables = self._users.get(user)
        if tables is None:
            tables = _UserTables()
            self._users[user] = tables
        return tables

    def _next_id(self, kind: str) -> int:
        return next(self._ids[kind])

    def users(self) -> list[str]:
        with self._lock:
            return sorted(self._users)

    @contextmanager
    def atomic(self, user: str) -> Iterator[None]:
        """Run a block of mutations for ``user`` all-or-nothing.

        On any exception the user's tables are restored to their state at entry and
        the exception propagates.
        """

        with self._lock:
            snapshot = self._t(user).copy()
        try:
            yield
        except BaseException:
            with self._lock:
                self._users[user] = snapshot
            logger.info("Rolled back changes for user %s", user)
            raise

    @staticmethod
    def _replace_versioned(table: dict[int, Any], key: int, new: Any, kind: str) -> Any:
        current = table.get(key)
        if current is None:
            raise ConflictError(kind, key, new.version, None)
        if current.version != new.version:
            raise ConflictError(kind, key, new.version, current.version)
        stored = replace(new, version=new.version + 1)
        table[key] = stored
        return stored

    # -- points ---------------------------------------------------------------------

    def insert_points(self, user: str, points: Iterable[RawPoint]) -> list[RawPoint]:
        """Bulk insert; ids are assigned here, timestamps already stored are skipped.

        A real point takes over the timestamp of a synthetic one, which is dropped.
        """

        inserted: list[RawPoint] = []
        with self._lock:
            t = self._t(user)
            for p in points:
                existing_id = t.point_ids_by_ts.get(p.timestamp_ms)
                if existing_id is not None:
                    if p.synthetic or not t.points[existing_id].synthetic:
                        continue
                    del t.points[existing_id]
                    del t.point_ids_by_ts[p.timestamp_ms]
                stored = replace(p, point_id=self._next_id("point"), version=1)
                t.points[stored.point_id] = stored
                t.point_ids_by_ts[stored.timestamp_ms] = stored.point_id
                inserted.append(stored)
        return inserted

    def find_points(
        self,
        user: str,
        start_ms: int,
        end_ms: int,
        *,
        usable_only: bool = False,
        include_synthetic: bool = True,
    ) -> list[RawPoint]:
        """Points with ``start_ms <= timestamp <= end_ms`` ordered by time."""

        with self._lock:
            pts = [
                p
                for p in self._t(user).points.values()
                if start_ms <= p.timestamp_ms <= end_ms
                and (include_synthetic or not p.synthetic)
                and (not usable_only or p.usable)
            ]
        pts.sort(key=lambda p: p.timestamp_ms)
        return pts

    def find_unprocessed_points(self, user: str) -> list[RawPoint]:
        with self._lock:
            pts = [p for p in self._t(user).points.values() if not p.processed]
        pts.sort(key=lambda p: p.timestamp_ms)
        return pts

    def count_points(self, user: str) -> int:
        with self._lock:
            return len(self._t(user).points)

    def update_points(self, user: str, points: Sequence[RawPoint]) -> list[RawPoint]:
        """Version-checked bulk flag update; nothing is written if any point is stale."""

        with self._lock:
            table = self._t(user).points
            for p in points:
                current = table.get(p.point_id)
                if current is None or current.version != p.version:
                    raise ConflictError("point", p.point_id, p.version, None if current is None else current.version)
            return [self._replace_versioned(table, p.point_id, p, "point") for p in points]

    def delete_synthetic_points(self, user: str, start_ms: int, end_ms: int) -> int:
        with self._lock:
            t = self._t(user)
            doomed = [
                p for p in t.points.values() if p.synthetic and start_ms <= p.timestamp_ms <= end_ms
            ]
            for p in doomed:
                del t.points[p.point_id]
                if t.point_ids_by_ts.get(p.timestamp_ms) == p.point_id:
                    del t.point_ids_by_ts[p.timestamp_ms]
        return len(doomed)

    def mark_points_unprocessed(self, user: str, start_ms: int, end_ms: int) -> int:
        pts = [p for p in self.find_points(user, start_ms, end_ms) if p.processed]
        self.update_points(user, [replace(p, processed=False) for p in pts])
        return len(pts)

    # -- places ---------------------------------------------------------------------

    def places(self, user: str) -> list[SignificantPlace]:
        with self._lock:
            return sorted(self._t(user).places.values(), key=lambda p: p.place_id)

    def get_place(self, user: str, place_id: int) -> SignificantPlace | None:
        with self._lock:
            return self._t(user).places.get(place_id)

    def find_nearby_places(self, user: str, lat: float, lon: float, radius_m: float) -> list[SignificantPlace]:
        """Places whose centroid lies within ``radius_m`` or whose polygon contains the point."""

        d_lat = radius_m / 111_320.0
        d_lon = meters_to_degrees(radius_m, lat)
        out: list[SignificantPlace] = []
        for place in self.places(user):
            if place.polygon and polygon_contains(place.polygon, lat, lon):
                out.append(place)
                continue
            if abs(place.latitude - lat) > d_lat or abs(place.longitude - lon) > d_lon:
                continue
            if haversine_m(lat, lon, place.latitude, place.longitude) <= radius_m:
                out.append(place)
        return out

    def create_place(self, user: str, place: SignificantPlace) -> SignificantPlace:
        with self._lock:
            stored = replace(place, place_id=self._next_id("place"), version=1)
            self._t(user).places[stored.place_id] = stored
        return stored

    def update_place(self, user: str, place: SignificantPlace) -> SignificantPlace:
        with self._lock:
            return self._replace_versioned(self._t(user).places, place.place_id, place, "place")

    # -- visits ---------------------------------------------------------------------

    def visits(self, user: str) -> list[ProcessedVisit]:
        with self._lock:
            return sorted(self._t(user).visits.values(), key=lambda v: (v.start_ms, v.visit_id))

    def get_visit(self, user: str, visit_id: int) -> ProcessedVisit | None:
        with self._lock:
            return self._t(user).visits.get(visit_id)

    def find_visits_overlapping(self, user: str, start_ms: int, end_ms: int) -> list[ProcessedVisit]:
        return [v for v in self.visits(user) if _overlaps(v.start_ms, v.end_ms, start_ms, end_ms)]

    def visits_for_place(self, user: str, place_id: int) -> list[ProcessedVisit]:
        return [v for v in self.visits(user) if v.place_id == place_id]

    def last_visit_before(self, user: str, ts_ms: int) -> ProcessedVisit | None:
        """Latest visit ending strictly before ``ts_ms``."""

        before = [v for v in self.visits(user) if v.end_ms < ts_ms]
        return max(before, key=lambda v: (v.end_ms, v.visit_id)) if before else None

    def first_visit_after(self, user: str, ts_ms: int) -> ProcessedVisit | None:
        """Earliest visit starting strictly after ``ts_ms``."""

        after = [v for v in self.visits(user) if v.start_ms > ts_ms]
        return min(after, key=lambda v: (v.start_ms, v.visit_id)) if after else None

    def insert_visit(self, user: str, place_id: int, start_ms: int, end_ms: int) -> ProcessedVisit:
        with self._lock:
            v = ProcessedVisit(visit_id=self._next_id("visit"), place_id=place_id, start_ms=start_ms, end_ms=end_ms)
            self._t(user).visits[v.visit_id] = v
        return v

    def update_visit(self, user: str, visit: ProcessedVisit) -> ProcessedVisit:
        with self._lock:
            return self._replace_versioned(self._t(user).visits, visit.visit_id, visit, "visit")

    def delete_visits(self, user: str, visit_ids: Iterable[int]) -> int:
        n = 0
        with self._lock:
            table = self._t(user).visits
            for visit_id in visit_ids:
                if table.pop(visit_id, None) is not None:
                    n += 1
        return n

    # -- trips ----------------------------------------------------------------------

    def trips(self, user: str) -> list[Trip]:
        with self._lock:
            return sorted(self._t(user).trips.values(), key=lambda t: (t.start_ms, t.trip_id))

    def get_trip(self, user: str, trip_id: int) -> Trip | None:
        with self._lock:
            return self._t(user).trips.get(trip_id)

    def find_trips_overlapping(self, user: str, start_ms: int, end_ms: int) -> list[Trip]:
        return [t for t in self.trips(user) if _overlaps(t.start_ms, t.end_ms, start_ms, end_ms)]

    def trips_for_place(self, user: str, place_id: int) -> list[Trip]:
        return [t for t in self.trips(user) if place_id in (t.start_place_id, t.end_place_id)]

    def insert_trip(self, user: str, trip: Trip) -> Trip:
        with self._lock:
            stored = replace(trip, trip_id=self._next_id("trip"), version=1)
            self._t(user).trips[stored.trip_id] = stored
        return stored

    def update_trip(self, user: str, trip: Trip) -> Trip:
        with self._lock:
            return self._replace_versioned(self._t(user).trips, trip.trip_id, trip, "trip")

    def delete_trips(self, user: str, trip_ids: Iterable[int]) -> int:
        n = 0
        with self._lock:
            table = self._t(user).trips
            for trip_id in trip_ids:
                if table.pop(trip_id, None) is not None:
                    n += 1
        return n

    # -- overrides and parameters ---------------------------------------------------

    def add_override(self, user: str, override: TransportModeOverride) -> None:
        with self._lock:
            t = self._t(user)
            t.overrides = [
                o for o in t.overrides if (o.start_ms, o.end_ms) != (override.start_ms, override.end_ms)
            ]
            t.overrides.append(override)

    def find_override(self, user: str, start_ms: int, end_ms: int) -> TransportModeOverride | None:
        with self._lock:
            for o in self._t(user).overrides:
                if o.start_ms == start_ms and o.end_ms == end_ms:
                    return o
        return None

    def parameter_history(self, user: str) -> list[DetectionParameters]:
        with self._lock:
            return list(self._t(user).parameters)

    def add_parameters(self, user: str, params: DetectionParameters) -> None:
        with self._lock:
            t = self._t(user)
            t.parameters = [p for p in t.parameters if p.valid_since_ms != params.valid_since_ms]
            t.parameters.append(params)

    # -- derived lookups ------------------------------------------------------------

    def affected_days(self, user: str, place_ids: Iterable[int], tz_name: str) -> list[date]:
        """Local days touched by any visit of the given places."""

        wanted = set(place_ids)
        days: set[date] = set()
        for v in self.visits(user):
            if v.place_id not in wanted:
                continue
            d = local_date(v.start_ms, tz_name)
            last = local_date(v.end_ms, tz_name)
            while d <= last:
                days.add(d)
                d += timedelta(days=1)
        return sorted(days)

    # -- persistence ----------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            users = {
                user: {
                    "points": [asdict(p) for p in t.points.values()],
                    "places": [asdict(p) for p in t.places.values()],
                    "visits": [asdict(v) for v in t.visits.values()],
                    "trips": [_trip_to_dict(tr) for tr in t.trips.values()],
                    "overrides": [
                        {"start_ms": o.start_ms, "end_ms": o.end_ms, "mode": o.mode.value} for o in t.overrides
                    ],
                    "parameters": [asdict(p) for p in t.parameters],
                }
                for user, t in self._users.items()
            }
        return {"version": 1, "users": users}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimelineStore:
        store = cls()
        max_ids = {"point": 0, "place": 0, "visit": 0, "trip": 0}
        for user, raw in (data.get("users") or {}).items():
            t = store._t(user)
            for d in raw.get("points", []):
                p = RawPoint(**d)
                t.points[p.point_id] = p
                t.point_ids_by_ts[p.timestamp_ms] = p.point_id
                max_ids["point"] = max(max_ids["point"], p.point_id)
            for d in raw.get("places", []):
                polygon = d.get("polygon")
                place = SignificantPlace(**{**d, "polygon": None if polygon is None else tuple(tuple(v) for v in polygon)})
                t.places[place.place_id] = place
                max_ids["place"] = max(max_ids["place"], place.place_id)
            for d in raw.get("visits", []):
                v = ProcessedVisit(**d)
                t.visits[v.visit_id] = v
                max_ids["visit"] = max(max_ids["visit"], v.visit_id)
            for d in raw.get("trips", []):
                tr = Trip(**{**d, "transport_mode": TransportMode(d["transport_mode"])})
                t.trips[tr.trip_id] = tr
                max_ids["trip"] = max(max_ids["trip"], tr.trip_id)
            t.overrides = [
                TransportModeOverride(o["start_ms"], o["end_ms"], TransportMode(o["mode"]))
                for o in raw.get("overrides", [])
            ]
            t.parameters = [_parameters_from_dict(d) for d in raw.get("parameters", [])]
        store._ids = {kind: itertools.count(n + 1) for kind, n in max_ids.items()}
        return store

    def save(self, path: str | Path) -> None:
        """Persist a snapshot (write to a temp file, then replace)."""

        p = Path(path)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            tmp = p.with_suffix(p.suffix + ".tmp")
            tmp.write_text(json.dumps(self.to_dict(), ensure_ascii=False), encoding="utf-8")
            tmp.replace(p)
        except OSError as exc:
            raise StorageError(f"cannot write store snapshot {p}: {exc}") from exc

    @classmethod
    def load(cls, path: str | Path) -> TimelineStore:
        """Load a snapshot; a missing file yields an empty store."""

        p = Path(path)
        if not p.exists():
            return cls()
        try:
            text = p.read_text(encoding="utf-8").strip()
            return cls.from_dict(json.loads(text) if text else {})
        except OSError as exc:
            raise StorageError(f"cannot read store snapshot {p}: {exc}") from exc
        except (ValueError, TypeError, KeyError) as exc:
            raise StorageError(f"corrupted store snapshot {p}: {exc}") from exc


def _trip_to_dict(trip: Trip) -> dict[str, Any]:
    d = asdict(trip)
    d["transport_mode"] = trip.transport_mode.value
    return d


def _parameters_from_dict(d: dict[str, Any]) -> DetectionParameters:
    return DetectionParameters(
        visit_detection=VisitDetection(**d["visit_detection"]),
        visit_merging=VisitMerging(**d["visit_merging"]),
        location_density=LocationDensity(**d["location_density"]),
        valid_since_ms=d.get("valid_since_ms"),
    )
