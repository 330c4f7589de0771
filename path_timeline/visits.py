"""Visit detection and timeline reporting."""

from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from path_timeline.models import ProcessedVisit, SignificantPlace, StayPoint, TimelineItem, Trip, Visit
from path_timeline.places import PlaceResolver
from path_timeline.timeutils import dt_from_epoch_ms, format_hhmmss


def detect_visits(
    user: str,
    stay_points: Sequence[StayPoint],
    resolver: PlaceResolver,
    radius_m: float,
) -> list[Visit]:
    """Resolve every stay point to a place and emit one raw visit per stay point.

    No merging happens here; adjacent visits at the same place are combined by the
    visit merger, which also sees the existing history.
    """

    visits: list[Visit] = []
    for sp in stay_points:
        place = resolver.resolve(user, sp.latitude, sp.longitude, radius_m)
        visits.append(
            Visit(
                place_id=place.place_id,
                latitude=sp.latitude,
                longitude=sp.longitude,
                start_ms=sp.start_ms,
                end_ms=sp.end_ms,
            )
        )
    return visits


def write_timeline_csv(
    items: Sequence[TimelineItem],
    places: Mapping[int, SignificantPlace],
    out_path: str | Path,
    tz_name: str,
) -> None:
    """Write visits and trips to CSV, one row per timeline entry."""

    def name(place_id: int) -> str:
        place = places.get(place_id)
        return (place.name or "") if place is not None else ""

    p = Path(out_path)
    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(
            f,
            fieldnames=[
                "kind",
                "id",
                "start_time",
                "end_time",
                "duration_hhmmss",
                "place_id",
                "place_name",
                "to_place_id",
                "distance_m",
                "transport_mode",
            ],
        )
        w.writeheader()
        for item in items:
            row = {
                "start_time": dt_from_epoch_ms(item.start_ms, tz_name).isoformat(sep=" "),
                "end_time": dt_from_epoch_ms(item.end_ms, tz_name).isoformat(sep=" "),
                "duration_hhmmss": format_hhmmss(item.duration_seconds),
            }
            if isinstance(item, Trip):
                row |= {
                    "kind": "trip",
                    "id": item.trip_id,
                    "place_id": item.start_place_id,
                    "place_name": name(item.start_place_id),
                    "to_place_id": item.end_place_id,
                    "distance_m": f"{item.travelled_distance_m:.1f}",
                    "transport_mode": item.transport_mode.value,
                }
            else:
                row |= {
                    "kind": "visit",
                    "id": item.visit_id,
                    "place_id": item.place_id,
                    "place_name": name(item.place_id),
                    "to_place_id": "",
                    "distance_m": "",
                    "transport_mode": "",
                }
            w.writerow(row)


@dataclass(frozen=True, slots=True)
class VisitsTotal:
    """Total duration summary."""

    visits: int
    total_seconds: float

    @property
    def total_hhmmss(self) -> str:
        return format_hhmmss(self.total_seconds)


def sum_visits(visits: Iterable[ProcessedVisit], start_ms: int | None = None, end_ms: int | None = None) -> VisitsTotal:
    """Sum visit durations, clipped to [start_ms, end_ms] when given."""

    total = 0.0
    count = 0
    for v in visits:
        lo = v.start_ms if start_ms is None else max(v.start_ms, start_ms)
        hi = v.end_ms if end_ms is None else min(v.end_ms, end_ms)
        total += max(0.0, (hi - lo) / 1000.0)
        count += 1
    return VisitsTotal(visits=count, total_seconds=total)
