"""Synthetic GPS tracks shared by the tests."""

from __future__ import annotations

from typing import Any

from path_timeline.models import PointInput, RawPoint

BASE_MS = 1_735_689_600_000  # 2025-01-01 00:00:00 UTC
SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS

HOME = (50.0, 8.0)
OFFICE = (50.03, 8.0)  # ~3.3 km north of HOME


def at(day: int = 0, hour: int = 0, minute: int = 0, second: int = 0) -> int:
    return BASE_MS + ((day * 24 + hour) * 60 + minute) * MINUTE_MS + second * SECOND_MS


def raw_point(
    point_id: int,
    ts_ms: int,
    lat: float,
    lon: float,
    accuracy: float | None = 10.0,
    **fields: Any,
) -> RawPoint:
    fields.setdefault("processed", True)
    return RawPoint(point_id=point_id, timestamp_ms=ts_ms, latitude=lat, longitude=lon, accuracy_m=accuracy, **fields)


def stay(place: tuple[float, float], start_ms: int, end_ms: int, every_s: int = 60) -> list[PointInput]:
    """Points jittering by ~2 m around ``place`` from start to end inclusive."""

    out: list[PointInput] = []
    t, i = start_ms, 0
    while t <= end_ms:
        jitter = 0.00002 * ((i % 3) - 1)
        out.append(PointInput(t, place[0] + jitter, place[1] - jitter, accuracy_m=8.0))
        t += every_s * SECOND_MS
        i += 1
    return out


def walk(a: tuple[float, float], b: tuple[float, float], start_ms: int, end_ms: int, every_s: int = 15) -> list[PointInput]:
    """Straight line from ``a`` to ``b``, strictly between start and end."""

    out: list[PointInput] = []
    step = every_s * SECOND_MS
    t = start_ms + step
    while t < end_ms:
        f = (t - start_ms) / (end_ms - start_ms)
        out.append(PointInput(t, a[0] + (b[0] - a[0]) * f, a[1] + (b[1] - a[1]) * f, accuracy_m=5.0))
        t += step
    return out


def commute_day(day: int) -> list[PointInput]:
    """Home until 08:00, walk to the office, office until 17:00, walk home, home until 23:59."""

    return [
        *stay(HOME, at(day, 0), at(day, 8)),
        *walk(HOME, OFFICE, at(day, 8), at(day, 8, 30)),
        *stay(OFFICE, at(day, 8, 30), at(day, 17)),
        *walk(OFFICE, HOME, at(day, 17), at(day, 17, 30)),
        *stay(HOME, at(day, 17, 30), at(day, 23, 59)),
    ]
