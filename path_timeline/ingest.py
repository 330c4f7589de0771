"""Raw point ingestion with per-point error isolation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable

from path_timeline.errors import DataError
from path_timeline.models import PointInput, RawPoint
from path_timeline.store import TimelineStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IngestResult:
    """Outcome of one ``put`` call."""

    accepted: int
    duplicates: int
    rejected: int
    errors: tuple[str, ...] = ()


def _finite(value: float | None) -> float | None:
    if value is None:
        return None
    v = float(value)
    return v if math.isfinite(v) else None


def to_raw_point(point: PointInput) -> RawPoint:
    """Validate an importer point.

    Negative accuracy is a common "unknown" sentinel and becomes None.

    Raises:
        DataError: Missing timestamp or coordinates, or coordinates out of range.
    """

    if point.timestamp_ms is None:
        raise DataError("point without timestamp")
    lat = _finite(point.latitude)
    lon = _finite(point.longitude)
    if lat is None or lon is None:
        raise DataError(f"point at {point.timestamp_ms} without coordinates")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise DataError(f"point at {point.timestamp_ms} out of range: {lat},{lon}")

    accuracy = _finite(point.accuracy_m)
    if accuracy is not None and accuracy < 0:
        accuracy = None
    return RawPoint(
        point_id=0,
        timestamp_ms=int(point.timestamp_ms),
        latitude=lat,
        longitude=lon,
        accuracy_m=accuracy,
        elevation_m=_finite(point.elevation_m),
    )


def ingest_points(store: TimelineStore, user: str, points: Iterable[PointInput]) -> IngestResult:
    """Store valid points as unprocessed; malformed points are rejected one by one."""

    valid: list[RawPoint] = []
    errors: list[str] = []
    for point in points:
        try:
            valid.append(to_raw_point(point))
        except (DataError, TypeError, ValueError) as exc:
            logger.warning("Rejected point for user %s: %s", user, exc)
            errors.append(str(exc))

    inserted = store.insert_points(user, valid)
    result = IngestResult(
        accepted=len(inserted),
        duplicates=len(valid) - len(inserted),
        rejected=len(errors),
        errors=tuple(errors),
    )
    logger.info(
        "Ingested for user %s: accepted=%s duplicates=%s rejected=%s",
        user,
        result.accepted,
        result.duplicates,
        result.rejected,
    )
    return result
