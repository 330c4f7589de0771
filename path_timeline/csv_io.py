"""CSV input utilities for exported track files."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

from path_timeline.errors import DataError
from path_timeline.models import PointInput
from path_timeline.timeutils import epoch_ms_from_dt, parse_dt

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CsvSummary:
    """Quick summary of CSV parsing."""

    rows_total: int
    rows_parsed: int
    rows_skipped: int
    fieldnames: Sequence[str]


def _parse_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        return int(float(value.strip()))
    except ValueError:
        return None


def _parse_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def _timestamp_ms(row: dict[str, str], tz_name: str) -> int | None:
    ms = _parse_int(row.get("geoTime"))
    if ms is not None:
        return ms
    text = row.get("timestamp")
    if not text:
        return None
    try:
        return epoch_ms_from_dt(parse_dt(text, tz_name))
    except ValueError:
        return None


def iter_point_inputs(csv_path: str | Path, tz_name: str = "UTC") -> Iterator[PointInput]:
    """Yield PointInput rows from Path.csv.

    Args:
        csv_path: Path to the exported CSV.
        tz_name: Timezone for naive ISO ``timestamp`` values.

    Yields:
        One PointInput per row. Unparseable fields are None, so the row is rejected
        with a DataError at ingestion rather than silently dropped here.

    Raises:
        DataError: If the header lacks a time or coordinate column.

    Notes:
        The export uses these columns (observed):
          - geoTime: epoch milliseconds (or an ISO ``timestamp`` column)
          - latitude/longitude: decimal degrees
          - altitude: meters; horizontalAccuracy: meters, -1 when unknown
    """

    p = Path(csv_path)
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            return
        fields = set(reader.fieldnames)
        if not ({"geoTime", "timestamp"} & fields) or not {"latitude", "longitude"} <= fields:
            raise DataError(f"CSV缺少必要字段（geoTime/timestamp, latitude, longitude）。实际字段：{reader.fieldnames}")

        for row in reader:
            yield PointInput(
                timestamp_ms=_timestamp_ms(row, tz_name),
                latitude=_parse_float(row.get("latitude")),
                longitude=_parse_float(row.get("longitude")),
                accuracy_m=_parse_float(row.get("horizontalAccuracy")),
                elevation_m=_parse_float(row.get("altitude")),
            )


def load_point_inputs(csv_path: str | Path, tz_name: str = "UTC") -> tuple[list[PointInput], CsvSummary]:
    """Load all rows into memory.

    Returns:
        (points, summary); ``rows_skipped`` counts rows missing time or coordinates.
    """

    points = list(iter_point_inputs(csv_path, tz_name))
    with Path(csv_path).open("r", encoding="utf-8", newline="") as f:
        fieldnames: Sequence[str] = csv.DictReader(f).fieldnames or ()

    parsed = sum(1 for p in points if p.timestamp_ms is not None and p.latitude is not None and p.longitude is not None)
    summary = CsvSummary(
        rows_total=len(points),
        rows_parsed=parsed,
        rows_skipped=len(points) - parsed,
        fieldnames=fieldnames,
    )
    if summary.rows_skipped > 0:
        logger.warning("CSV中有 %s 行解析失败，导入时将被拒绝", summary.rows_skipped)
    return points, summary
