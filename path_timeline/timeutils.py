"""Time parsing, formatting and local-day arithmetic.

All instants are epoch milliseconds; local calendars come from IANA zone names.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, tzinfo

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

HOUR_MS = 60 * 60 * 1000


def tzinfo_from_name(tz_name: str) -> tzinfo:
    """Resolve an IANA name such as ``"Europe/Berlin"``.

    Raises:
        ValueError: Unknown or malformed name.
    """

    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"无效时区：{tz_name!r}。例如可用：Europe/Berlin") from exc


def dt_from_epoch_ms(epoch_ms: int, tz_name: str) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=tzinfo_from_name(tz_name))


def epoch_ms_from_dt(dt: datetime) -> int:
    """Epoch ms of ``dt``; naive values are read as UTC."""

    aware = dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)
    return int(aware.timestamp() * 1000)


def parse_dt(text: str, tz_name: str) -> datetime:
    """Parse CLI/CSV datetime text into an aware datetime in ``tz_name``.

    Accepts ISO dates and datetimes with either a space or ``T`` separator; a bare date
    means local midnight, and an explicit offset is converted into ``tz_name``.

    Raises:
        ValueError: If the text is not ISO-like.
    """

    tz = tzinfo_from_name(tz_name)
    try:
        dt = datetime.fromisoformat(text.strip().replace("T", " "))
    except ValueError as exc:
        raise ValueError(f"无法解析时间：{text!r}。建议格式：2025-12-18 09:30:00") from exc
    return dt.replace(tzinfo=tz) if dt.tzinfo is None else dt.astimezone(tz)


def local_date(epoch_ms: int, tz_name: str) -> date:
    """Calendar date of an instant in the given timezone."""

    return dt_from_epoch_ms(epoch_ms, tz_name).date()


def day_start_ms(day: date, tz_name: str) -> int:
    """Epoch ms of local midnight at the start of ``day``."""

    tz = tzinfo_from_name(tz_name)
    return epoch_ms_from_dt(datetime(day.year, day.month, day.day, tzinfo=tz))


def day_bounds_ms(day: date, tz_name: str) -> tuple[int, int]:
    """Local day as a half-open range [00:00, next day 00:00) in epoch ms."""

    return day_start_ms(day, tz_name), day_start_ms(day + timedelta(days=1), tz_name)


def format_hhmmss(seconds: float) -> str:
    s = int(round(seconds))
    h = s // 3600
    m = (s % 3600) // 60
    sec = s % 60
    return f"{h:02d}:{m:02d}:{sec:02d}"
