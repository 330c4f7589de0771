"""Data models for raw points, places, visits and trips."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, Union


@dataclass(frozen=True, slots=True)
class PointInput:
    """A point as handed over by an importer, before validation.

    Any field may be missing; ingestion rejects the point with ``DataError`` then.
    """

    timestamp_ms: int | None
    latitude: float | None
    longitude: float | None
    accuracy_m: float | None = None
    elevation_m: float | None = None


@dataclass(frozen=True, slots=True)
class RawPoint:
    """A single stored location sample.

    Attributes:
        point_id: Store-assigned id, unique per user.
        timestamp_ms: Unix epoch milliseconds.
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        accuracy_m: Horizontal accuracy in meters, if known.
        elevation_m: Elevation in meters, if known.
        processed: Already consumed by a recalculation.
        synthetic: Inserted by the density normalizer.
        ignored: Excess near-duplicate, skipped downstream.
        invalid: Flagged by the anomaly filter, skipped downstream.
        version: Optimistic concurrency version.
    """

    point_id: int
    timestamp_ms: int
    latitude: float
    longitude: float
    accuracy_m: float | None = None
    elevation_m: float | None = None
    processed: bool = False
    synthetic: bool = False
    ignored: bool = False
    invalid: bool = False
    version: int = 1

    @property
    def usable(self) -> bool:
        """Read filter used by every stage after density normalization."""

        return self.processed and not self.invalid and not self.ignored


@dataclass(frozen=True, slots=True)
class StayPoint:
    """A cluster of points where the user paused. Never persisted."""

    latitude: float
    longitude: float
    start_ms: int
    end_ms: int
    points: tuple[RawPoint, ...]

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.end_ms - self.start_ms) / 1000.0)


@dataclass(frozen=True, slots=True)
class SignificantPlace:
    """A persistent location recognized across visits.

    Note:
        ``polygon`` vertices are (latitude, longitude) pairs. When a polygon is set,
        the centroid is derived from it.
    """

    place_id: int
    latitude: float
    longitude: float
    name: str | None = None
    polygon: tuple[tuple[float, float], ...] | None = None
    place_type: str = "UNKNOWN"
    timezone: str | None = None
    geocoded: bool = False
    version: int = 1


@dataclass(frozen=True, slots=True)
class Visit:
    """A raw visit: one stay point resolved to a place."""

    place_id: int
    latitude: float
    longitude: float
    start_ms: int
    end_ms: int


@dataclass(frozen=True, slots=True)
class ProcessedVisit:
    """A canonical visit of the user's timeline."""

    visit_id: int
    place_id: int
    start_ms: int
    end_ms: int
    version: int = 1

    @property
    def duration_seconds(self) -> float:
        """Visit duration in seconds."""

        return max(0.0, (self.end_ms - self.start_ms) / 1000.0)


class TransportMode(str, Enum):
    WALKING = "WALKING"
    CYCLING = "CYCLING"
    DRIVING = "DRIVING"
    TRANSIT = "TRANSIT"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class Trip:
    """Movement between two consecutive processed visits.

    ``start_ms`` equals the end of the start visit and ``end_ms`` the start of the
    end visit.
    """

    trip_id: int
    start_ms: int
    end_ms: int
    start_place_id: int
    end_place_id: int
    start_visit_id: int
    end_visit_id: int
    estimated_distance_m: float
    travelled_distance_m: float
    transport_mode: TransportMode = TransportMode.UNKNOWN
    version: int = 1

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.end_ms - self.start_ms) / 1000.0)


@dataclass(frozen=True, slots=True)
class TransportModeOverride:
    """A user correction pinning the mode of the trip with exactly this range."""

    start_ms: int
    end_ms: int
    mode: TransportMode


TimelineItem = Union[ProcessedVisit, Trip]


DEFAULT_TZ: Final[str] = "UTC"
