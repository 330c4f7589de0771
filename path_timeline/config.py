"""Detection parameters, pipeline settings and YAML loading.

Parameters are explicit objects handed to every pipeline run. Per-user parameters are
versioned by ``valid_since_ms``; :class:`ParameterLookup` resolves the authoritative
entry and caches the history for a bounded time.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Sequence

import yaml

from path_timeline.errors import ConfigurationError
from path_timeline.models import DEFAULT_TZ, TransportMode

if TYPE_CHECKING:
    from path_timeline.store import TimelineStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VisitDetection:
    """Stay-point clustering parameters."""

    search_distance_m: float = 50.0
    minimum_adjacent_points: int = 5
    minimum_stay_time_s: float = 300.0
    max_merge_time_between_same_stay_points_s: float = 300.0


@dataclass(frozen=True, slots=True)
class VisitMerging:
    """Visit merge parameters."""

    search_duration_hours: float = 48.0
    max_merge_time_between_same_visits_s: float = 300.0
    min_distance_between_visits_m: float = 200.0

    @property
    def place_search_radius_m(self) -> float:
        """Radius within which a stay point resolves to an existing place."""

        return self.min_distance_between_visits_m / 2.0


@dataclass(frozen=True, slots=True)
class LocationDensity:
    """Interpolation limits for the density normalizer."""

    max_interpolation_distance_m: float = 50.0
    max_interpolation_gap_minutes: float = 1440.0


@dataclass(frozen=True, slots=True)
class DetectionParameters:
    """One entry of a user's parameter history.

    Attributes:
        valid_since_ms: Entry applies from this instant on; None means since forever.
    """

    visit_detection: VisitDetection = field(default_factory=VisitDetection)
    visit_merging: VisitMerging = field(default_factory=VisitMerging)
    location_density: LocationDensity = field(default_factory=LocationDensity)
    valid_since_ms: int | None = None

    def validate(self) -> None:
        """Raise ConfigurationError when a value is out of range."""

        vd, vm, ld = self.visit_detection, self.visit_merging, self.location_density
        checks = [
            (vd.search_distance_m > 0, "search_distance_m must be > 0"),
            (vd.minimum_adjacent_points >= 1, "minimum_adjacent_points must be >= 1"),
            (vd.minimum_stay_time_s >= 0, "minimum_stay_time_s must be >= 0"),
            (vd.max_merge_time_between_same_stay_points_s >= 0, "max_merge_time_between_same_stay_points_s must be >= 0"),
            (vm.search_duration_hours > 0, "search_duration_hours must be > 0"),
            (vm.max_merge_time_between_same_visits_s >= 0, "max_merge_time_between_same_visits_s must be >= 0"),
            (vm.min_distance_between_visits_m > 0, "min_distance_between_visits_m must be > 0"),
            (ld.max_interpolation_distance_m >= 0, "max_interpolation_distance_m must be >= 0"),
            (ld.max_interpolation_gap_minutes >= 0, "max_interpolation_gap_minutes must be >= 0"),
        ]
        for ok, message in checks:
            if not ok:
                raise ConfigurationError(message)


@dataclass(frozen=True, slots=True)
class AnomalyFilterConfig:
    """Outlier thresholds for raw points.

    A pair of points disagrees when the implied speed exceeds ``max_speed_kmh``, or when
    they are more than ``max_distance_jump_m`` apart within ``distance_jump_window_s``.
    Points reporting an accuracy worse than ``max_accuracy_m`` are rejected outright.
    """

    max_speed_kmh: float = 1000.0
    min_distance_m: float = 100.0
    min_time_delta_s: float = 1.0
    edge_tolerance: float = 1.5
    history_lookback_hours: float = 2.0
    max_accuracy_m: float = 100.0
    max_distance_jump_m: float = 5000.0
    distance_jump_window_s: float = 60.0
    lookahead_points: int = 5

    def validate(self) -> None:
        if self.max_speed_kmh <= 0:
            raise ConfigurationError("anomaly.max_speed_kmh must be > 0")
        if self.min_time_delta_s <= 0:
            raise ConfigurationError("anomaly.min_time_delta_s must be > 0")
        if self.edge_tolerance < 1.0:
            raise ConfigurationError("anomaly.edge_tolerance must be >= 1")
        if self.max_accuracy_m <= 0 or self.max_distance_jump_m <= 0:
            raise ConfigurationError("anomaly.max_accuracy_m and anomaly.max_distance_jump_m must be > 0")
        if self.lookahead_points < 1:
            raise ConfigurationError("anomaly.lookahead_points must be >= 1")


@dataclass(frozen=True, slots=True)
class DensityConfig:
    """System-wide target sampling density."""

    target_points_per_minute: int = 4

    @property
    def interval_s(self) -> int:
        return 60 // self.target_points_per_minute

    @property
    def tolerance_s(self) -> int:
        return self.interval_s // 2

    @property
    def gap_threshold_s(self) -> int:
        return self.interval_s * 2

    def validate(self) -> None:
        if not 1 <= self.target_points_per_minute <= 60:
            raise ConfigurationError("density.target_points_per_minute must be within 1..60")


@dataclass(frozen=True, slots=True)
class TransportModeBand:
    """Speed ceiling of a transport mode; ``max_kmh=None`` means unbounded."""

    mode: TransportMode
    max_kmh: float | None


DEFAULT_TRANSPORT_BANDS: tuple[TransportModeBand, ...] = (
    TransportModeBand(TransportMode.WALKING, 7.0),
    TransportModeBand(TransportMode.CYCLING, 20.0),
    TransportModeBand(TransportMode.DRIVING, 120.0),
    TransportModeBand(TransportMode.TRANSIT, None),
)


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Process-wide settings, usually loaded from YAML."""

    tz_name: str = DEFAULT_TZ
    anomaly: AnomalyFilterConfig = field(default_factory=AnomalyFilterConfig)
    density: DensityConfig = field(default_factory=DensityConfig)
    default_parameters: DetectionParameters = field(default_factory=DetectionParameters)
    transport_bands: tuple[TransportModeBand, ...] = DEFAULT_TRANSPORT_BANDS
    parameter_cache_ttl_s: float = 300.0

    def validate(self) -> None:
        self.anomaly.validate()
        self.density.validate()
        self.default_parameters.validate()


@dataclass(frozen=True, slots=True)
class ParameterHistory:
    """All parameter entries of a user, ordered by ``valid_since_ms``."""

    entries: tuple[DetectionParameters, ...]

    def current(self, at_ms: int | None = None) -> DetectionParameters:
        """Entry with the latest ``valid_since_ms`` <= ``at_ms`` (now when None).

        Raises:
            ConfigurationError: If no entry is valid at that instant.
        """

        now = int(time.time() * 1000) if at_ms is None else at_ms
        best: DetectionParameters | None = None
        for entry in self.entries:
            since = entry.valid_since_ms
            if since is not None and since > now:
                continue
            if best is None or _since(best) <= _since(entry):
                best = entry
        if best is None:
            raise ConfigurationError(f"no detection parameters valid at {now}")
        return best


def _since(entry: DetectionParameters) -> int:
    return -1 if entry.valid_since_ms is None else entry.valid_since_ms


def sort_history(entries: Sequence[DetectionParameters]) -> ParameterHistory:
    return ParameterHistory(entries=tuple(sorted(entries, key=_since)))


class ParameterLookup:
    """Resolve per-user detection parameters from the store.

    The history of each user is cached for ``ttl_seconds``; :meth:`save` writes through
    and invalidates the entry, so a write is visible to the next run immediately.
    Missing or invalid parameters resolve to ``defaults`` with a warning.
    """

    def __init__(
        self,
        store: TimelineStore,
        defaults: DetectionParameters | None = None,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._defaults = defaults or DetectionParameters()
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, ParameterHistory]] = {}
        self._lock = threading.Lock()

    @property
    def defaults(self) -> DetectionParameters:
        return self._defaults

    def history(self, user: str) -> ParameterHistory:
        now = self._clock()
        with self._lock:
            hit = self._cache.get(user)
            if hit is not None and now - hit[0] < self._ttl:
                return hit[1]
        history = sort_history(self._store.parameter_history(user))
        with self._lock:
            self._cache[user] = (now, history)
        return history

    def current(self, user: str, at_ms: int | None = None) -> DetectionParameters:
        """Authoritative parameters for ``user``; defaults on ConfigurationError."""

        history = self.history(user)
        if not history.entries:
            logger.info("No detection parameters stored for user %s, using defaults", user)
            return self._defaults
        try:
            params = history.current(at_ms)
            params.validate()
        except ConfigurationError as exc:
            logger.warning("Using default detection parameters for user %s: %s", user, exc)
            return self._defaults
        return params

    def save(self, user: str, params: DetectionParameters) -> None:
        params.validate()
        self._store.add_parameters(user, params)
        self.invalidate(user)

    def invalidate(self, user: str | None = None) -> None:
        with self._lock:
            if user is None:
                self._cache.clear()
            else:
                self._cache.pop(user, None)


def load_config(path: str | Path) -> Dict[str, Any]:
    """Load a YAML configuration file."""

    with Path(path).open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def get_nested(config: Dict[str, Any], keys: list[str], default: Any) -> Any:
    """Retrieve a nested value from a config dict with a default."""

    current: Any = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def parameters_from_config(config: Dict[str, Any], base: DetectionParameters | None = None) -> DetectionParameters:
    """Build DetectionParameters from a ``detection:`` mapping.

    Keys missing from the mapping keep the value of ``base`` (defaults when None).

    Example YAML::

        detection:
          valid_since_ms: 1735689600000
          visit_detection:
            search_distance_m: 50
          visit_merging:
            min_distance_between_visits_m: 200

    Raises:
        ConfigurationError: If a value has the wrong type or is out of range.
    """

    b = base or DetectionParameters()
    root = ["detection"]
    try:
        vd = VisitDetection(
            search_distance_m=float(get_nested(config, root + ["visit_detection", "search_distance_m"], b.visit_detection.search_distance_m)),
            minimum_adjacent_points=int(get_nested(config, root + ["visit_detection", "minimum_adjacent_points"], b.visit_detection.minimum_adjacent_points)),
            minimum_stay_time_s=float(get_nested(config, root + ["visit_detection", "minimum_stay_time_s"], b.visit_detection.minimum_stay_time_s)),
            max_merge_time_between_same_stay_points_s=float(
                get_nested(
                    config,
                    root + ["visit_detection", "max_merge_time_between_same_stay_points_s"],
                    b.visit_detection.max_merge_time_between_same_stay_points_s,
                )
            ),
        )
        vm = VisitMerging(
            search_duration_hours=float(get_nested(config, root + ["visit_merging", "search_duration_hours"], b.visit_merging.search_duration_hours)),
            max_merge_time_between_same_visits_s=float(
                get_nested(
                    config,
                    root + ["visit_merging", "max_merge_time_between_same_visits_s"],
                    b.visit_merging.max_merge_time_between_same_visits_s,
                )
            ),
            min_distance_between_visits_m=float(
                get_nested(config, root + ["visit_merging", "min_distance_between_visits_m"], b.visit_merging.min_distance_between_visits_m)
            ),
        )
        ld = LocationDensity(
            max_interpolation_distance_m=float(
                get_nested(config, root + ["location_density", "max_interpolation_distance_m"], b.location_density.max_interpolation_distance_m)
            ),
            max_interpolation_gap_minutes=float(
                get_nested(config, root + ["location_density", "max_interpolation_gap_minutes"], b.location_density.max_interpolation_gap_minutes)
            ),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid detection parameters: {exc}") from exc

    valid_since = get_nested(config, root + ["valid_since_ms"], b.valid_since_ms)
    params = DetectionParameters(
        visit_detection=vd,
        visit_merging=vm,
        location_density=ld,
        valid_since_ms=None if valid_since is None else int(valid_since),
    )
    params.validate()
    return params


def settings_from_config(config: Dict[str, Any]) -> PipelineSettings:
    """Build PipelineSettings from a loaded YAML mapping.

    Raises:
        ConfigurationError: If a value has the wrong type or is out of range.
    """

    defaults = PipelineSettings()
    a = defaults.anomaly
    try:
        anomaly = AnomalyFilterConfig(
            max_speed_kmh=float(get_nested(config, ["anomaly", "max_speed_kmh"], a.max_speed_kmh)),
            min_distance_m=float(get_nested(config, ["anomaly", "min_distance_m"], a.min_distance_m)),
            min_time_delta_s=float(get_nested(config, ["anomaly", "min_time_delta_s"], a.min_time_delta_s)),
            edge_tolerance=float(get_nested(config, ["anomaly", "edge_tolerance"], a.edge_tolerance)),
            history_lookback_hours=float(get_nested(config, ["anomaly", "history_lookback_hours"], a.history_lookback_hours)),
            max_accuracy_m=float(get_nested(config, ["anomaly", "max_accuracy_m"], a.max_accuracy_m)),
            max_distance_jump_m=float(get_nested(config, ["anomaly", "max_distance_jump_m"], a.max_distance_jump_m)),
            distance_jump_window_s=float(get_nested(config, ["anomaly", "distance_jump_window_s"], a.distance_jump_window_s)),
            lookahead_points=int(get_nested(config, ["anomaly", "lookahead_points"], a.lookahead_points)),
        )
        density = DensityConfig(
            target_points_per_minute=int(
                get_nested(config, ["density", "target_points_per_minute"], defaults.density.target_points_per_minute)
            )
        )
        raw_bands = get_nested(config, ["transport_modes"], None)
        if raw_bands is None:
            bands = defaults.transport_bands
        else:
            bands = tuple(
                TransportModeBand(
                    TransportMode(str(b["mode"]).upper()),
                    None if b.get("max_kmh") is None else float(b["max_kmh"]),
                )
                for b in raw_bands
            )
        ttl = float(get_nested(config, ["parameter_cache_ttl_s"], defaults.parameter_cache_ttl_s))
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise ConfigurationError(f"invalid pipeline settings: {exc}") from exc

    settings = PipelineSettings(
        tz_name=str(get_nested(config, ["tz"], defaults.tz_name)),
        anomaly=anomaly,
        density=density,
        default_parameters=parameters_from_config(config),
        transport_bands=bands,
        parameter_cache_ttl_s=ttl,
    )
    settings.validate()
    return settings
