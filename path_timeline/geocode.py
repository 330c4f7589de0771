"""Deferred reverse geocoding of significant places.

New places are announced as :class:`PlaceCreated` events on a :class:`GeocodeQueue`;
the pipeline never waits for a geocoder. A separate sweep
(:func:`geocode_pending_places`) resolves names out of band.

Note:
    The public Nominatim instance allows about one request per second and asks for an
    identifying User-Agent; both are set through :class:`NominatimConfig`.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections import deque
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable, Protocol

from path_timeline.errors import ConflictError, GeocodingUnavailable
from path_timeline.store import TimelineStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PlaceCreated:
    """Fire-and-forget notification that a place needs a name."""

    user: str
    place_id: int
    latitude: float
    longitude: float


class GeocodeQueue:
    """Thread-safe FIFO of pending place-created events."""

    def __init__(self, events: Iterable[PlaceCreated] = ()) -> None:
        self._events: deque[PlaceCreated] = deque(events)
        self._lock = threading.Lock()

    def publish(self, event: PlaceCreated) -> None:
        with self._lock:
            self._events.append(event)

    def drain(self) -> list[PlaceCreated]:
        with self._lock:
            out = list(self._events)
            self._events.clear()
        return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


@dataclass(frozen=True, slots=True)
class GeocodeResult:
    """Name and raw payload returned for one coordinate."""

    place_name: str
    raw: dict[str, Any]


class ReverseGeocoder(Protocol):
    def reverse(self, *, lat: float, lon: float) -> GeocodeResult: ...


def coord_key(lat: float, lon: float, precision: int) -> str:
    """Cache key for a coordinate, e.g. ``"50.0000,8.0000"`` at precision 4 (~11 m)."""

    return f"{lat:.{precision}f},{lon:.{precision}f}"


class JsonDiskCache:
    """Geocoding responses keyed by rounded coordinate, persisted as JSON.

    Every ``set`` is appended to a sidecar journal (``<stem>.journal.jsonl``) so that an
    interrupted sweep loses nothing; ``flush`` folds the journal into the snapshot.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._journal_path = self._path.with_name(f"{self._path.stem}.journal.jsonl")
        self._entries: dict[str, dict[str, Any]] | None = None

    def __len__(self) -> int:
        return len(self._load())

    def get(self, key: str) -> dict[str, Any] | None:
        return self._load().get(key)

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._load()[key] = value
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)
        with self._journal_path.open("a", encoding="utf-8", newline="\n") as f:
            f.write(json.dumps([key, value], ensure_ascii=False) + "\n")

    def flush(self) -> None:
        """Write the snapshot via a temp file, then drop the journal."""

        entries = self._load()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(entries, ensure_ascii=False, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._path)
        self._journal_path.unlink(missing_ok=True)

    def _load(self) -> dict[str, dict[str, Any]]:
        if self._entries is not None:
            return self._entries
        entries: dict[str, dict[str, Any]] = {}
        if self._path.exists():
            text = self._path.read_text(encoding="utf-8")
            try:
                loaded = json.loads(text) if text.strip() else {}
            except json.JSONDecodeError:
                broken = self._path.with_name(self._path.name + ".broken")
                broken.write_text(text, encoding="utf-8")
                logger.warning("Unreadable geocode cache %s, saved a copy as %s", self._path, broken)
                loaded = {}
            entries.update(loaded)
        if self._journal_path.exists():
            replayed = 0
            for line in self._journal_path.read_text(encoding="utf-8").splitlines():
                try:
                    key, value = json.loads(line)
                except (json.JSONDecodeError, ValueError, TypeError):
                    # torn last line
                    continue
                entries[key] = value
                replayed += 1
            logger.debug("Replayed %s geocode journal entries from %s", replayed, self._journal_path)
        self._entries = entries
        return entries


@dataclass(frozen=True, slots=True)
class NominatimConfig:
    """Settings for the OpenStreetMap Nominatim ``/reverse`` endpoint."""

    base_url: str = "https://nominatim.openstreetmap.org/reverse"
    accept_language: str = "zh-CN"
    zoom: int = 18
    timeout_seconds: float = 20.0
    min_interval_seconds: float = 1.0
    user_agent: str = "path-timeline/0.1.0 (reverse-geocode; please set your own UA)"


def nominatim_reverse_raw(lat: float, lon: float, cfg: NominatimConfig) -> dict[str, Any]:
    """Fetch the jsonv2 reverse result for one coordinate.

    Raises:
        GeocodingUnavailable: On network errors, unreadable bodies or "Unable to geocode".
    """

    query = urllib.parse.urlencode(
        {
            "format": "jsonv2",
            "lat": f"{lat:.7f}",
            "lon": f"{lon:.7f}",
            "zoom": cfg.zoom,
            "addressdetails": 1,
            "accept-language": cfg.accept_language,
        }
    )
    request = urllib.request.Request(
        f"{cfg.base_url}?{query}",
        headers={"User-Agent": cfg.user_agent, "Accept": "application/json"},
    )
    try:
        with urllib.request.urlopen(request, timeout=cfg.timeout_seconds) as resp:  # noqa: S310
            payload = json.load(resp)
    except (urllib.error.URLError, OSError, json.JSONDecodeError) as exc:
        raise GeocodingUnavailable(f"nominatim reverse failed for {lat:.5f},{lon:.5f}: {exc}") from exc
    if not isinstance(payload, dict) or "error" in payload:
        raise GeocodingUnavailable(f"nominatim returned no result for {lat:.5f},{lon:.5f}")
    return payload


class NominatimReverseGeocoder:
    """Throttled Nominatim client with an optional :class:`JsonDiskCache` in front."""

    def __init__(self, config: NominatimConfig, cache: JsonDiskCache | None = None, precision: int = 4) -> None:
        self._cfg = config
        self._cache = cache
        self._precision = precision
        self._next_request_at = 0.0

    def reverse(self, *, lat: float, lon: float) -> GeocodeResult:
        """Name for a coordinate; cache hits never touch the network.

        Raises:
            GeocodingUnavailable: If the request failed.
        """

        key = coord_key(lat, lon, self._precision)
        hit = self._cache.get(key) if self._cache is not None else None
        if hit is not None:
            return GeocodeResult(place_name=str(hit.get("place_name", "")), raw=hit)

        self._throttle()
        raw = nominatim_reverse_raw(lat, lon, self._cfg)
        name = str(raw.get("name") or raw.get("display_name") or "")
        if self._cache is not None:
            self._cache.set(key, {**raw, "place_name": name})
        return GeocodeResult(place_name=name, raw=raw)

    def _throttle(self) -> None:
        delay = self._next_request_at - time.monotonic()
        if delay > 0:
            time.sleep(delay)
        self._next_request_at = time.monotonic() + self._cfg.min_interval_seconds




def _place_type(raw: dict[str, Any]) -> str:
    category = str(raw.get("category") or raw.get("type") or "").upper()
    return category or "UNKNOWN"


@dataclass(frozen=True, slots=True)
class GeocodeSweepResult:
    named: int
    failed: int
    skipped: int


def geocode_pending_places(
    store: TimelineStore,
    geocoder: ReverseGeocoder,
    queue: GeocodeQueue,
    *,
    include_unnamed: bool = False,
) -> GeocodeSweepResult:
    """Resolve names for queued places.

    Events whose geocoding failed are put back on the queue for the next sweep. Places
    that vanished (rolled back) or were geocoded meanwhile are skipped.

    Args:
        store: Place store.
        geocoder: Any object with ``reverse(lat=..., lon=...)``.
        queue: Pending events.
        include_unnamed: Also sweep stored places that were never geocoded, e.g. after
            loading a snapshot (queues are not persisted).
    """

    events = queue.drain()
    if include_unnamed:
        queued = {(e.user, e.place_id) for e in events}
        for user in store.users():
            for place in store.places(user):
                if not place.geocoded and (user, place.place_id) not in queued:
                    events.append(PlaceCreated(user, place.place_id, place.latitude, place.longitude))

    named = failed = skipped = 0
    for event in events:
        place = store.get_place(event.user, event.place_id)
        if place is None or place.geocoded:
            skipped += 1
            continue
        try:
            result = geocoder.reverse(lat=place.latitude, lon=place.longitude)
            store.update_place(
                event.user,
                replace(
                    place,
                    name=result.place_name or place.name,
                    place_type=_place_type(result.raw) if place.place_type == "UNKNOWN" else place.place_type,
                    geocoded=True,
                ),
            )
        except (GeocodingUnavailable, ConflictError) as exc:
            logger.warning("Place %s of user %s stays un-geocoded: %s", event.place_id, event.user, exc)
            queue.publish(event)
            failed += 1
            continue
        named += 1

    logger.info("Geocoding sweep: named=%s failed=%s skipped=%s", named, failed, skipped)
    return GeocodeSweepResult(named=named, failed=failed, skipped=skipped)
