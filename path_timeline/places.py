"""Significant place resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from path_timeline.geo import haversine_m, polygon_contains
from path_timeline.models import SignificantPlace
from path_timeline.store import TimelineStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NewPlaceRequest:
    """No existing place matched; a place should be created here."""

    latitude: float
    longitude: float


def resolve_place(
    lat: float,
    lon: float,
    candidates: Sequence[SignificantPlace],
    radius_m: float,
) -> SignificantPlace | NewPlaceRequest:
    """Decide whether a centroid belongs to an existing place.

    Places with a polygon match by containment only and win over radius matches.
    Places without a polygon match when their centroid lies within ``radius_m``.
    Among several matches the closest wins, ties going to the lower ``place_id``.
    """

    containing = [p for p in candidates if p.polygon and polygon_contains(p.polygon, lat, lon)]
    pool = containing or [
        p
        for p in candidates
        if not p.polygon and haversine_m(lat, lon, p.latitude, p.longitude) <= radius_m
    ]
    if not pool:
        return NewPlaceRequest(latitude=lat, longitude=lon)
    return min(pool, key=lambda p: (haversine_m(lat, lon, p.latitude, p.longitude), p.place_id))


class PlaceResolver:
    """Resolves centroids against the store, creating places on a miss.

    Created places are collected in :attr:`created` so the caller can announce them
    once its transaction has committed.
    """

    def __init__(self, store: TimelineStore) -> None:
        self._store = store
        self.created: list[SignificantPlace] = []

    def resolve(self, user: str, lat: float, lon: float, radius_m: float) -> SignificantPlace:
        candidates = self._store.find_nearby_places(user, lat, lon, radius_m)
        match = resolve_place(lat, lon, candidates, radius_m)
        if isinstance(match, SignificantPlace):
            return match
        place = self._store.create_place(
            user, SignificantPlace(place_id=0, latitude=match.latitude, longitude=match.longitude)
        )
        logger.info("Created place %s at %.6f,%.6f for user %s", place.place_id, lat, lon, user)
        self.created.append(place)
        return place
