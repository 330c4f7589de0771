from __future__ import annotations

import pytest

from path_timeline.pipeline import LocationPipeline
from path_timeline.store import TimelineStore


@pytest.fixture
def store() -> TimelineStore:
    return TimelineStore()


@pytest.fixture
def pipeline(store: TimelineStore) -> LocationPipeline:
    return LocationPipeline(store)
