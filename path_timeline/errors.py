"""Error taxonomy of the location processing pipeline.

Every failure that leaves the pipeline is one of these; storage-layer exceptions
(``OSError``, ``json.JSONDecodeError``) are wrapped before they reach callers.
"""

from __future__ import annotations


class TimelineError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False


class DataError(TimelineError):
    """A single malformed point (missing timestamp/coordinates, out-of-range values).

    Rejected on its own; the rest of the batch continues.
    """


class ConflictError(TimelineError):
    """Stale ``version`` on update: re-fetch and retry the affected window."""

    retryable = True

    def __init__(self, kind: str, entity_id: int, expected: int, actual: int | None) -> None:
        self.kind = kind
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"stale {kind} {entity_id}: expected version {expected}, store has {actual}"
        )


class ConfigurationError(TimelineError):
    """Detection parameters missing or invalid; callers fall back to defaults."""


class GeocodingUnavailable(TimelineError):
    """Reverse geocoding failed. Non-fatal, the place stays un-geocoded."""

    retryable = True


class RecalculationWindowError(TimelineError):
    """The affected window contains no data. Handled as a no-op."""


class StorageError(TimelineError):
    """Store snapshot could not be read or written."""

    retryable = True
