"""
Error types raised by the document store and the rollover engine.
"""

from __future__ import annotations


class RolloverError(Exception):
    """Base class for rollover failures."""


class TransientStoreError(RolloverError):
    """A store read or write failed for a reason other than a missing document."""


class VersionConflictError(TransientStoreError):
    """A guarded write found a different document version than the one read."""

    def __init__(self, collection: str, key: str, expected: int, actual: int | None):
        self.collection = collection
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{collection}/{key}: expected version {expected}, found {actual}"
        )


class BestEffortWriteFailure(RolloverError):
    """Persisting updated counters failed; the rollover itself still succeeds."""
