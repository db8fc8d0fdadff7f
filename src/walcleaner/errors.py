"""Exceptions raised by the WAL cleaner."""

from typing import Any, Dict, Optional


class WALCleanerError(Exception):
    """Base class for all cleaner errors."""


class WALError(WALCleanerError):
    """A WAL directory could not be interpreted."""


class NoSegmentsError(WALError):
    """The WAL directory exists but holds no segment files."""

    def __init__(self, wal_dir):
        super().__init__(f"unable to determine most recent segment for {wal_dir}")
        self.wal_dir = wal_dir


class WALCorruptionError(WALError):
    """Segment indices are not a contiguous sequence."""


class StorageCleanupError(WALCleanerError):
    """
    One or more abandoned directories could not be deleted.

    The first underlying failure is chained as ``__cause__``.
    """

    def __init__(self, message: str, failures: int, stats: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.failures = failures
        self.stats = stats or {}


class CleanerStoppedError(WALCleanerError, RuntimeError):
    """Reconciliation was requested on a cleaner that has been stopped."""
