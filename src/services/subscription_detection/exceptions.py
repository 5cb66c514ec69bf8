"""
Exceptions raised by subscription detection.

Storage failures surface as ``utils.db.base.StorageError`` and are re-exported
here so callers can catch every detection failure from one module.
"""

from typing import Optional

from utils.db.base import StorageError


class DetectionError(Exception):
    """Base class for subscription detection errors."""
    pass


class DataError(DetectionError):
    """A single transaction is malformed (missing date or amount); it is skipped."""

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class InvalidInputError(DetectionError):
    """The input of a run is unusable as a whole, e.g. a missing or empty transaction set."""
    pass


class DetectionCancelled(DetectionError):
    """The run was cancelled by its caller; nothing past the cancellation point was committed."""

    def __init__(self, user_id: str, committed: int = 0):
        super().__init__(f"Detection run for user {user_id} cancelled after {committed} commits")
        self.user_id = user_id
        self.committed = committed


__all__ = [
    'DetectionError',
    'DataError',
    'InvalidInputError',
    'DetectionCancelled',
    'StorageError',
]
