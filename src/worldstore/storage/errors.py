"""
Error kinds raised by the worldstore storage layer.

Callers get a specific kind so retry logic can tell transient storage
failures (retryable) from invariant violations (fix the input first).
"""

from __future__ import annotations

import sqlite3
from typing import Optional


class WorldStoreError(Exception):
    """Base class for all worldstore errors."""
    pass


class NotFound(WorldStoreError, LookupError):
    """An operation required a row (world, statement, chunk) that does not exist."""
    pass


class ConstraintViolation(WorldStoreError, ValueError):
    """A write would break a structural invariant of the store."""
    pass


class InvalidConfiguration(WorldStoreError, ValueError):
    """A configuration value or request parameter is unusable."""
    pass


class WriteScopeCancelled(WorldStoreError):
    """A write scope was cancelled or ran past its deadline."""
    pass


class TransactionAborted(WorldStoreError):
    """
    A write scope failed and was rolled back.

    Attributes:
        cause: The exception that aborted the scope
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def retryable(self) -> bool:
        """True when the failure was transient (lock contention, timeout, cancellation)."""
        cause = self.cause
        if isinstance(cause, (WriteScopeCancelled, TimeoutError)):
            return True
        if isinstance(cause, sqlite3.OperationalError):
            msg = str(cause).lower()
            return "locked" in msg or "busy" in msg or "interrupted" in msg
        return False
