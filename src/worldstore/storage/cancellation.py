"""
Cooperative cancellation for write scopes.

A caller that abandons a write (timeout, shutdown, user abort) cancels its
token; the transaction coordinator notices at the next SQLite progress
callback or scope checkpoint and rolls the scope back.
"""

from __future__ import annotations

import time
from threading import Event
from typing import Optional

from worldstore.storage.errors import WriteScopeCancelled


class CancellationToken:
    """
    Token for cooperative cancellation, with an optional deadline.

    Usage:
        token = CancellationToken(timeout=5.0)
        with store.write_scope(token=token) as scope:
            ...
        # another thread may call token.cancel() at any time
    """

    def __init__(self, timeout: Optional[float] = None):
        self._cancelled = Event()
        self._reason = "Write scope was cancelled"
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation."""
        if reason:
            self._reason = reason
        self._cancelled.set()

    @property
    def expired(self) -> bool:
        """True once the deadline (if any) has passed."""
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def is_cancelled(self) -> bool:
        """Check if cancellation was requested or the deadline passed."""
        return self._cancelled.is_set() or self.expired

    def check(self) -> None:
        """Raise WriteScopeCancelled if cancelled or expired."""
        if self._cancelled.is_set():
            raise WriteScopeCancelled(self._reason)
        if self.expired:
            raise WriteScopeCancelled("Write scope exceeded its timeout")
