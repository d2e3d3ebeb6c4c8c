"""
Atomic write scopes for a world's database.

Provides transactional semantics with:
- Atomicity: every mutation in a scope commits together or not at all
- Serialization: write scopes on one world never interleave
- Isolation: readers take the same lock and see whole states only
- Cancellation: an abandoned or timed-out scope rolls back like a failed one

Worlds own separate databases and coordinators, so scopes on different
worlds never wait for each other.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum, auto
from typing import Any, Callable, Generator, Iterable, List, Optional, TypeVar

from worldstore.storage.cancellation import CancellationToken
from worldstore.storage.errors import (
    ConstraintViolation,
    InvalidConfiguration,
    NotFound,
    TransactionAborted,
    WriteScopeCancelled,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite VM instructions between cancellation checks
PROGRESS_INTERVAL = 1000


class TransactionState(IntEnum):
    """Write scope lifecycle states."""
    PENDING = auto()      # Created, lock not yet held
    ACTIVE = auto()       # In progress
    COMMITTED = auto()    # Successfully completed
    ABORTED = auto()      # Rolled back
    FAILED = auto()       # Error during commit


@dataclass
class ScopeStats:
    """Statistics for a write scope."""
    scope_id: int
    start_time: float
    end_time: Optional[float] = None
    inserts: int = 0
    deletes: int = 0
    chunk_writes: int = 0
    state: TransactionState = TransactionState.PENDING

    @property
    def duration_ms(self) -> float:
        """Scope duration in milliseconds."""
        end = self.end_time or time.time()
        return (end - self.start_time) * 1000

    @property
    def mutated(self) -> bool:
        return bool(self.inserts or self.deletes or self.chunk_writes)

    def to_dict(self) -> dict:
        return {
            "scope_id": self.scope_id,
            "state": self.state.name,
            "inserts": self.inserts,
            "deletes": self.deletes,
            "chunk_writes": self.chunk_writes,
            "duration_ms": self.duration_ms,
        }


class WriteScope:
    """
    An open write transaction on one world.

    Usage:
        with coordinator.write_scope() as scope:
            scope.execute("INSERT ...", params)
        # commits on clean exit, rolls back on any exception
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        world_id: str,
        scope_id: int,
        tokens: Iterable[CancellationToken] = (),
    ):
        self._conn = conn
        self._world_id = world_id
        self._tokens = [t for t in tokens if t is not None]
        self._state = TransactionState.PENDING
        self._stats = ScopeStats(scope_id=scope_id, start_time=time.time())

    @property
    def scope_id(self) -> int:
        return self._stats.scope_id

    @property
    def world_id(self) -> str:
        return self._world_id

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def stats(self) -> ScopeStats:
        return self._stats

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def _set_state(self, state: TransactionState) -> None:
        self._state = state
        self._stats.state = state
        if state not in (TransactionState.PENDING, TransactionState.ACTIVE):
            self._stats.end_time = time.time()

    def _push_tokens(self, tokens: Iterable[Optional[CancellationToken]]) -> List[CancellationToken]:
        added = [t for t in tokens if t is not None]
        self._tokens.extend(added)
        return added

    def _pop_tokens(self, tokens: List[CancellationToken]) -> None:
        for token in tokens:
            self._tokens.remove(token)

    def is_cancelled(self) -> bool:
        return any(t.is_cancelled() for t in self._tokens)

    def check(self) -> None:
        """Raise WriteScopeCancelled if any token was cancelled or expired."""
        for token in self._tokens:
            token.check()

    def execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        if self._state != TransactionState.ACTIVE:
            raise RuntimeError(
                f"Write scope {self.scope_id} is {self._state.name}, not ACTIVE"
            )
        self.check()
        return self._conn.execute(sql, params)

    def executemany(self, sql: str, seq: Iterable[Any]) -> sqlite3.Cursor:
        if self._state != TransactionState.ACTIVE:
            raise RuntimeError(
                f"Write scope {self.scope_id} is {self._state.name}, not ACTIVE"
            )
        self.check()
        return self._conn.executemany(sql, seq)

    def record(self, inserts: int = 0, deletes: int = 0, chunk_writes: int = 0) -> None:
        self._stats.inserts += inserts
        self._stats.deletes += deletes
        self._stats.chunk_writes += chunk_writes


class TransactionCoordinator:
    """
    Serializes and atomically applies write scopes for one world.

    Features:
    - Re-entrant: a scope opened while the same thread already holds one
      joins the outer scope
    - Lock wait bounded by lock_timeout (retryable TransactionAborted)
    - Commit listeners receive the world id after every committed scope
      that changed something
    - Reset hooks run after every commit and rollback
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        world_id: str,
        lock_timeout: Optional[float] = 30.0,
        scope_timeout: Optional[float] = None,
    ):
        """
        Args:
            conn: Autocommit-mode connection to the world's database
            world_id: World this coordinator guards
            lock_timeout: Seconds to wait for the write lock (None = forever)
            scope_timeout: Default deadline for write scopes (None = none)
        """
        self._conn = conn
        self._world_id = world_id
        self._lock_timeout = lock_timeout
        self._scope_timeout = scope_timeout

        self._lock = threading.RLock()
        self._owner: Optional[int] = None
        self._active: Optional[WriteScope] = None
        self._next_scope_id = 1

        self._commit_listeners: List[Callable[[str], None]] = []
        self._reset_hooks: List[Callable[[], None]] = []

        self._committed = 0
        self._aborted = 0
        self._last_stats: Optional[ScopeStats] = None

    @property
    def world_id(self) -> str:
        return self._world_id

    @property
    def active_scope(self) -> Optional[WriteScope]:
        """The scope held by the calling thread, if any."""
        if self._active is not None and self._owner == threading.get_ident():
            return self._active
        return None

    def add_commit_listener(self, listener: Callable[[str], None]) -> None:
        self._commit_listeners.append(listener)

    def remove_commit_listener(self, listener: Callable[[str], None]) -> None:
        if listener in self._commit_listeners:
            self._commit_listeners.remove(listener)

    def add_reset_hook(self, hook: Callable[[], None]) -> None:
        self._reset_hooks.append(hook)

    @contextmanager
    def read_scope(self) -> Generator[sqlite3.Connection, None, None]:
        """Hold the world lock for a consistent read."""
        with self._lock:
            yield self._conn

    @contextmanager
    def write_scope(
        self,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Generator[WriteScope, None, None]:
        """
        Open (or join) a write scope.

        Args:
            timeout: Seconds the scope may run before it is rolled back
            token: Caller-held token for cancelling the scope

        Raises:
            ConstraintViolation, NotFound, InvalidConfiguration: re-raised
                unchanged after rollback
            TransactionAborted: any other failure, carrying the cause
        """
        current = self.active_scope
        if current is not None:
            # A joined scope's token and deadline bind the outer scope while it runs
            deadline = CancellationToken(timeout) if timeout is not None else None
            added = current._push_tokens((token, deadline))
            try:
                yield current
                for extra in added:
                    extra.check()
            finally:
                current._pop_tokens(added)
            return

        if timeout is None:
            timeout = self._scope_timeout
        deadline = CancellationToken(timeout) if timeout is not None else None

        wait = -1 if self._lock_timeout is None else self._lock_timeout
        if not self._lock.acquire(timeout=wait):
            raise TransactionAborted(
                f"Timed out waiting for the write lock on world {self._world_id}",
                cause=TimeoutError(f"lock wait exceeded {self._lock_timeout}s"),
            )

        try:
            scope = WriteScope(
                self._conn,
                self._world_id,
                self._next_scope_id,
                tokens=(token, deadline),
            )
            self._next_scope_id += 1
            self._owner = threading.get_ident()
            self._active = scope
            self._conn.set_progress_handler(
                lambda: 1 if scope.is_cancelled() else 0, PROGRESS_INTERVAL
            )

            try:
                scope.check()
                self._conn.execute("BEGIN IMMEDIATE")
                scope._set_state(TransactionState.ACTIVE)
                yield scope
                scope.check()
            except BaseException as e:
                self._rollback(scope, e)
                self._raise_translated(scope, e)

            try:
                self._conn.execute("COMMIT")
            except Exception as e:
                scope._set_state(TransactionState.FAILED)
                self._rollback(scope, e)
                self._raise_translated(scope, e)

            scope._set_state(TransactionState.COMMITTED)
            self._committed += 1
            self._last_stats = scope.stats
            logger.debug(f"World {self._world_id}: committed scope {scope.stats.to_dict()}")
            self._run_reset_hooks()
        finally:
            self._conn.set_progress_handler(None, 0)
            self._active = None
            self._owner = None
            self._lock.release()

        if scope.stats.mutated:
            self._notify(scope)

    def with_write_scope(
        self,
        work: Callable[[WriteScope], T],
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> T:
        """Run ``work(scope)`` inside a write scope and return its result."""
        with self.write_scope(timeout=timeout, token=token) as scope:
            return work(scope)

    def _rollback(self, scope: WriteScope, error: BaseException) -> None:
        try:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception(f"World {self._world_id}: rollback of scope {scope.scope_id} failed")
        if scope.state != TransactionState.FAILED:
            scope._set_state(TransactionState.ABORTED)
        self._aborted += 1
        self._last_stats = scope.stats
        logger.warning(
            f"World {self._world_id}: rolled back scope {scope.scope_id} "
            f"({type(error).__name__}: {error})"
        )
        self._run_reset_hooks()

    def _raise_translated(self, scope: WriteScope, error: BaseException) -> None:
        if not isinstance(error, Exception):
            raise error
        if isinstance(error, (ConstraintViolation, NotFound, InvalidConfiguration, TransactionAborted)):
            raise error
        if isinstance(error, sqlite3.IntegrityError):
            raise ConstraintViolation(str(error)) from error

        cause: BaseException = error
        if isinstance(error, sqlite3.OperationalError) and scope.is_cancelled():
            try:
                scope.check()
            except WriteScopeCancelled as cancelled:
                cause = cancelled
        raise TransactionAborted(
            f"Write scope {scope.scope_id} on world {self._world_id} aborted: {cause}",
            cause=cause,
        ) from error

    def _run_reset_hooks(self) -> None:
        for hook in self._reset_hooks:
            hook()

    def _notify(self, scope: WriteScope) -> None:
        for listener in list(self._commit_listeners):
            try:
                listener(self._world_id)
            except Exception:
                # The scope is already committed; a broken listener cannot undo it
                logger.exception(f"World {self._world_id}: commit listener failed")

    def stats(self) -> dict:
        """Get coordinator statistics."""
        return {
            "world_id": self._world_id,
            "committed": self._committed,
            "aborted": self._aborted,
            "active": self._active is not None,
            "last_scope": self._last_stats.to_dict() if self._last_stats else None,
        }
