"""
Tests for atomic write scopes.
"""

import threading
import time

import pytest

from worldstore.config import StoreConfig, WriteConfig, IndexConfig
from worldstore.storage.cancellation import CancellationToken
from worldstore.storage.errors import (
    ConstraintViolation,
    InvalidConfiguration,
    TransactionAborted,
    WriteScopeCancelled,
)
from worldstore.storage.terms import Literal, NamedNode, Quad
from worldstore.storage.transactions import TransactionState
from worldstore.store import QuadStore

EX = "http://example.org/"


def knows(a, b):
    return Quad(NamedNode(EX + a), NamedNode(EX + "knows"), NamedNode(EX + b))


class TestWriteScope:
    """Test commit and rollback."""

    def test_commit(self, store):
        """Operations in a scope are visible after it exits."""
        with store.write_scope() as scope:
            store.add_quad(knows("alice", "bob"))
            store.add_quad(knows("bob", "carol"))
            assert scope.state == TransactionState.ACTIVE

        assert scope.state == TransactionState.COMMITTED
        assert scope.stats.inserts == 2
        assert store.count() == 2

    def test_rollback_on_exception(self, store):
        """A failing scope undoes everything and reports the cause."""
        with pytest.raises(TransactionAborted) as exc_info:
            with store.write_scope() as scope:
                store.add_quad(knows("alice", "bob"))
                raise RuntimeError("Simulated error")

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert not exc_info.value.retryable
        assert scope.state == TransactionState.ABORTED
        assert store.count() == 0

    def test_domain_errors_pass_through(self, store):
        """Constraint violations keep their kind after rollback."""
        with pytest.raises(ConstraintViolation):
            with store.write_scope():
                store.add_quad(knows("alice", "bob"))
                store.add_quad(Quad(Literal("bad"), NamedNode(EX + "p"), Literal("o")))
        assert store.count() == 0

    def test_statement_without_its_chunk(self, store):
        """A scope failing between a statement and its chunk leaves neither."""
        with pytest.raises(InvalidConfiguration):
            with store.write_scope():
                sid = store.add_quad(knows("alice", "bob"))
                store.add_chunk(sid, "alice knows bob", [1.0, 2.0])

        assert store.count() == 0
        report = store.verify_indexes()
        assert report.chunk_ids == frozenset()
        assert report.fulltext_ids == frozenset()

    def test_embedder_failure_rolls_back(self, store):
        """An embedder error aborts the ingestion."""
        def broken(text):
            raise RuntimeError("embedding service down")

        with pytest.raises(TransactionAborted):
            store.add_quads(
                [Quad(NamedNode(EX + "a"), NamedNode(EX + "label"), Literal("tea"))],
                embed=broken,
            )
        assert store.count() == 0
        assert store.chunk_index.count() == 0

    def test_keyboard_interrupt_rolls_back(self, store):
        """Abandoned scopes roll back and re-raise unchanged."""
        with pytest.raises(KeyboardInterrupt):
            with store.write_scope():
                store.add_quad(knows("alice", "bob"))
                raise KeyboardInterrupt()
        assert store.count() == 0

    def test_nested_scopes_join(self, store):
        """An inner scope is the outer scope; its work rolls back with it."""
        with pytest.raises(TransactionAborted):
            with store.write_scope() as outer:
                with store.write_scope() as inner:
                    assert inner is outer
                    store.add_quad(knows("alice", "bob"))
                assert store.count() == 1
                raise RuntimeError("after inner scope")
        assert store.count() == 0

    def test_with_write_scope(self, store):
        """Work functions run atomically and return their result."""
        def work(s):
            s.add_quad(knows("alice", "bob"))
            return s.add_quad(knows("bob", "carol"))

        sid = store.with_write_scope(work)
        assert store.get_statement(sid) is not None
        assert store.count() == 2

    def test_scope_closed_after_exit(self, store):
        """A finished scope refuses further statements."""
        with store.write_scope() as scope:
            pass
        with pytest.raises(RuntimeError):
            scope.execute("SELECT 1")

    def test_stats(self, store):
        """The coordinator counts commits and aborts."""
        store.add_quad(knows("alice", "bob"))
        with pytest.raises(TransactionAborted):
            with store.write_scope():
                raise RuntimeError("boom")

        stats = store.coordinator.stats()
        assert stats["committed"] == 1
        assert stats["aborted"] == 1
        assert stats["last_scope"]["state"] == "ABORTED"


class TestCancellation:
    """Test cancellation and timeouts."""

    def test_cancelled_token(self, store):
        """Cancelling the token aborts the scope at its next statement."""
        token = CancellationToken()
        with pytest.raises(TransactionAborted) as exc_info:
            with store.write_scope(token=token):
                store.add_quad(knows("alice", "bob"))
                token.cancel("user abort")
                store.add_quad(knows("bob", "carol"))

        assert isinstance(exc_info.value.cause, WriteScopeCancelled)
        assert exc_info.value.retryable
        assert store.count() == 0

    def test_precancelled_token(self, store):
        """A scope whose token is already cancelled never begins."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(TransactionAborted):
            store.add_quads([knows("alice", "bob")], token=token)
        assert store.count() == 0

    def test_timeout(self, store):
        """A scope past its deadline rolls back instead of committing."""
        with pytest.raises(TransactionAborted) as exc_info:
            with store.write_scope(timeout=0.01):
                store.add_quad(knows("alice", "bob"))
                time.sleep(0.05)

        assert exc_info.value.retryable
        assert store.count() == 0

    def test_joined_scope_token_cancels_outer(self, store):
        """A token passed to a joined scope aborts the whole outer scope."""
        token = CancellationToken()

        def embed(text):
            token.cancel("caller gave up")
            return [1.0, 0.0, 0.0]

        with pytest.raises(TransactionAborted) as exc_info:
            with store.write_scope():
                store.add_quad(knows("alice", "bob"))
                store.add_quads(
                    [Quad(NamedNode(EX + "alice"), NamedNode(EX + "name"), Literal("Alice"))],
                    embed=embed,
                    token=token,
                )

        assert isinstance(exc_info.value.cause, WriteScopeCancelled)
        assert store.count() == 0
        assert store.chunk_index.count() == 0

    def test_joined_scope_token_cancelled_at_exit(self, store):
        """Cancelling a joined scope's token before it exits rolls back everything."""
        token = CancellationToken()
        with pytest.raises(TransactionAborted):
            with store.write_scope():
                store.add_quad(knows("alice", "bob"))
                with store.write_scope(token=token):
                    store.add_quad(knows("bob", "carol"))
                    token.cancel()
        assert store.count() == 0

    def test_joined_scope_timeout(self, store):
        """A joined scope's deadline applies while it runs."""
        with pytest.raises(TransactionAborted) as exc_info:
            with store.write_scope():
                store.add_quad(knows("alice", "bob"))
                with store.write_scope(timeout=0.01):
                    time.sleep(0.05)
                    store.add_quad(knows("bob", "carol"))
        assert exc_info.value.retryable
        assert store.count() == 0

    def test_joined_token_released_on_exit(self, store):
        """Once a joined scope finishes, its token no longer binds the outer one."""
        token = CancellationToken()
        with store.write_scope():
            with store.write_scope(token=token):
                store.add_quad(knows("alice", "bob"))
            token.cancel()
            store.add_quad(knows("bob", "carol"))
        assert store.count() == 2

    def test_token_deadline(self):
        """Tokens report their remaining time."""
        token = CancellationToken(timeout=60)
        assert not token.is_cancelled()
        assert 0 < token.remaining <= 60
        assert CancellationToken().remaining is None


class TestConcurrency:
    """Test serialization and isolation between threads."""

    @pytest.fixture
    def slow_store(self):
        config = StoreConfig(
            index=IndexConfig(embedding_dimensions=3),
            write=WriteConfig(lock_timeout_seconds=0.1),
        )
        s = QuadStore("slow", config=config)
        yield s
        s.close()

    def test_lock_timeout(self, slow_store):
        """A writer waiting too long for the lock gets a retryable abort."""
        holding = threading.Event()
        release = threading.Event()

        def hold():
            with slow_store.write_scope():
                slow_store.add_quad(knows("alice", "bob"))
                holding.set()
                release.wait(5)

        t = threading.Thread(target=hold)
        t.start()
        holding.wait(5)
        try:
            with pytest.raises(TransactionAborted) as exc_info:
                slow_store.add_quad(knows("bob", "carol"))
            assert exc_info.value.retryable
        finally:
            release.set()
            t.join()

        assert slow_store.count() == 1

    def test_readers_see_whole_states(self, store):
        """A reader never observes a half-applied scope."""
        in_scope = threading.Event()
        proceed = threading.Event()
        observed = []

        def write():
            with store.write_scope():
                store.add_quad(knows("alice", "bob"))
                in_scope.set()
                proceed.wait(5)
                store.add_quad(knows("bob", "carol"))

        def read():
            observed.append(store.count())

        writer = threading.Thread(target=write)
        writer.start()
        in_scope.wait(5)

        reader = threading.Thread(target=read)
        reader.start()
        reader.join(0.1)
        assert observed == []

        proceed.set()
        writer.join()
        reader.join()
        assert observed == [2]

    def test_concurrent_writers_serialize(self, store):
        """Parallel ingestion loses nothing."""
        def ingest(n):
            for i in range(20):
                store.add_quad(knows(f"w{n}", f"p{i}"))

        threads = [threading.Thread(target=ingest, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.count() == 80


class TestCommitListeners:
    """Test invalidation callbacks."""

    def test_listener_per_commit(self, store):
        """Listeners get the world id once per committed write."""
        events = []
        store.add_commit_listener(events.append)

        store.add_quad(knows("alice", "bob"))
        with store.write_scope():
            store.add_quad(knows("bob", "carol"))
            store.add_quad(knows("carol", "dave"))

        assert events == ["test-world", "test-world"]

    def test_no_event_without_change(self, store):
        """Duplicates and rollbacks do not notify."""
        store.add_quad(knows("alice", "bob"))
        events = []
        store.add_commit_listener(events.append)

        store.add_quad(knows("alice", "bob"))
        with pytest.raises(TransactionAborted):
            with store.write_scope():
                store.add_quad(knows("x", "y"))
                raise RuntimeError("boom")

        assert events == []

    def test_broken_listener(self, store):
        """A failing listener does not undo the commit."""
        def broken(world_id):
            raise RuntimeError("listener bug")

        store.add_commit_listener(broken)
        store.add_quad(knows("alice", "bob"))
        assert store.count() == 1

    def test_remove_listener(self, store):
        """Removed listeners stop receiving events."""
        events = []
        store.add_commit_listener(events.append)
        store.remove_commit_listener(events.append)
        store.add_quad(knows("alice", "bob"))
        assert events == []
