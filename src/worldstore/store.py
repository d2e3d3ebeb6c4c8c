"""
QuadStore: the statement and chunk store of one world.

Wires the storage components over a single SQLite database:

    quads -> Skolemizer -> Term Codec -> write scope
          -> Statement Table + Chunk/Index Sync Engine -> commit / rollback
          -> commit listeners (world id)

Reads hydrate the graph engine (wake, N-Quads export, Polars frames) and
serve hybrid search over the chunks.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, Iterator, List, Optional, Sequence, TypeVar, Union

import polars as pl
import pyoxigraph as ox

from worldstore.config import ConfigValidator, StoreConfig
from worldstore.storage.cancellation import CancellationToken
from worldstore.storage.cascade import CascadingDelete, DeleteResult
from worldstore.storage.chunks import Chunk, ChunkIndex, IndexReport
from worldstore.storage.errors import ConstraintViolation, NotFound, WorldStoreError
from worldstore.storage.ranking import HybridRanker, SearchResult
from worldstore.storage.schema import connect, init_world_schema
from worldstore.storage.skolem import Skolemizer
from worldstore.storage.statements import InsertResult, StatementTable
from worldstore.storage.terms import (
    Literal,
    Quad,
    Statement,
    Term,
    quad_from_oxigraph,
    quad_to_oxigraph,
)
from worldstore.storage.transactions import TransactionCoordinator, WriteScope

logger = logging.getLogger(__name__)

T = TypeVar("T")

EmbedFn = Callable[[str], Sequence[float]]


class QuadStore:
    """
    Quads, chunks and hybrid search for one world.

    Usage:
        store = QuadStore("w1")
        store.add_nquads('<http://ex/a> <http://ex/p> "tea" .')
        store.search(query_text="tea")
        store.remove_statements(None)
    """

    def __init__(
        self,
        world_id: str = "default",
        path: Optional[Union[str, Path]] = None,
        config: Optional[StoreConfig] = None,
    ):
        """
        Args:
            world_id: World this store holds
            path: Database file (None = private in-memory database)
            config: Store configuration (defaults if omitted)
        """
        self.config = config or StoreConfig()
        ConfigValidator.validate_or_raise(self.config)

        self._world_id = world_id
        self._path = Path(path) if path is not None else None
        self._closed = False
        self._retired = False

        self._conn = connect(self._path, busy_timeout_ms=self.config.write.busy_timeout_ms)
        try:
            init_world_schema(self._conn)
        except Exception:
            self._conn.close()
            raise

        self._coordinator = TransactionCoordinator(
            self._conn,
            world_id,
            lock_timeout=self.config.write.lock_timeout_seconds,
            scope_timeout=self.config.write.scope_timeout_seconds,
        )
        self._chunks = ChunkIndex(self._coordinator, self.config.index.embedding_dimensions)
        self._cascade = CascadingDelete(self._coordinator, self._chunks)
        self._statements = StatementTable(self._coordinator, self._cascade)
        self._ranker = HybridRanker(
            self._chunks,
            k_constant=self.config.search.rrf_k,
            candidate_limit=self.config.search.candidate_limit,
        )

        logger.info(f"Opened world {world_id} ({self._path or 'in-memory'})")

    @property
    def world_id(self) -> str:
        return self._world_id

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def retired(self) -> bool:
        return self._retired

    @property
    def coordinator(self) -> TransactionCoordinator:
        return self._coordinator

    @property
    def chunk_index(self) -> ChunkIndex:
        return self._chunks

    def _ensure_open(self) -> None:
        if self._closed:
            raise WorldStoreError(f"Store for world {self._world_id} is closed")

    def _ensure_writable(self) -> None:
        self._ensure_open()
        if self._retired:
            raise NotFound(f"World '{self._world_id}' is deleted")

    def retire(self) -> None:
        """Refuse writes until reinstated; used while the world is soft-deleted."""
        with self._coordinator.read_scope():
            self._retired = True
        logger.info(f"Retired world {self._world_id}")

    def reinstate(self) -> None:
        with self._coordinator.read_scope():
            self._retired = False

    # =========================================================================
    # Ingestion
    # =========================================================================

    @staticmethod
    def _normalize(quad: Any, skolemizer: Skolemizer) -> Quad:
        if isinstance(quad, Quad):
            return skolemizer.skolemize_quad(quad)
        if isinstance(quad, (ox.Quad, ox.Triple)):
            return quad_from_oxigraph(quad, skolemizer)
        raise ConstraintViolation(f"Expected a Quad or pyoxigraph Quad/Triple, got {type(quad).__name__}")

    def add_quads(
        self,
        quads: Iterable[Any],
        embed: Optional[EmbedFn] = None,
        chunk_literals: Optional[bool] = None,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> InsertResult:
        """
        Insert quads atomically.

        Blank nodes are skolemized with a Skolemizer private to this call, so
        one label names one node within the call only. Internal BlankNode
        values already minted under the configured authority keep their
        identity; any other blank value is treated as a local label. Each
        newly inserted statement with a literal object gets one chunk whose
        content is the literal's lexical form.

        Args:
            quads: Internal Quads or pyoxigraph Quads/Triples
            embed: Optional ``text -> vector`` function for chunk embeddings
            chunk_literals: Override of ``index.chunk_literals``
            timeout: Seconds the write may run before it is rolled back
            token: Cancellation token for the write

        Returns:
            InsertResult with inserted/duplicate counts and statement ids
        """
        self._ensure_writable()
        skolemizer = Skolemizer(self.config.skolem_authority)
        normalized = [self._normalize(q, skolemizer) for q in quads]
        if chunk_literals is None:
            chunk_literals = self.config.index.chunk_literals

        with self._coordinator.write_scope(timeout=timeout, token=token) as scope:
            result = self._statements.insert_many(normalized)
            if chunk_literals and result.new_ids:
                self._chunk_new_literals(scope, normalized, result, embed)

        if len(skolemizer):
            logger.debug(f"World {self._world_id}: skolemized {len(skolemizer)} blank nodes")
        return result

    def _chunk_new_literals(
        self,
        scope: WriteScope,
        quads: List[Quad],
        result: InsertResult,
        embed: Optional[EmbedFn],
    ) -> None:
        new_ids = set(result.new_ids)
        chunked = set()
        for statement_id, quad in zip(result.statement_ids, quads):
            if statement_id not in new_ids or statement_id in chunked:
                continue
            if not isinstance(quad.object, Literal):
                continue
            scope.check()
            content = quad.object.value
            embedding = embed(content) if embed is not None else None
            self._chunks.insert(statement_id, content, embedding)
            chunked.add(statement_id)

    def add_quad(self, quad: Any, embed: Optional[EmbedFn] = None) -> int:
        """Insert one quad and return its statement id (existing id for duplicates)."""
        return self.add_quads([quad], embed=embed).statement_ids[0]

    def add_nquads(
        self,
        data: Union[str, bytes],
        format: Optional[ox.RdfFormat] = None,
        embed: Optional[EmbedFn] = None,
        base_iri: Optional[str] = None,
    ) -> InsertResult:
        """
        Parse RDF text (N-Quads by default) and insert it as one write.

        Raises:
            ConstraintViolation: the input does not parse
        """
        self._ensure_writable()
        fmt = format or ox.RdfFormat.N_QUADS
        try:
            parsed = list(ox.parse(data, format=fmt, base_iri=base_iri))
        except SyntaxError as e:
            raise ConstraintViolation(f"Invalid {fmt} input: {e}") from e
        return self.add_quads(parsed, embed=embed)

    # =========================================================================
    # Statements
    # =========================================================================

    def get_statements(self, graph: Union[str, Term, None] = None) -> List[Statement]:
        """Statements of one graph (None = default graph), ordered by id."""
        self._ensure_open()
        return self._statements.get_by_graph(graph)

    def get_statement(self, statement_id: Union[int, str, None]) -> Optional[Statement]:
        self._ensure_open()
        return self._statements.get_by_id(statement_id)

    def find(
        self,
        subject: Union[str, Term, None] = None,
        predicate: Union[str, Term, None] = None,
        obj: Optional[Term] = None,
        graph: Union[str, Term, None] = None,
    ) -> List[Statement]:
        self._ensure_open()
        return self._statements.find(subject, predicate, obj, graph)

    def statements(self) -> List[Statement]:
        """Every statement of the world, ordered by id."""
        self._ensure_open()
        return self._statements.all()

    def wake(self) -> List[Statement]:
        """Full statement enumeration used to hydrate the graph engine."""
        statements = self.statements()
        logger.debug(f"World {self._world_id}: woke with {len(statements)} statements")
        return statements

    def graphs(self) -> List[str]:
        self._ensure_open()
        return self._statements.graphs()

    def count(self, graph: Union[str, Term, None] = None) -> int:
        self._ensure_open()
        return self._statements.count(graph)

    def remove_statements(self, graph: Union[str, Term, None] = None) -> DeleteResult:
        """Delete every statement of one graph (None = default graph), cascading."""
        self._ensure_writable()
        return self._statements.delete_by_graph(graph)

    def remove_statement(self, statement_id: Union[int, str, None]) -> DeleteResult:
        self._ensure_writable()
        return self._statements.delete_by_id(statement_id)

    def remove_subject(self, subject: Union[str, Term]) -> DeleteResult:
        self._ensure_writable()
        return self._statements.delete_by_subject(subject)

    # =========================================================================
    # Chunks
    # =========================================================================

    def add_chunk(
        self,
        statement_id: Optional[int],
        content: Optional[str],
        embedding: Optional[Sequence[float]] = None,
    ) -> int:
        self._ensure_writable()
        return self._chunks.insert(statement_id, content, embedding)

    def update_chunk(self, chunk_id: int, **changes) -> Chunk:
        """Update ``content`` and/or ``embedding`` of a chunk and reindex it."""
        self._ensure_writable()
        return self._chunks.update(chunk_id, **changes)

    def remove_chunk(self, chunk_id: int) -> bool:
        self._ensure_writable()
        return self._chunks.delete(chunk_id)

    def get_chunk(self, chunk_id: int) -> Optional[Chunk]:
        self._ensure_open()
        return self._chunks.get(chunk_id)

    def get_chunks(self, statement_id: int) -> List[Chunk]:
        self._ensure_open()
        return self._chunks.for_statement(statement_id)

    def search(
        self,
        query_text: Optional[str] = None,
        query_vector: Optional[Sequence[float]] = None,
        limit: Optional[int] = None,
        k: Optional[float] = None,
    ) -> List[SearchResult]:
        """Hybrid keyword + vector search fused with Reciprocal Rank Fusion."""
        self._ensure_open()
        return self._ranker.search(
            query_text=query_text,
            query_vector=query_vector,
            k_constant=k,
            limit=self.config.search.default_limit if limit is None else limit,
        )

    def verify_indexes(self) -> IndexReport:
        self._ensure_open()
        return self._chunks.verify()

    # =========================================================================
    # Write scopes
    # =========================================================================

    @contextmanager
    def write_scope(
        self,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Generator[WriteScope, None, None]:
        """
        Group several store operations into one atomic write.

        Usage:
            with store.write_scope():
                store.add_quads(batch)
                store.remove_statement(old_id)
        """
        self._ensure_writable()
        with self._coordinator.write_scope(timeout=timeout, token=token) as scope:
            yield scope

    def with_write_scope(
        self,
        work: Callable[["QuadStore"], T],
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> T:
        """Run ``work(store)`` as one atomic write and return its result."""
        with self.write_scope(timeout=timeout, token=token):
            return work(self)

    def add_commit_listener(self, listener: Callable[[str], None]) -> None:
        self._coordinator.add_commit_listener(listener)

    def remove_commit_listener(self, listener: Callable[[str], None]) -> None:
        self._coordinator.remove_commit_listener(listener)

    # =========================================================================
    # Export
    # =========================================================================

    def to_polars(self, graph: Union[str, Term, None] = None) -> pl.DataFrame:
        """Statements as a DataFrame (all graphs when graph is None)."""
        self._ensure_open()
        return self._statements.to_polars(graph)

    def to_oxigraph_quads(self, graph: Union[str, Term, None] = None) -> Iterator[ox.Quad]:
        self._ensure_open()
        statements = self._statements.all() if graph is None else self._statements.get_by_graph(graph)
        for statement in statements:
            yield quad_to_oxigraph(statement)

    def export_nquads(self, graph: Union[str, Term, None] = None) -> str:
        """Serialize statements (all graphs when graph is None) as N-Quads."""
        data = ox.serialize(list(self.to_oxigraph_quads(graph)), format=ox.RdfFormat.N_QUADS)
        return data.decode("utf-8") if data else ""

    def stats(self) -> dict:
        """Get store statistics."""
        self._ensure_open()
        return {
            "world_id": self._world_id,
            "path": str(self._path) if self._path else None,
            "retired": self._retired,
            "statements": self._statements.count(),
            "graphs": len(self._statements.graphs()),
            "chunks": self._chunks.count(),
            "indexes": self._chunks.verify().to_dict(),
            "transactions": self._coordinator.stats(),
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Close the database connection. Safe to call twice."""
        if self._closed:
            return
        with self._coordinator.read_scope():
            self._conn.close()
            self._closed = True
        logger.info(f"Closed world {self._world_id}")

    def __enter__(self) -> "QuadStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"QuadStore(world_id={self._world_id!r}, path={self._path!r})"
