"""
Chunk/Index Sync Engine.

Owns the chunk table and the two derived indexes:
- kb_chunks_fts: FTS5 full-text index, rowid = chunk_id, one row per chunk
- kb_chunks_vec: vector index, one row per chunk that has an embedding

Every chunk mutation writes the table and both indexes in the same write
scope, so an index failure rolls back the table change too. Content updates
are unindex-then-reindex, never in-place index edits. Nothing else in the
package touches the index tables.

Vector similarity runs in numpy over a matrix cached from kb_chunks_vec.
The cache is dropped on every index mutation and after every commit or
rollback, so it never outlives the rows it was built from.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Generator, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from worldstore.storage.errors import ConstraintViolation, InvalidConfiguration, NotFound
from worldstore.storage.schema import parse_row_id

if TYPE_CHECKING:
    import sqlite3

    from worldstore.storage.transactions import TransactionCoordinator, WriteScope

logger = logging.getLogger(__name__)

BATCH_SIZE = 500

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

# Marks "leave this field unchanged" in update()
_UNSET = object()


@dataclass(frozen=True)
class Chunk:
    """A text fragment derived from a statement."""
    chunk_id: int
    statement_id: Optional[int]
    content: Optional[str]
    embedding: Optional[Tuple[float, ...]] = None


@dataclass(frozen=True)
class IndexReport:
    """Chunk ids present in the table and in each index."""
    chunk_ids: frozenset
    fulltext_ids: frozenset
    vector_ids: frozenset
    embedded_ids: frozenset

    @property
    def consistent(self) -> bool:
        return self.chunk_ids == self.fulltext_ids and self.vector_ids == self.embedded_ids

    def to_dict(self) -> dict:
        return {
            "chunks": len(self.chunk_ids),
            "fulltext": len(self.fulltext_ids),
            "vector": len(self.vector_ids),
            "consistent": self.consistent,
        }


def build_match_query(text: str) -> str:
    """
    Turn free text into an FTS5 MATCH expression.

    Each token is quoted (so FTS5 operators in user text are inert) and the
    tokens are OR-ed together.
    """
    seen: Dict[str, None] = {}
    for token in _TOKEN_RE.findall(text.lower()):
        seen.setdefault(token, None)
    return " OR ".join(f'"{token}"' for token in seen)


class ChunkIndex:
    """
    Chunk table plus full-text and vector indexes, kept in lockstep.

    Usage:
        chunk_id = index.insert(statement_id, "Alice likes tea", embedding)
        index.update(chunk_id, content="Alice likes coffee")
        index.fulltext_ranks("coffee", limit=10)
        index.vector_ranks(query_vector, limit=10)
    """

    def __init__(self, coordinator: "TransactionCoordinator", dimensions: int):
        if dimensions < 1:
            raise InvalidConfiguration(f"Embedding dimensions must be positive, got {dimensions}")
        self._coordinator = coordinator
        self._dimensions = dimensions
        self._matrix: Optional[np.ndarray] = None
        self._matrix_ids: Optional[np.ndarray] = None
        self._norms: Optional[np.ndarray] = None
        coordinator.add_reset_hook(self._invalidate)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @contextmanager
    def read_scope(self) -> Generator["sqlite3.Connection", None, None]:
        with self._coordinator.read_scope() as conn:
            yield conn

    def _invalidate(self) -> None:
        self._matrix = None
        self._matrix_ids = None
        self._norms = None

    def _as_vector(self, embedding: Sequence[float]) -> np.ndarray:
        vec = np.asarray(embedding, dtype=np.float32)
        if vec.ndim != 1 or vec.shape[0] != self._dimensions:
            raise InvalidConfiguration(
                f"Expected a {self._dimensions}-dimensional vector, got shape {vec.shape}"
            )
        if not np.all(np.isfinite(vec)):
            raise ConstraintViolation("Embedding contains non-finite values")
        return vec

    def _encode(self, embedding: Optional[Sequence[float]]) -> Optional[bytes]:
        if embedding is None:
            return None
        return self._as_vector(embedding).astype("<f4").tobytes()

    @staticmethod
    def _decode(blob: Optional[bytes]) -> Optional[Tuple[float, ...]]:
        if blob is None:
            return None
        return tuple(np.frombuffer(blob, dtype="<f4").tolist())

    # ── Index maintenance (only ever called inside a write scope) ─────

    def _index(self, scope: "WriteScope", chunk_id: int, content: Optional[str], blob: Optional[bytes]) -> None:
        scope.execute(
            "INSERT INTO kb_chunks_fts (rowid, content) VALUES (?, ?)",
            (chunk_id, content or ""),
        )
        if blob is not None:
            scope.execute(
                "INSERT INTO kb_chunks_vec (chunk_id, embedding) VALUES (?, ?)",
                (chunk_id, blob),
            )
        self._invalidate()

    def _unindex(self, scope: "WriteScope", chunk_ids: Sequence[int]) -> None:
        for start in range(0, len(chunk_ids), BATCH_SIZE):
            batch = list(chunk_ids[start:start + BATCH_SIZE])
            placeholders = ",".join("?" * len(batch))
            scope.execute(f"DELETE FROM kb_chunks_fts WHERE rowid IN ({placeholders})", batch)
            scope.execute(f"DELETE FROM kb_chunks_vec WHERE chunk_id IN ({placeholders})", batch)
        self._invalidate()

    # ── Mutations ─────────────────────────────────────────────────────

    def insert(
        self,
        statement_id: Optional[int],
        content: Optional[str],
        embedding: Optional[Sequence[float]] = None,
    ) -> int:
        """
        Create a chunk and index it.

        Raises:
            NotFound: statement_id does not name an existing statement
            InvalidConfiguration: embedding has the wrong dimensionality
        """
        with self._coordinator.write_scope() as scope:
            blob = self._encode(embedding)
            if statement_id is not None:
                parent_id = parse_row_id(statement_id)
                exists = parent_id is not None and scope.execute(
                    "SELECT 1 FROM kb_statements WHERE statement_id = ?", (parent_id,)
                ).fetchone()
                if not exists:
                    raise NotFound(f"Statement {statement_id} does not exist")
                statement_id = parent_id
            cur = scope.execute(
                "INSERT INTO kb_chunks (statement_id, content, embedding) VALUES (?, ?, ?)",
                (statement_id, content, blob),
            )
            chunk_id = cur.lastrowid
            self._index(scope, chunk_id, content, blob)
            scope.record(chunk_writes=1)
        return chunk_id

    def update(self, chunk_id: int, content=_UNSET, embedding=_UNSET) -> Chunk:
        """
        Replace a chunk's content and/or embedding and reindex it.

        Omitted arguments keep their current value; passing None clears
        the field.

        Raises:
            NotFound: the chunk does not exist
        """
        row_id = parse_row_id(chunk_id)
        if row_id is None:
            raise NotFound(f"Chunk {chunk_id} does not exist")
        chunk_id = row_id
        with self._coordinator.write_scope() as scope:
            row = scope.execute(
                "SELECT statement_id, content, embedding FROM kb_chunks WHERE chunk_id = ?",
                (chunk_id,),
            ).fetchone()
            if row is None:
                raise NotFound(f"Chunk {chunk_id} does not exist")

            new_content = row["content"] if content is _UNSET else content
            new_blob = row["embedding"] if embedding is _UNSET else self._encode(embedding)

            self._unindex(scope, [chunk_id])
            scope.execute(
                "UPDATE kb_chunks SET content = ?, embedding = ? WHERE chunk_id = ?",
                (new_content, new_blob, chunk_id),
            )
            self._index(scope, chunk_id, new_content, new_blob)
            scope.record(chunk_writes=1)

        return Chunk(chunk_id, row["statement_id"], new_content, self._decode(new_blob))

    def delete(self, chunk_id: int) -> bool:
        """Delete a chunk and its index entries. Returns False if it did not exist."""
        chunk_id = parse_row_id(chunk_id)
        if chunk_id is None:
            return False
        with self._coordinator.write_scope() as scope:
            self._unindex(scope, [chunk_id])
            cur = scope.execute("DELETE FROM kb_chunks WHERE chunk_id = ?", (chunk_id,))
            deleted = cur.rowcount > 0
            scope.record(chunk_writes=int(deleted))
        return deleted

    def delete_for_statements(self, statement_ids: Sequence[int]) -> int:
        """Delete every chunk derived from the given statements; returns the count."""
        if not statement_ids:
            return 0
        with self._coordinator.write_scope() as scope:
            chunk_ids: List[int] = []
            for start in range(0, len(statement_ids), BATCH_SIZE):
                batch = list(statement_ids[start:start + BATCH_SIZE])
                placeholders = ",".join("?" * len(batch))
                rows = scope.execute(
                    f"SELECT chunk_id FROM kb_chunks WHERE statement_id IN ({placeholders})",
                    batch,
                ).fetchall()
                chunk_ids.extend(row[0] for row in rows)
            if not chunk_ids:
                return 0

            self._unindex(scope, chunk_ids)
            for start in range(0, len(chunk_ids), BATCH_SIZE):
                batch = chunk_ids[start:start + BATCH_SIZE]
                placeholders = ",".join("?" * len(batch))
                scope.execute(f"DELETE FROM kb_chunks WHERE chunk_id IN ({placeholders})", batch)
            scope.record(chunk_writes=len(chunk_ids))
        return len(chunk_ids)

    # ── Reads ─────────────────────────────────────────────────────────

    def _row_to_chunk(self, row) -> Chunk:
        return Chunk(
            chunk_id=row["chunk_id"],
            statement_id=row["statement_id"],
            content=row["content"],
            embedding=self._decode(row["embedding"]),
        )

    def get(self, chunk_id: int) -> Optional[Chunk]:
        chunk_id = parse_row_id(chunk_id)
        if chunk_id is None:
            return None
        with self.read_scope() as conn:
            row = conn.execute(
                "SELECT chunk_id, statement_id, content, embedding FROM kb_chunks WHERE chunk_id = ?",
                (chunk_id,),
            ).fetchone()
        return self._row_to_chunk(row) if row else None

    def get_many(self, chunk_ids: Iterable[int]) -> Dict[int, Chunk]:
        ids = list(chunk_ids)
        found: Dict[int, Chunk] = {}
        with self.read_scope() as conn:
            for start in range(0, len(ids), BATCH_SIZE):
                batch = ids[start:start + BATCH_SIZE]
                placeholders = ",".join("?" * len(batch))
                rows = conn.execute(
                    "SELECT chunk_id, statement_id, content, embedding FROM kb_chunks "
                    f"WHERE chunk_id IN ({placeholders})",
                    batch,
                ).fetchall()
                for row in rows:
                    found[row["chunk_id"]] = self._row_to_chunk(row)
        return found

    def for_statement(self, statement_id: int) -> List[Chunk]:
        statement_id = parse_row_id(statement_id)
        if statement_id is None:
            return []
        with self.read_scope() as conn:
            rows = conn.execute(
                "SELECT chunk_id, statement_id, content, embedding FROM kb_chunks "
                "WHERE statement_id = ? ORDER BY chunk_id",
                (statement_id,),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def count(self) -> int:
        with self.read_scope() as conn:
            return conn.execute("SELECT COUNT(*) FROM kb_chunks").fetchone()[0]

    def fulltext_ranks(self, query: str, limit: int) -> List[int]:
        """Chunk ids by BM25 relevance (best first, ties by chunk id)."""
        match = build_match_query(query or "")
        if not match:
            return []
        with self.read_scope() as conn:
            rows = conn.execute(
                "SELECT rowid FROM kb_chunks_fts WHERE kb_chunks_fts MATCH ? "
                "ORDER BY bm25(kb_chunks_fts), rowid LIMIT ?",
                (match, limit),
            ).fetchall()
        return [row[0] for row in rows]

    def _load_matrix(self, conn: "sqlite3.Connection") -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        if self._matrix is None:
            rows = conn.execute(
                "SELECT chunk_id, embedding FROM kb_chunks_vec ORDER BY chunk_id"
            ).fetchall()
            if rows:
                ids = np.fromiter((row[0] for row in rows), dtype=np.int64, count=len(rows))
                matrix = np.vstack([np.frombuffer(row[1], dtype="<f4") for row in rows]).astype(np.float64)
            else:
                ids = np.empty(0, dtype=np.int64)
                matrix = np.empty((0, self._dimensions), dtype=np.float64)
            self._matrix_ids = ids
            self._matrix = matrix
            self._norms = np.linalg.norm(matrix, axis=1)
            logger.debug(f"World {self._coordinator.world_id}: loaded {len(ids)} vectors")
        return self._matrix_ids, self._matrix, self._norms

    def vector_ranks(self, vector: Sequence[float], limit: int) -> List[int]:
        """
        Chunk ids by cosine similarity to ``vector`` (nearest first, ties by chunk id).

        Raises:
            InvalidConfiguration: the query vector has the wrong dimensionality
        """
        query = self._as_vector(vector).astype(np.float64)
        query_norm = float(np.linalg.norm(query))
        with self.read_scope() as conn:
            ids, matrix, norms = self._load_matrix(conn)
        if ids.size == 0 or query_norm == 0.0:
            return []

        denom = norms * query_norm
        sims = np.divide(matrix @ query, denom, out=np.zeros_like(norms), where=denom > 0)
        order = np.lexsort((ids, -sims))
        return ids[order[:limit]].tolist()

    # ── Drift checks ──────────────────────────────────────────────────

    def chunk_ids(self) -> Set[int]:
        with self.read_scope() as conn:
            return {row[0] for row in conn.execute("SELECT chunk_id FROM kb_chunks")}

    def fulltext_ids(self) -> Set[int]:
        with self.read_scope() as conn:
            return {row[0] for row in conn.execute("SELECT rowid FROM kb_chunks_fts")}

    def vector_ids(self) -> Set[int]:
        with self.read_scope() as conn:
            return {row[0] for row in conn.execute("SELECT chunk_id FROM kb_chunks_vec")}

    def verify(self) -> IndexReport:
        """Compare the chunk table against both indexes in one consistent read."""
        with self.read_scope() as conn:
            embedded = {
                row[0] for row in conn.execute(
                    "SELECT chunk_id FROM kb_chunks WHERE embedding IS NOT NULL"
                )
            }
            return IndexReport(
                chunk_ids=frozenset(self.chunk_ids()),
                fulltext_ids=frozenset(self.fulltext_ids()),
                vector_ids=frozenset(self.vector_ids()),
                embedded_ids=frozenset(embedded),
            )
