"""
Cascading Delete Engine.

Deleting a statement whose object is a blank node orphans every statement
that has that blank node as its subject. The engine follows those chains
with an explicit worklist and a visited set, so malformed cyclic input
(a blank node pointing back at an ancestor) still terminates. The whole
cascade runs in one write scope: it lands completely or not at all.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Deque, List, Optional, Set

from worldstore.storage.terms import TermType

if TYPE_CHECKING:
    from worldstore.storage.chunks import ChunkIndex
    from worldstore.storage.transactions import TransactionCoordinator, WriteScope

logger = logging.getLogger(__name__)

# Stay well below SQLite's bound-parameter limit
BATCH_SIZE = 500


@dataclass
class DeleteResult:
    """Rows removed by one cascading delete."""
    statements: int = 0
    chunks: int = 0
    statement_ids: List[int] = field(default_factory=list)
    blank_nodes: int = 0

    def to_dict(self) -> dict:
        return {
            "statements": self.statements,
            "chunks": self.chunks,
            "blank_nodes": self.blank_nodes,
        }


class CascadingDelete:
    """Deletes statements and, transitively, their blank-node substructures."""

    def __init__(self, coordinator: "TransactionCoordinator", chunks: "ChunkIndex"):
        self._coordinator = coordinator
        self._chunks = chunks

    def by_id(self, statement_id: Optional[int]) -> DeleteResult:
        if statement_id is None:
            return DeleteResult()
        return self.delete_where("statement_id = ?", (statement_id,))

    def by_graph(self, graph: str) -> DeleteResult:
        return self.delete_where("graph = ?", (graph,))

    def by_subject(self, subject: str) -> DeleteResult:
        return self.delete_where("subject = ?", (subject,))

    def delete_where(self, clause: str, params: tuple) -> DeleteResult:
        """
        Delete the statements matching ``clause`` and cascade.

        Args:
            clause: SQL predicate over kb_statements (internal callers only)
            params: Bound parameters for the clause

        Returns:
            DeleteResult with statement, chunk and blank node counts
        """
        result = DeleteResult()
        visited: Set[str] = set()
        worklist: Deque[str] = deque()

        with self._coordinator.write_scope() as scope:
            self._delete_batch(scope, clause, params, result, worklist, visited)
            while worklist:
                blank = worklist.popleft()
                scope.check()
                self._delete_batch(scope, "subject = ?", (blank,), result, worklist, visited)
            result.blank_nodes = len(visited)
            scope.record(deletes=result.statements)

        if result.statements:
            logger.debug(
                f"World {self._coordinator.world_id}: deleted {result.statements} statements "
                f"({result.blank_nodes} blank nodes, {result.chunks} chunks)"
            )
        return result

    def _delete_batch(
        self,
        scope: "WriteScope",
        clause: str,
        params: tuple,
        result: DeleteResult,
        worklist: Deque[str],
        visited: Set[str],
    ) -> None:
        rows = scope.execute(
            f"SELECT statement_id, object, term_type FROM kb_statements WHERE {clause}",
            params,
        ).fetchall()
        if not rows:
            return

        ids = [row["statement_id"] for row in rows]
        # Chunks first, so the index engine sees every chunk it has to unindex
        result.chunks += self._chunks.delete_for_statements(ids)

        for start in range(0, len(ids), BATCH_SIZE):
            batch = ids[start:start + BATCH_SIZE]
            placeholders = ",".join("?" * len(batch))
            scope.execute(
                f"DELETE FROM kb_statements WHERE statement_id IN ({placeholders})",
                batch,
            )
        result.statements += len(ids)
        result.statement_ids.extend(ids)

        for row in rows:
            if row["term_type"] != TermType.BLANK_NODE.value:
                continue
            blank = row["object"]
            if blank not in visited:
                visited.add(blank)
                worklist.append(blank)
