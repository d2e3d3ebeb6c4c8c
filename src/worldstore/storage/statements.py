"""
Statement Table: the quad source of truth for one world.

Rows are immutable once written. Updates are expressed as delete + insert,
and every delete goes through the cascading delete engine so dependent
blank-node chains and chunks never dangle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, List, Optional, Union

import polars as pl

from worldstore.storage.schema import parse_row_id
from worldstore.storage.terms import (
    Quad,
    Statement,
    StatementRow,
    Term,
    decode_row,
    encode_quad,
    encode_term,
    graph_key,
    subject_key,
)

if TYPE_CHECKING:
    from worldstore.storage.cascade import CascadingDelete, DeleteResult
    from worldstore.storage.transactions import TransactionCoordinator

logger = logging.getLogger(__name__)

STATEMENT_COLUMNS = (
    "statement_id, subject, predicate, object, graph, "
    "term_type, object_language, object_datatype"
)

_INSERT_SQL = (
    "INSERT INTO kb_statements "
    "(subject, predicate, object, graph, term_type, object_language, object_datatype) "
    "VALUES (?, ?, ?, ?, ?, ?, ?) ON CONFLICT DO NOTHING"
)

_LOOKUP_SQL = (
    "SELECT statement_id FROM kb_statements "
    "WHERE subject = ? AND predicate = ? AND object = ? AND graph = ? "
    "AND term_type = ? AND object_language = ? AND object_datatype = ?"
)


@dataclass
class InsertResult:
    """
    Outcome of an insert_many call.

    Attributes:
        inserted: Rows newly written
        duplicates: Rows skipped because an identical statement existed
        statement_ids: Statement id for every input row, in input order
        new_ids: Ids of the newly written rows
    """
    inserted: int = 0
    duplicates: int = 0
    statement_ids: List[int] = field(default_factory=list)
    new_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "statement_ids": self.statement_ids,
        }


def parse_statement_id(statement_id: Union[int, str, None]) -> Optional[int]:
    """Parse an id given as int or string; None when it is not a usable id."""
    return parse_row_id(statement_id)


class StatementTable:
    """
    Idempotent quad storage over kb_statements.

    Usage:
        result = table.insert_many([Quad(s, p, o, g)])
        table.get_by_graph("http://example.org/g")
        table.delete_by_id(result.statement_ids[0])
    """

    def __init__(self, coordinator: "TransactionCoordinator", cascade: "CascadingDelete"):
        self._coordinator = coordinator
        self._cascade = cascade

    def insert_many(self, statements: Iterable[Union[Quad, StatementRow]]) -> InsertResult:
        """
        Insert statements, skipping ones that already exist.

        Encoding happens inside the write scope, so one malformed quad
        aborts the whole batch (and any enclosing scope).

        Raises:
            ConstraintViolation: a quad breaks a positional rule
        """
        result = InsertResult()
        with self._coordinator.write_scope() as scope:
            for statement in statements:
                row = statement if isinstance(statement, StatementRow) else encode_quad(statement)
                params = row.as_params()
                cur = scope.execute(_INSERT_SQL, params)
                if cur.rowcount == 1:
                    statement_id = cur.lastrowid
                    result.inserted += 1
                    result.new_ids.append(statement_id)
                else:
                    statement_id = scope.execute(_LOOKUP_SQL, params).fetchone()[0]
                    result.duplicates += 1
                result.statement_ids.append(statement_id)
            scope.record(inserts=result.inserted)

        if result.duplicates:
            logger.debug(
                f"World {self._coordinator.world_id}: inserted {result.inserted}, "
                f"skipped {result.duplicates} duplicate statements"
            )
        return result

    def insert(self, statement: Union[Quad, StatementRow]) -> InsertResult:
        return self.insert_many([statement])

    # ── Reads ─────────────────────────────────────────────────────────

    def _select(self, where: str = "", params: tuple = ()) -> List[Statement]:
        sql = f"SELECT {STATEMENT_COLUMNS} FROM kb_statements"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY statement_id"
        with self._coordinator.read_scope() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [decode_row(row) for row in rows]

    def get_by_graph(self, graph: Union[str, Term, None]) -> List[Statement]:
        """All statements of one graph, ordered by statement id."""
        return self._select("graph = ?", (graph_key(graph),))

    def get_by_id(self, statement_id: Union[int, str, None]) -> Optional[Statement]:
        """Look up one statement; None for absent or unparseable ids."""
        sid = parse_statement_id(statement_id)
        if sid is None:
            return None
        rows = self._select("statement_id = ?", (sid,))
        return rows[0] if rows else None

    def get_by_subject(self, subject: Union[str, Term]) -> List[Statement]:
        return self._select("subject = ?", (subject_key(subject),))

    def find(
        self,
        subject: Union[str, Term, None] = None,
        predicate: Union[str, Term, None] = None,
        obj: Optional[Term] = None,
        graph: Union[str, Term, None] = None,
    ) -> List[Statement]:
        """
        Match statements by any combination of positions.

        The object must be given as a term so its kind, language and
        datatype take part in the match.
        """
        clauses = []
        params: list = []
        if subject is not None:
            clauses.append("subject = ?")
            params.append(subject_key(subject))
        if predicate is not None:
            clauses.append("predicate = ?")
            params.append(predicate if isinstance(predicate, str) else encode_term(predicate).value)
        if obj is not None:
            encoded = encode_term(obj)
            clauses.append("object = ? AND term_type = ? AND object_language = ? AND object_datatype = ?")
            params.extend([encoded.value, encoded.term_type.value, encoded.language, encoded.datatype])
        if graph is not None:
            clauses.append("graph = ?")
            params.append(graph_key(graph))
        return self._select(" AND ".join(clauses), tuple(params))

    def all(self) -> List[Statement]:
        """Every statement in the world, ordered by statement id."""
        return self._select()

    def graphs(self) -> List[str]:
        with self._coordinator.read_scope() as conn:
            rows = conn.execute("SELECT DISTINCT graph FROM kb_statements ORDER BY graph").fetchall()
        return [row[0] for row in rows]

    def count(self, graph: Union[str, Term, None] = None) -> int:
        with self._coordinator.read_scope() as conn:
            if graph is None:
                row = conn.execute("SELECT COUNT(*) FROM kb_statements").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM kb_statements WHERE graph = ?", (graph_key(graph),)
                ).fetchone()
        return row[0]

    def to_polars(self, graph: Union[str, Term, None] = None) -> pl.DataFrame:
        """Statements as a Polars DataFrame with the persisted columns."""
        statements = self.all() if graph is None else self.get_by_graph(graph)
        schema = {
            "statement_id": pl.Int64,
            "subject": pl.Utf8,
            "predicate": pl.Utf8,
            "object": pl.Utf8,
            "graph": pl.Utf8,
            "term_type": pl.Utf8,
            "object_language": pl.Utf8,
            "object_datatype": pl.Utf8,
        }
        if not statements:
            return pl.DataFrame(schema=schema)
        return pl.DataFrame([s.to_dict() for s in statements], schema=schema)

    # ── Deletes ───────────────────────────────────────────────────────

    def delete_by_id(self, statement_id: Union[int, str, None]) -> "DeleteResult":
        """Delete one statement (and its blank-node descendants). Absent ids delete nothing."""
        return self._cascade.by_id(parse_statement_id(statement_id))

    def delete_by_graph(self, graph: Union[str, Term, None]) -> "DeleteResult":
        return self._cascade.by_graph(graph_key(graph))

    def delete_by_subject(self, subject: Union[str, Term]) -> "DeleteResult":
        return self._cascade.by_subject(subject_key(subject))
