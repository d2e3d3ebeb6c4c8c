"""
SQLite schema and connection setup.

Each world lives in its own database file holding kb_statements, kb_chunks
and the two chunk indexes. The world catalog (kb_worlds) lives in a separate
catalog database. Connections run in autocommit mode; transactions are
opened explicitly by the TransactionCoordinator.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Optional, Union

from worldstore.storage.errors import InvalidConfiguration

logger = logging.getLogger(__name__)

# Bumped whenever a schema change needs a migration
SCHEMA_VERSION = 1

WORLD_SCHEMA_SQL = """
-- The core quad table
CREATE TABLE IF NOT EXISTS kb_statements (
    statement_id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject TEXT NOT NULL,
    predicate TEXT NOT NULL,
    object TEXT NOT NULL,
    graph TEXT NOT NULL,
    -- 'NamedNode', 'Literal', 'BlankNode', 'DefaultGraph' (kind of the object)
    term_type TEXT NOT NULL DEFAULT 'NamedNode',
    object_language TEXT NOT NULL DEFAULT '',
    object_datatype TEXT NOT NULL DEFAULT '',
    CONSTRAINT kb_statement_unique UNIQUE (
        subject, predicate, object, graph, term_type, object_language, object_datatype
    ),
    CHECK (term_type IN ('NamedNode', 'Literal', 'BlankNode', 'DefaultGraph'))
);

CREATE INDEX IF NOT EXISTS kb_s_index ON kb_statements (subject);
CREATE INDEX IF NOT EXISTS kb_p_index ON kb_statements (predicate);
CREATE INDEX IF NOT EXISTS kb_o_index ON kb_statements (object);
CREATE INDEX IF NOT EXISTS kb_g_index ON kb_statements (graph);
CREATE INDEX IF NOT EXISTS kb_sp_index ON kb_statements (subject, predicate);
CREATE INDEX IF NOT EXISTS kb_po_index ON kb_statements (predicate, object);

-- Text fragments derived from statements
CREATE TABLE IF NOT EXISTS kb_chunks (
    chunk_id INTEGER PRIMARY KEY AUTOINCREMENT,
    statement_id INTEGER,
    content TEXT,
    embedding BLOB,
    FOREIGN KEY (statement_id) REFERENCES kb_statements (statement_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS kb_chunks_statement_idx ON kb_chunks (statement_id);

-- Full-text index, rowid = chunk_id
CREATE VIRTUAL TABLE IF NOT EXISTS kb_chunks_fts USING fts5(content);

-- Vector index, one row per chunk with an embedding
CREATE TABLE IF NOT EXISTS kb_chunks_vec (
    chunk_id INTEGER PRIMARY KEY,
    embedding BLOB NOT NULL
);
"""

CATALOG_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kb_worlds (
    world_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    deleted_at INTEGER,
    is_public INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS kb_w_account_idx ON kb_worlds (account_id);
"""


def connect(
    path: Optional[Union[str, Path]] = None,
    busy_timeout_ms: int = 5000,
) -> sqlite3.Connection:
    """
    Open a connection configured for worldstore.

    Args:
        path: Database file, or None for a private in-memory database
        busy_timeout_ms: How long SQLite waits on a locked database file

    Returns:
        Connection in autocommit mode with sqlite3.Row rows
    """
    if path is None:
        target = ":memory:"
    else:
        target = str(path)
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    conn.execute("PRAGMA foreign_keys = ON")
    if path is not None:
        conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _apply(conn: sqlite3.Connection, script: str) -> None:
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    if version > SCHEMA_VERSION:
        raise InvalidConfiguration(
            f"Database schema version {version} is newer than supported {SCHEMA_VERSION}"
        )
    conn.executescript(script)
    if version < SCHEMA_VERSION:
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.debug(f"Schema upgraded from version {version} to {SCHEMA_VERSION}")


def init_world_schema(conn: sqlite3.Connection) -> None:
    """Create the statement, chunk and index tables (idempotent)."""
    try:
        _apply(conn, WORLD_SCHEMA_SQL)
    except sqlite3.OperationalError as e:
        if "fts5" in str(e).lower():
            raise InvalidConfiguration("SQLite was built without FTS5 support") from e
        raise


def init_catalog_schema(conn: sqlite3.Connection) -> None:
    """Create the world catalog table (idempotent)."""
    _apply(conn, CATALOG_SCHEMA_SQL)


# SQLite INTEGER PRIMARY KEY range
MIN_ROW_ID = -(2 ** 63)
MAX_ROW_ID = 2 ** 63 - 1

_ROW_ID_RE = re.compile(r"[+-]?[0-9]+")


def parse_row_id(value: Any) -> Optional[int]:
    """
    Parse a row id given as int or string; None when it is not a usable id.

    Strings must be plain ASCII digits with an optional sign. Values outside
    SQLite's 64-bit INTEGER range can never name a row.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        row_id = value
    elif isinstance(value, str):
        text = value.strip()
        if not _ROW_ID_RE.fullmatch(text):
            return None
        row_id = int(text)
    else:
        return None
    if not MIN_ROW_ID <= row_id <= MAX_ROW_ID:
        return None
    return row_id
