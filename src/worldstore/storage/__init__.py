"""
worldstore Storage Layer.

SQLite-backed quad storage with skolemized blank nodes, cascading deletes,
chunk indexes kept in lockstep with the chunk table, and hybrid ranking.
"""

from worldstore.storage.errors import (
    WorldStoreError,
    NotFound,
    ConstraintViolation,
    InvalidConfiguration,
    WriteScopeCancelled,
    TransactionAborted,
)
from worldstore.storage.terms import (
    TermType,
    NamedNode,
    Literal,
    BlankNode,
    DefaultGraph,
    DEFAULT_GRAPH,
    Term,
    Quad,
    Statement,
    EncodedTerm,
    StatementRow,
    encode_term,
    decode_term,
    encode_quad,
    decode_row,
    from_oxigraph,
    to_oxigraph,
    quad_from_oxigraph,
    quad_to_oxigraph,
)
from worldstore.storage.skolem import Skolemizer, is_skolem_iri
from worldstore.storage.cancellation import CancellationToken
from worldstore.storage.schema import (
    SCHEMA_VERSION,
    connect,
    init_world_schema,
    init_catalog_schema,
    parse_row_id,
)
from worldstore.storage.transactions import (
    TransactionState,
    ScopeStats,
    WriteScope,
    TransactionCoordinator,
)
from worldstore.storage.statements import InsertResult, StatementTable, parse_statement_id
from worldstore.storage.chunks import Chunk, ChunkIndex, IndexReport, build_match_query
from worldstore.storage.cascade import CascadingDelete, DeleteResult
from worldstore.storage.ranking import (
    DEFAULT_RRF_K,
    HybridRanker,
    SearchResult,
    reciprocal_rank_fusion,
)

__all__ = [
    # Errors
    "WorldStoreError",
    "NotFound",
    "ConstraintViolation",
    "InvalidConfiguration",
    "WriteScopeCancelled",
    "TransactionAborted",
    # Terms
    "TermType",
    "NamedNode",
    "Literal",
    "BlankNode",
    "DefaultGraph",
    "DEFAULT_GRAPH",
    "Term",
    "Quad",
    "Statement",
    "EncodedTerm",
    "StatementRow",
    "encode_term",
    "decode_term",
    "encode_quad",
    "decode_row",
    "from_oxigraph",
    "to_oxigraph",
    "quad_from_oxigraph",
    "quad_to_oxigraph",
    # Skolemization
    "Skolemizer",
    "is_skolem_iri",
    # Schema
    "SCHEMA_VERSION",
    "connect",
    "init_world_schema",
    "init_catalog_schema",
    "parse_row_id",
    # Transactions
    "CancellationToken",
    "TransactionState",
    "ScopeStats",
    "WriteScope",
    "TransactionCoordinator",
    # Statements and chunks
    "InsertResult",
    "StatementTable",
    "parse_statement_id",
    "Chunk",
    "ChunkIndex",
    "IndexReport",
    "build_match_query",
    "CascadingDelete",
    "DeleteResult",
    # Ranking
    "DEFAULT_RRF_K",
    "HybridRanker",
    "SearchResult",
    "reciprocal_rank_fusion",
]
