"""
worldstore: a statement and chunk store for RDF knowledge-graph worlds.

Quads with full term fidelity, skolemized blank nodes, cascading deletes and
hybrid keyword + vector search, one SQLite database per world.
"""

__version__ = "0.1.0"

from worldstore.config import (
    StoreConfig,
    SearchConfig,
    IndexConfig,
    WriteConfig,
    ConfigValidator,
)
from worldstore.store import QuadStore
from worldstore.worlds import WorldCatalog, WorldInfo, WorldManager
from worldstore.storage import (
    WorldStoreError,
    NotFound,
    ConstraintViolation,
    InvalidConfiguration,
    WriteScopeCancelled,
    TransactionAborted,
    NamedNode,
    Literal,
    BlankNode,
    DefaultGraph,
    DEFAULT_GRAPH,
    Quad,
    Statement,
    CancellationToken,
    SearchResult,
    reciprocal_rank_fusion,
)

__all__ = [
    "__version__",
    # Configuration
    "StoreConfig",
    "SearchConfig",
    "IndexConfig",
    "WriteConfig",
    "ConfigValidator",
    # Stores
    "QuadStore",
    "WorldCatalog",
    "WorldInfo",
    "WorldManager",
    # Errors
    "WorldStoreError",
    "NotFound",
    "ConstraintViolation",
    "InvalidConfiguration",
    "WriteScopeCancelled",
    "TransactionAborted",
    # Terms
    "NamedNode",
    "Literal",
    "BlankNode",
    "DefaultGraph",
    "DEFAULT_GRAPH",
    "Quad",
    "Statement",
    # Writes and search
    "CancellationToken",
    "SearchResult",
    "reciprocal_rank_fusion",
]
