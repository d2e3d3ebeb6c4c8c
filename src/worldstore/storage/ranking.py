"""
Hybrid Ranker: Reciprocal Rank Fusion over full-text and vector rankings.

For each chunk in any input ranking:

    score = sum(1 / (k + rank))   over the rankings that contain it

Chunks missing from a ranking simply get no term from it. Results are
ordered by descending score, ties by ascending chunk id, so the output is
deterministic. Each result carries its statement id so callers can walk
back into the graph.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from worldstore.storage.errors import InvalidConfiguration

if TYPE_CHECKING:
    from worldstore.storage.chunks import ChunkIndex

DEFAULT_RRF_K = 60


def validate_k(k_constant: float) -> float:
    """Return k_constant if it is a finite positive number."""
    if isinstance(k_constant, bool) or not isinstance(k_constant, (int, float)):
        raise InvalidConfiguration(f"RRF constant must be a number, got {k_constant!r}")
    if not k_constant > 0 or math.isinf(k_constant):
        raise InvalidConfiguration(f"RRF constant must be positive and finite, got {k_constant}")
    return k_constant


def validate_limit(limit: int, name: str = "limit") -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise InvalidConfiguration(f"{name} must be a positive integer, got {limit!r}")
    return limit


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[int]],
    k_constant: float = DEFAULT_RRF_K,
) -> List[Tuple[int, float]]:
    """
    Fuse rankings (best first, rank 1 = index 0) into one scored ordering.

    A chunk listed twice in one ranking counts once, at its best rank.

    Returns:
        (chunk_id, score) pairs, descending score, ties by ascending chunk id
    """
    k = validate_k(k_constant)
    scores: Dict[int, float] = {}
    for ranking in rankings:
        seen = set()
        for rank, chunk_id in enumerate(ranking, start=1):
            if chunk_id in seen:
                continue
            seen.add(chunk_id)
            scores[chunk_id] = scores.get(chunk_id, 0.0) + 1.0 / (k + rank)
    return sorted(scores.items(), key=lambda item: (-item[1], item[0]))


@dataclass(frozen=True)
class SearchResult:
    """One fused search hit."""
    chunk_id: int
    statement_id: Optional[int]
    score: float
    content: Optional[str] = None
    fulltext_rank: Optional[int] = None
    vector_rank: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "statement_id": self.statement_id,
            "score": self.score,
            "content": self.content,
            "fulltext_rank": self.fulltext_rank,
            "vector_rank": self.vector_rank,
        }


class HybridRanker:
    """
    Runs a full-text and a vector lookup and fuses them with RRF.

    Both lookups and the chunk lookups for the fused ids run under one read
    scope, so a concurrent write cannot make the two rankings disagree.
    """

    def __init__(
        self,
        chunks: "ChunkIndex",
        k_constant: float = DEFAULT_RRF_K,
        candidate_limit: int = 50,
    ):
        """
        Args:
            chunks: The world's chunk index
            k_constant: Default RRF smoothing constant
            candidate_limit: Minimum depth of each input ranking
        """
        self._chunks = chunks
        self.k_constant = validate_k(k_constant)
        self.candidate_limit = validate_limit(candidate_limit, "candidate_limit")

    def search(
        self,
        query_text: Optional[str] = None,
        query_vector: Optional[Sequence[float]] = None,
        k_constant: Optional[float] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        """
        Fuse full-text and vector rankings for a query.

        Args:
            query_text: Keyword query (skipped when empty)
            query_vector: Query embedding (skipped when None)
            k_constant: Override of the default RRF constant
            limit: Maximum number of results

        Raises:
            InvalidConfiguration: bad k_constant or limit, or a query
                vector of the wrong dimensionality
        """
        k = self.k_constant if k_constant is None else validate_k(k_constant)
        validate_limit(limit)
        depth = max(limit, self.candidate_limit)

        with self._chunks.read_scope():
            text_ranking = self._chunks.fulltext_ranks(query_text, depth) if query_text else []
            vector_ranking = (
                self._chunks.vector_ranks(query_vector, depth) if query_vector is not None else []
            )
            fused = reciprocal_rank_fusion([text_ranking, vector_ranking], k)[:limit]
            chunks = self._chunks.get_many(chunk_id for chunk_id, _ in fused)

        text_pos = {chunk_id: rank for rank, chunk_id in enumerate(text_ranking, start=1)}
        vector_pos = {chunk_id: rank for rank, chunk_id in enumerate(vector_ranking, start=1)}

        results = []
        for chunk_id, score in fused:
            chunk = chunks.get(chunk_id)
            results.append(SearchResult(
                chunk_id=chunk_id,
                statement_id=chunk.statement_id if chunk else None,
                score=score,
                content=chunk.content if chunk else None,
                fulltext_rank=text_pos.get(chunk_id),
                vector_rank=vector_pos.get(chunk_id),
            ))
        return results
