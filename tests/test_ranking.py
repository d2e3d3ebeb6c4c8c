"""
Tests for Reciprocal Rank Fusion and hybrid search.
"""

import math

import pytest

from worldstore.storage.errors import InvalidConfiguration
from worldstore.storage.ranking import reciprocal_rank_fusion
from worldstore.storage.terms import Literal, NamedNode, Quad

EX = "http://example.org/"

X, Y, Z = 1, 2, 3

VECTORS = {
    "green tea": [1.0, 0.0, 0.0],
    "black coffee": [0.0, 1.0, 0.0],
    "green coffee": [0.8, 0.6, 0.0],
}


class TestReciprocalRankFusion:
    """Test the fusion function."""

    def test_fusion_order(self):
        """Full-text {X:1, Y:2} and vector {Y:1, Z:2} fuse to Y, X, Z."""
        fused = reciprocal_rank_fusion([[X, Y], [Y, Z]], 60)
        assert [chunk_id for chunk_id, _ in fused] == [Y, X, Z]
        scores = dict(fused)
        assert scores[Y] == pytest.approx(1 / 61 + 1 / 62)
        assert scores[X] == pytest.approx(1 / 61)
        assert scores[Z] == pytest.approx(1 / 62)

    def test_ties_by_chunk_id(self):
        """Equal scores order by ascending chunk id."""
        fused = reciprocal_rank_fusion([[9], [4]], 60)
        assert fused == [(4, pytest.approx(1 / 61)), (9, pytest.approx(1 / 61))]

    def test_duplicate_in_one_list(self):
        """A list naming a chunk twice contributes its best rank once."""
        fused = reciprocal_rank_fusion([[X, X, Y]], 60)
        assert dict(fused)[X] == pytest.approx(1 / 61)
        assert dict(fused)[Y] == pytest.approx(1 / 63)

    def test_uneven_lists(self):
        """Lists may differ in length and membership."""
        fused = reciprocal_rank_fusion([[X, Y, Z], []], 1)
        assert [chunk_id for chunk_id, _ in fused] == [X, Y, Z]
        assert reciprocal_rank_fusion([[], []]) == []

    def test_k_changes_scores(self):
        """Smaller k weights top ranks more."""
        fused = reciprocal_rank_fusion([[X]], 1)
        assert fused[0][1] == pytest.approx(0.5)

    @pytest.mark.parametrize("k", [0, -1, math.inf, math.nan, "60", None, True])
    def test_invalid_k(self, k):
        """k must be a positive finite number."""
        with pytest.raises(InvalidConfiguration):
            reciprocal_rank_fusion([[X]], k)


class TestHybridSearch:
    """Test search over a world's chunks."""

    @pytest.fixture
    def loaded(self, store):
        ids = {}
        for name, text in [("a", "green tea"), ("b", "black coffee"), ("c", "green coffee")]:
            sid = store.add_quad(
                Quad(NamedNode(EX + name), NamedNode(EX + "label"), Literal(text)),
                embed=VECTORS.__getitem__,
            )
            ids[text] = (sid, store.get_chunks(sid)[0].chunk_id)
        return store, ids

    def test_hybrid(self, loaded):
        """Text and vector rankings fuse into one ordering."""
        store, ids = loaded
        results = store.search(query_text="tea", query_vector=[0.0, 1.0, 0.0])

        assert [r.content for r in results] == ["green tea", "black coffee", "green coffee"]
        top = results[0]
        assert top.score == pytest.approx(1 / 61 + 1 / 63)
        assert top.fulltext_rank == 1
        assert top.vector_rank == 3
        assert top.statement_id == ids["green tea"][0]
        assert top.chunk_id == ids["green tea"][1]
        assert results[1].score == pytest.approx(1 / 61)
        assert results[1].fulltext_rank is None

    def test_text_only(self, loaded):
        """Without a vector only keyword matches are returned."""
        store, _ = loaded
        results = store.search(query_text="coffee")
        assert {r.content for r in results} == {"black coffee", "green coffee"}
        assert all(r.vector_rank is None for r in results)

    def test_vector_only(self, loaded):
        """Without text every embedded chunk is ranked."""
        store, _ = loaded
        results = store.search(query_vector=[1.0, 0.0, 0.0])
        assert [r.content for r in results] == ["green tea", "green coffee", "black coffee"]

    def test_limit(self, loaded):
        """limit truncates the fused list."""
        store, _ = loaded
        results = store.search(query_vector=[1.0, 0.0, 0.0], limit=1)
        assert [r.content for r in results] == ["green tea"]

    def test_empty_query(self, loaded):
        """No text and no vector finds nothing."""
        store, _ = loaded
        assert store.search() == []

    def test_custom_k(self, loaded):
        """k may be overridden per query."""
        store, _ = loaded
        results = store.search(query_text="tea", k=1)
        assert results[0].score == pytest.approx(0.5)

    def test_invalid_parameters(self, loaded):
        """Bad k, limit or vector size are configuration errors."""
        store, _ = loaded
        with pytest.raises(InvalidConfiguration):
            store.search(query_text="tea", k=0)
        with pytest.raises(InvalidConfiguration):
            store.search(query_text="tea", limit=0)
        with pytest.raises(InvalidConfiguration):
            store.search(query_vector=[1.0, 0.0])

    def test_to_dict(self, loaded):
        """Results serialize to plain dicts."""
        store, _ = loaded
        data = store.search(query_text="tea")[0].to_dict()
        assert data["content"] == "green tea"
        assert set(data) == {
            "chunk_id", "statement_id", "score", "content", "fulltext_rank", "vector_rank",
        }
