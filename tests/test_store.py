"""
Tests for the QuadStore facade: ingestion from RDF text, export and lifecycle.
"""

import pyoxigraph as ox
import pytest

from worldstore.storage.errors import ConstraintViolation, WorldStoreError
from worldstore.storage.terms import BlankNode, Literal, NamedNode
from worldstore.store import QuadStore

EX = "http://example.org/"

DOC = """
<http://example.org/alice> <http://example.org/address> _:addr <http://example.org/people> .
_:addr <http://example.org/city> "Lyon"@fr <http://example.org/people> .
_:addr <http://example.org/zip> "69001" <http://example.org/people> .
"""


class TestIngestion:
    """Test parsing and skolemization on ingestion."""

    def test_blank_nodes_skolemized(self, store):
        """One label within one document names one node."""
        result = store.add_nquads(DOC)
        assert result.inserted == 3

        root = store.find(subject=EX + "alice")[0]
        assert isinstance(root.object, BlankNode)
        assert "/.well-known/genid/" in root.object.value

        children = store.find(subject=root.object.value)
        assert {s.object for s in children} == {Literal("Lyon", language="fr"), Literal("69001")}

    def test_labels_not_reused_across_calls(self, store):
        """The same label in two calls names two different nodes."""
        store.add_nquads(DOC)
        store.add_nquads(DOC)
        roots = store.find(subject=EX + "alice")
        assert len(roots) == 2
        assert roots[0].object != roots[1].object
        assert store.count() == 6

    def test_oxigraph_quads(self, store):
        """pyoxigraph quads and triples are accepted directly."""
        b = ox.BlankNode("n")
        store.add_quads([
            ox.Quad(ox.NamedNode(EX + "a"), ox.NamedNode(EX + "p"), b, ox.NamedNode(EX + "g")),
            ox.Triple(b, ox.NamedNode(EX + "q"), ox.Literal("v")),
        ])
        first, second = store.statements()
        assert first.object.value == second.subject.value
        assert second.graph.value == ""

    def test_turtle(self, store):
        """Other RDF formats parse through the same path."""
        store.add_nquads(
            '@prefix ex: <http://example.org/> . ex:a ex:p "tea" .',
            format=ox.RdfFormat.TURTLE,
        )
        assert store.count() == 1

    def test_syntax_error(self, store):
        """Unparseable input is a constraint violation and writes nothing."""
        with pytest.raises(ConstraintViolation):
            store.add_nquads('<http://example.org/a> <http://example.org/p> "unterminated .')
        assert store.count() == 0


class TestExport:
    """Test hydration output."""

    def test_oxigraph_export(self, store):
        """Skolemized blank nodes leave as IRIs that join subject and object."""
        store.add_nquads(DOC)
        quads = list(store.to_oxigraph_quads())
        assert len(quads) == 3
        assert isinstance(quads[0].object, ox.NamedNode)
        assert quads[0].object == quads[1].subject
        assert quads[0].graph_name == ox.NamedNode(EX + "people")

    def test_graph_filter(self, store):
        """Export can be limited to one graph."""
        store.add_nquads(DOC)
        store.add_quad(ox.Triple(ox.NamedNode(EX + "x"), ox.NamedNode(EX + "p"), ox.Literal("y")))
        assert len(list(store.to_oxigraph_quads(EX + "people"))) == 3
        assert store.export_nquads(NamedNode(EX + "missing")) == ""

        default_graph = store.export_nquads("")
        assert default_graph.count("\n") == 1
        assert '"y"' in default_graph

    def test_wake(self, store):
        """wake enumerates every graph ordered by id."""
        store.add_nquads(DOC)
        statements = store.wake()
        ids = [s.statement_id for s in statements]
        assert ids == sorted(ids)
        assert len(statements) == 3


class TestLifecycle:
    """Test stats and closing."""

    def test_stats(self, store):
        """Stats summarize the world."""
        store.add_nquads(DOC)
        stats = store.stats()
        assert stats["world_id"] == "test-world"
        assert stats["statements"] == 3
        assert stats["graphs"] == 1
        assert stats["chunks"] == 2
        assert stats["indexes"]["consistent"]
        assert stats["transactions"]["committed"] >= 1

    def test_close(self, config):
        """Closed stores refuse work; closing twice is fine."""
        store = QuadStore("w", config=config)
        store.close()
        store.close()
        assert store.closed
        with pytest.raises(WorldStoreError):
            store.statements()

    def test_context_manager(self, config):
        """Stores close on leaving a with block."""
        with QuadStore("w", config=config) as store:
            store.add_nquads(DOC)
        assert store.closed

    def test_file_backed(self, tmp_path, config):
        """A file-backed store keeps its data across reopen."""
        path = tmp_path / "w.sqlite"
        with QuadStore("w", path=path, config=config) as store:
            store.add_nquads(DOC)
        with QuadStore("w", path=path, config=config) as store:
            assert store.count() == 3
            assert store.verify_indexes().consistent
