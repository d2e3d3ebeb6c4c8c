"""
Tests for blank node skolemization.
"""

import re

from worldstore.storage.skolem import Skolemizer, is_skolem_iri
from worldstore.storage.terms import DEFAULT_GRAPH, BlankNode, NamedNode, Quad

GENID_RE = re.compile(r"^https://kb\.example/\.well-known/genid/[0-9a-f]{32}$")


class TestSkolemizer:
    """Test skolem IRI minting."""

    def test_iri_format(self):
        """IRIs are authority + /.well-known/genid/ + uuid hex."""
        skolemizer = Skolemizer("https://kb.example/")
        assert GENID_RE.match(skolemizer.skolemize("b1"))

    def test_same_label_same_call(self):
        """Repeated references within one call share an IRI."""
        skolemizer = Skolemizer()
        assert skolemizer.skolemize("b1") == skolemizer.skolemize("b1")
        assert skolemizer.skolemize("_:b1") == skolemizer.skolemize("b1")
        assert len(skolemizer) == 1

    def test_distinct_labels(self):
        """Different labels get different IRIs."""
        skolemizer = Skolemizer()
        assert skolemizer.skolemize("b1") != skolemizer.skolemize("b2")

    def test_no_reuse_across_calls(self):
        """A new skolemizer never reuses an earlier call's IRI."""
        assert Skolemizer().skolemize("b1") != Skolemizer().skolemize("b1")

    def test_mapping_is_a_copy(self):
        """The label map can be inspected but not altered."""
        skolemizer = Skolemizer()
        iri = skolemizer.skolemize("b1")
        mapping = skolemizer.mapping
        mapping["b1"] = "http://tampered"
        assert skolemizer.skolemize("b1") == iri

    def test_debug_prefix_check(self):
        """The prefix check recognizes minted IRIs."""
        assert is_skolem_iri(Skolemizer().skolemize("x"))
        assert is_skolem_iri("urn:uuid:1234")
        assert not is_skolem_iri("http://example.org/alice")

    def test_owns_minted_space(self):
        """Only non-empty IRIs under the authority's genid prefix are owned."""
        skolemizer = Skolemizer("https://kb.example")
        assert skolemizer.owns(skolemizer.skolemize("b1"))
        assert skolemizer.owns("https://kb.example/.well-known/genid/abc")
        assert not skolemizer.owns("https://kb.example/.well-known/genid/")
        assert not skolemizer.owns("https://other.example/.well-known/genid/abc")
        assert not skolemizer.owns("http://example.org/alice")

    def test_skolemize_quad(self):
        """Local blank labels are minted; named nodes and minted IRIs pass through."""
        skolemizer = Skolemizer("https://kb.example")
        minted = BlankNode("https://kb.example/.well-known/genid/abc")
        p = NamedNode("http://example.org/p")
        result = skolemizer.skolemize_quad(Quad(BlankNode("b1"), p, minted))
        assert result.subject == BlankNode(skolemizer.skolemize("b1"))
        assert result.predicate == p
        assert result.object == minted
        assert result.graph == DEFAULT_GRAPH
