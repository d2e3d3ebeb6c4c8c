"""
Skolemization of blank nodes.

Every ingestion call gets its own Skolemizer. Within that call, repeated
references to the same blank node label resolve to one IRI; the label map
is dropped with the Skolemizer, so a later call reusing the label gets a
fresh IRI. Once committed, a skolem IRI is the node's permanent identity.
"""

from __future__ import annotations

import uuid
from typing import Dict

from worldstore.storage.terms import BlankNode, Quad, Term

GENID_SEGMENT = "/.well-known/genid/"
DEFAULT_AUTHORITY = "https://worldstore.localhost"


class Skolemizer:
    """
    Maps blank node labels of one ingestion call to skolem IRIs.

    IRIs have the form ``{authority}/.well-known/genid/{uuid4 hex}``; random
    UUIDs keep them unique across concurrent ingestion into isolated worlds.
    """

    def __init__(self, authority: str = DEFAULT_AUTHORITY):
        self.authority = authority.rstrip("/")
        self.prefix = f"{self.authority}{GENID_SEGMENT}"
        self._labels: Dict[str, str] = {}

    def skolemize(self, local_id: str) -> str:
        """Return the skolem IRI for a blank node label, minting one on first use."""
        label = local_id[2:] if local_id.startswith("_:") else local_id
        iri = self._labels.get(label)
        if iri is None:
            iri = f"{self.prefix}{uuid.uuid4().hex}"
            self._labels[label] = iri
        return iri

    def owns(self, value: str) -> bool:
        """Whether ``value`` lies in this authority's minted IRI space."""
        return value.startswith(self.prefix) and len(value) > len(self.prefix)

    def skolemize_term(self, term: Term) -> Term:
        """
        Move an internal blank node into the minted IRI space.

        Values already minted under this authority are committed identities
        and pass through. Any other blank value is a label local to the
        current call.
        """
        if isinstance(term, BlankNode) and not self.owns(term.value):
            return BlankNode(self.skolemize(term.value))
        return term

    def skolemize_quad(self, quad: Quad) -> Quad:
        """Skolemize every blank node position of an internal quad."""
        return Quad(
            self.skolemize_term(quad.subject),
            self.skolemize_term(quad.predicate),
            self.skolemize_term(quad.object),
            self.skolemize_term(quad.graph),
        )

    @property
    def mapping(self) -> Dict[str, str]:
        """Copy of the label -> IRI map minted so far."""
        return dict(self._labels)

    def __len__(self) -> int:
        return len(self._labels)


def is_skolem_iri(value: str) -> bool:
    """
    Check whether an IRI looks like a skolem IRI.

    Debugging aid only: stored rows are classified by term_type.
    """
    return GENID_SEGMENT in value or value.startswith("urn:uuid:")
