"""
Term Codec.

Converts RDF terms between three shapes:
- the closed tagged variant used inside worldstore (NamedNode, Literal,
  BlankNode, DefaultGraph),
- the normalized row encoding persisted in kb_statements
  (value, term_type, object_language, object_datatype),
- the external pyoxigraph term model used for parsing, serializing and
  hydrating query engines.

Key design decisions:
- term_type is the only source of truth for the kind of a stored object.
  Skolem IRIs carry a recognizable prefix, but nothing here sniffs it.
- Empty string is the "absent" sentinel for language and datatype, so the
  seven-column uniqueness constraint never has to compare NULLs.
- xsd:string is the implied datatype of a plain literal and is normalized
  away on construction, which keeps encode/decode an exact round trip.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Optional, Union

import pyoxigraph as ox

from worldstore.storage.errors import ConstraintViolation

if TYPE_CHECKING:
    from worldstore.storage.skolem import Skolemizer


XSD_STRING = "http://www.w3.org/2001/XMLSchema#string"
RDF_LANG_STRING = "http://www.w3.org/1999/02/22-rdf-syntax-ns#langString"


# =============================================================================
# Term Variants
# =============================================================================

class TermType(str, Enum):
    """Kind tag persisted in kb_statements.term_type."""
    NAMED_NODE = "NamedNode"
    LITERAL = "Literal"
    BLANK_NODE = "BlankNode"
    DEFAULT_GRAPH = "DefaultGraph"


@dataclass(frozen=True, slots=True)
class NamedNode:
    """An IRI."""
    value: str

    term_type: ClassVar[TermType] = TermType.NAMED_NODE


@dataclass(frozen=True, slots=True)
class Literal:
    """
    A literal with an optional language tag or datatype IRI (never both).

    Attributes:
        value: Lexical form
        language: Language tag, None when absent
        datatype: Datatype IRI, None for plain (xsd:string) literals
    """
    value: str
    language: Optional[str] = None
    datatype: Optional[str] = None

    term_type: ClassVar[TermType] = TermType.LITERAL

    def __post_init__(self):
        language = self.language or None
        datatype = self.datatype or None
        if datatype == XSD_STRING:
            datatype = None
        if language is not None and datatype == RDF_LANG_STRING:
            datatype = None
        if language is not None and datatype is not None:
            raise ConstraintViolation(
                f"Literal {self.value!r} cannot have both language "
                f"{language!r} and datatype {datatype!r}"
            )
        object.__setattr__(self, "language", language)
        object.__setattr__(self, "datatype", datatype)


@dataclass(frozen=True, slots=True)
class BlankNode:
    """A blank node, identified by its skolem IRI."""
    value: str

    term_type: ClassVar[TermType] = TermType.BLANK_NODE


@dataclass(frozen=True, slots=True)
class DefaultGraph:
    """The default graph."""

    term_type: ClassVar[TermType] = TermType.DEFAULT_GRAPH
    value: ClassVar[str] = ""


DEFAULT_GRAPH = DefaultGraph()

Term = Union[NamedNode, Literal, BlankNode, DefaultGraph]


@dataclass(frozen=True, slots=True)
class Quad:
    """A (subject, predicate, object, graph) fact."""
    subject: Term
    predicate: Term
    object: Term
    graph: Term = DEFAULT_GRAPH


@dataclass(frozen=True, slots=True)
class Statement:
    """A stored quad together with its store-assigned identity."""
    statement_id: int
    subject: Term
    predicate: Term
    object: Term
    graph: Term

    @property
    def quad(self) -> Quad:
        return Quad(self.subject, self.predicate, self.object, self.graph)

    def to_dict(self) -> dict:
        obj = encode_term(self.object)
        return {
            "statement_id": self.statement_id,
            "subject": self.subject.value,
            "predicate": self.predicate.value,
            "object": obj.value,
            "graph": self.graph.value,
            "term_type": obj.term_type.value,
            "object_language": obj.language,
            "object_datatype": obj.datatype,
        }


# =============================================================================
# Row Encoding
# =============================================================================

@dataclass(frozen=True, slots=True)
class EncodedTerm:
    """A term flattened to its persisted columns."""
    value: str
    term_type: TermType
    language: str = ""
    datatype: str = ""


@dataclass(frozen=True, slots=True)
class StatementRow:
    """The seven persisted columns of a kb_statements row."""
    subject: str
    predicate: str
    object: str
    graph: str
    term_type: str
    object_language: str
    object_datatype: str

    def as_params(self) -> tuple:
        return (
            self.subject,
            self.predicate,
            self.object,
            self.graph,
            self.term_type,
            self.object_language,
            self.object_datatype,
        )


def term_type_of(term: Any) -> TermType:
    """Return the kind tag of an internal term."""
    kind = getattr(term, "term_type", None)
    if not isinstance(kind, TermType):
        raise ConstraintViolation(f"Not a worldstore term: {term!r}")
    return kind


def encode_term(term: Term) -> EncodedTerm:
    """Flatten a term into (value, term_type, language, datatype)."""
    kind = term_type_of(term)
    if kind is TermType.LITERAL:
        return EncodedTerm(term.value, kind, term.language or "", term.datatype or "")
    if kind is TermType.NAMED_NODE or kind is TermType.BLANK_NODE:
        return EncodedTerm(term.value, kind)
    if kind is TermType.DEFAULT_GRAPH:
        return EncodedTerm("", kind)
    raise ConstraintViolation(f"Unhandled term type: {kind!r}")


def decode_term(
    value: str,
    term_type: Union[str, TermType],
    language: str = "",
    datatype: str = "",
) -> Term:
    """
    Rebuild a term from its persisted columns.

    A literal prefers its language tag, then its datatype, and is otherwise
    a plain string literal.
    """
    try:
        kind = TermType(term_type)
    except ValueError:
        raise ConstraintViolation(f"Unknown term_type {term_type!r}") from None

    if kind is TermType.LITERAL:
        if language:
            return Literal(value, language=language)
        if datatype:
            return Literal(value, datatype=datatype)
        return Literal(value)
    if kind is TermType.NAMED_NODE:
        return NamedNode(value)
    if kind is TermType.BLANK_NODE:
        return BlankNode(value)
    if kind is TermType.DEFAULT_GRAPH:
        return DEFAULT_GRAPH
    raise ConstraintViolation(f"Unhandled term type: {kind!r}")


_SUBJECT_KINDS = (TermType.NAMED_NODE, TermType.BLANK_NODE)
_GRAPH_KINDS = (TermType.NAMED_NODE, TermType.BLANK_NODE, TermType.DEFAULT_GRAPH)


def encode_quad(quad: Quad) -> StatementRow:
    """
    Encode a quad into a kb_statements row, enforcing positional rules.

    Raises:
        ConstraintViolation: literal subject/graph, non-IRI predicate,
            default-graph object, or an empty subject/predicate IRI
    """
    subject = encode_term(quad.subject)
    predicate = encode_term(quad.predicate)
    obj = encode_term(quad.object)
    graph = encode_term(quad.graph)

    if subject.term_type not in _SUBJECT_KINDS:
        raise ConstraintViolation(f"Subject must be an IRI or blank node, got {subject.term_type.value}")
    if predicate.term_type is not TermType.NAMED_NODE:
        raise ConstraintViolation(f"Predicate must be an IRI, got {predicate.term_type.value}")
    if obj.term_type is TermType.DEFAULT_GRAPH:
        raise ConstraintViolation("Object cannot be the default graph")
    if graph.term_type not in _GRAPH_KINDS:
        raise ConstraintViolation(f"Graph must be an IRI or the default graph, got {graph.term_type.value}")
    if not subject.value or not predicate.value:
        raise ConstraintViolation("Subject and predicate IRIs must not be empty")

    return StatementRow(
        subject=subject.value,
        predicate=predicate.value,
        object=obj.value,
        graph=graph.value,
        term_type=obj.term_type.value,
        object_language=obj.language,
        object_datatype=obj.datatype,
    )


def decode_graph(value: str) -> Term:
    """The empty string is the default graph; anything else is an IRI."""
    return NamedNode(value) if value else DEFAULT_GRAPH


def decode_row(row: Mapping[str, Any]) -> Statement:
    """
    Rebuild a Statement from a kb_statements row.

    Subjects decode as NamedNode: once skolemized, a blank node subject's
    identity is its IRI.
    """
    return Statement(
        statement_id=int(row["statement_id"]),
        subject=NamedNode(row["subject"]),
        predicate=NamedNode(row["predicate"]),
        object=decode_term(
            row["object"],
            row["term_type"],
            row["object_language"],
            row["object_datatype"],
        ),
        graph=decode_graph(row["graph"]),
    )


def graph_key(graph: Union[str, Term, None]) -> str:
    """Normalize a graph argument (string, term or None) to its stored value."""
    if graph is None:
        return ""
    if isinstance(graph, str):
        return graph
    encoded = encode_term(graph)
    if encoded.term_type not in _GRAPH_KINDS:
        raise ConstraintViolation(f"Not a graph term: {graph!r}")
    return encoded.value


def subject_key(subject: Union[str, Term]) -> str:
    """Normalize a subject argument to its stored value."""
    if isinstance(subject, str):
        return subject
    encoded = encode_term(subject)
    if encoded.term_type not in _SUBJECT_KINDS:
        raise ConstraintViolation(f"Not a subject term: {subject!r}")
    return encoded.value


# =============================================================================
# pyoxigraph Bridge
# =============================================================================

def from_oxigraph(term: Any, skolemizer: Optional["Skolemizer"] = None) -> Term:
    """
    Convert a pyoxigraph term into a worldstore term.

    pyoxigraph blank nodes are local to their input document, so they go
    through the ingestion call's skolemizer.
    """
    if isinstance(term, ox.NamedNode):
        return NamedNode(term.value)
    if isinstance(term, ox.Literal):
        language = term.language
        datatype = None if language else term.datatype.value
        return Literal(term.value, language=language, datatype=datatype)
    if isinstance(term, ox.BlankNode):
        if skolemizer is None:
            raise ConstraintViolation(f"Blank node _:{term.value} needs a skolemizer")
        return BlankNode(skolemizer.skolemize(term.value))
    if isinstance(term, ox.DefaultGraph):
        return DEFAULT_GRAPH
    raise ConstraintViolation(f"Unsupported RDF term: {term!r}")


def to_oxigraph(term: Term) -> Any:
    """
    Convert a worldstore term into a pyoxigraph term.

    Skolemized blank nodes become IRIs so that subject and object positions
    join on the same identity in a hydrated graph.
    """
    kind = term_type_of(term)
    if kind is TermType.NAMED_NODE or kind is TermType.BLANK_NODE:
        return ox.NamedNode(term.value)
    if kind is TermType.LITERAL:
        if term.language:
            return ox.Literal(term.value, language=term.language)
        if term.datatype:
            return ox.Literal(term.value, datatype=ox.NamedNode(term.datatype))
        return ox.Literal(term.value)
    if kind is TermType.DEFAULT_GRAPH:
        return ox.DefaultGraph()
    raise ConstraintViolation(f"Unhandled term type: {kind!r}")


def quad_from_oxigraph(quad: Any, skolemizer: Optional["Skolemizer"] = None) -> Quad:
    """Convert a pyoxigraph Quad (or Triple, placed in the default graph)."""
    graph = getattr(quad, "graph_name", None)
    return Quad(
        subject=from_oxigraph(quad.subject, skolemizer),
        predicate=from_oxigraph(quad.predicate, skolemizer),
        object=from_oxigraph(quad.object, skolemizer),
        graph=DEFAULT_GRAPH if graph is None else from_oxigraph(graph, skolemizer),
    )


def quad_to_oxigraph(quad: Union[Quad, Statement]) -> Any:
    """Convert a worldstore quad or statement into a pyoxigraph Quad."""
    return ox.Quad(
        to_oxigraph(quad.subject),
        to_oxigraph(quad.predicate),
        to_oxigraph(quad.object),
        to_oxigraph(quad.graph),
    )
