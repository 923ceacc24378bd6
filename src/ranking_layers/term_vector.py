"""
Sparse weighted term vectors.

A TermVector is the representation of a document or a query after analysis:
an immutable list of Terms strictly sorted by (layer, value), with no
duplicate keys. All the vector algebra below (add, product, projection) is
implemented as merge-style walks over the two sorted lists, the same way a
sparse vector sum is computed.

Usage:
    from ranking_layers.term_vector import TermVector

    vector = (
        TermVector.builder()
        .add_term("textual", "obama")
        .add_term("uri", "dbpedia:Barack_Obama", weight=0.5)
        .build()
    )
"""

from __future__ import annotations

from bisect import bisect_left
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from functools import total_ordering
from typing import TextIO


@total_ordering
@dataclass(frozen=True, eq=False, slots=True)
class Term:
    """
    A (layer, value) pair with its raw frequency and weight.

    Identity (``==``, ``hash``) and ordering only look at the (layer, value)
    key; use :meth:`same_as` to also compare frequency and weight.
    """

    layer: str
    value: str
    frequency: int = 1
    weight: float = 1.0

    def __post_init__(self):
        if self.frequency < 0:
            raise ValueError(
                f"Negative frequency {self.frequency} for term {self.layer}:{self.value}"
            )

    @property
    def key(self) -> tuple[str, str]:
        return (self.layer, self.value)

    def same_as(self, other: Term) -> bool:
        return (
            self.key == other.key
            and self.frequency == other.frequency
            and self.weight == other.weight
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Term):
            return NotImplemented
        return self.key == other.key

    def __lt__(self, other: Term) -> bool:
        if not isinstance(other, Term):
            return NotImplemented
        return self.key < other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return f"Term({self.layer!r}, {self.value!r}, frequency={self.frequency}, weight={self.weight})"

    def __str__(self) -> str:
        suffix = "" if self.weight == 1.0 else f"/{self.weight:.2f}"
        return f"{self.layer}: {self.value}{suffix}"


class TermVector:
    """
    Immutable vector of Terms sorted by (layer, value) without duplicates.

    Instances are created through :meth:`builder` (or the algebra methods);
    the private constructor trusts its input to be sorted and unique.
    """

    EMPTY: TermVector

    __slots__ = ("_terms", "_keys", "_layers", "_hash")

    def __init__(self, terms: Iterable[Term] = ()):
        self._terms: tuple[Term, ...] = tuple(terms)
        self._keys: list[tuple[str, str]] = [term.key for term in self._terms]
        self._layers: frozenset[str] | None = None
        self._hash: int | None = None

    @staticmethod
    def builder(base: TermVector | None = None) -> TermVectorBuilder:
        builder = TermVectorBuilder()
        if base is not None:
            builder.add_terms(base)
        return builder

    @classmethod
    def of(cls, terms: Iterable[Term]) -> TermVector:
        """Build a vector from arbitrary terms, merging duplicates."""
        return TermVectorBuilder().add_terms(terms).build()

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def terms(self) -> tuple[Term, ...]:
        return self._terms

    @property
    def layers(self) -> frozenset[str]:
        if self._layers is None:
            self._layers = frozenset(term.layer for term in self._terms)
        return self._layers

    def __len__(self) -> int:
        return len(self._terms)

    def __iter__(self) -> Iterator[Term]:
        return iter(self._terms)

    def __getitem__(self, index: int) -> Term:
        return self._terms[index]

    def is_empty(self) -> bool:
        return not self._terms

    def get_terms(self, layer: str) -> tuple[Term, ...]:
        """Return all the terms of ``layer`` (binary search, O(log n + k))."""
        start = bisect_left(self._keys, (layer, ""))
        # layer + "\0" sorts right after every (layer, value) key
        end = bisect_left(self._keys, (layer + "\0", ""), lo=start)
        return self._terms[start:end]

    def get_term(self, layer: str, value: str) -> Term | None:
        key = (layer, value)
        index = bisect_left(self._keys, key)
        if index < len(self._keys) and self._keys[index] == key:
            return self._terms[index]
        return None

    # -------------------------------------------------------------------------
    # Algebra
    # -------------------------------------------------------------------------

    def scale(self, factor: float) -> TermVector:
        return TermVector(
            Term(t.layer, t.value, t.frequency, t.weight * factor) for t in self._terms
        )

    def project(self, layers: Iterable[str]) -> TermVector:
        """Keep the terms of the given layers; returns ``self`` if nothing is removed."""
        layer_set = frozenset(layers)
        if self.layers <= layer_set:
            return self
        return TermVector(t for t in self._terms if t.layer in layer_set)

    def add(self, other: TermVector) -> TermVector:
        if not self._terms:
            return other
        if not other._terms:
            return self

        terms1, terms2 = self._terms, other._terms
        merged: list[Term] = []
        i = j = 0
        while i < len(terms1) and j < len(terms2):
            t1, t2 = terms1[i], terms2[j]
            if t1.key == t2.key:
                merged.append(
                    Term(t1.layer, t1.value, t1.frequency + t2.frequency, t1.weight + t2.weight)
                )
                i += 1
                j += 1
            elif t1.key < t2.key:
                merged.append(t1)
                i += 1
            else:
                merged.append(t2)
                j += 1
        merged.extend(terms1[i:])
        merged.extend(terms2[j:])
        return TermVector(merged)

    def product(self, other: TermVector) -> TermVector:
        """
        Intersect two vectors; weights multiply.

        Frequency is taken from the smaller vector, or the lower of the two
        frequencies when both vectors have the same size.
        """
        if not self._terms or not other._terms:
            return TermVector.EMPTY
        if len(self._terms) > len(other._terms):
            return other.product(self)

        same_size = len(self._terms) == len(other._terms)
        terms1, terms2 = self._terms, other._terms
        result: list[Term] = []
        i = j = 0
        while i < len(terms1) and j < len(terms2):
            t1, t2 = terms1[i], terms2[j]
            if t1.key == t2.key:
                frequency = min(t1.frequency, t2.frequency) if same_size else t1.frequency
                result.append(Term(t1.layer, t1.value, frequency, t1.weight * t2.weight))
                i += 1
                j += 1
            elif t1.key < t2.key:
                i += 1
            else:
                j += 1
        return TermVector(result) if result else TermVector.EMPTY

    __add__ = add
    __mul__ = product

    # -------------------------------------------------------------------------
    # Comparison
    # -------------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if other is self:
            return True
        if not isinstance(other, TermVector):
            return NotImplemented
        if len(self._terms) != len(other._terms):
            return False
        return all(a.same_as(b) for a, b in zip(self._terms, other._terms))

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(tuple((t.key, t.frequency, t.weight) for t in self._terms))
        return self._hash

    def __lt__(self, other: TermVector) -> bool:
        for a, b in zip(self._terms, other._terms):
            if a.key != b.key:
                return a.key < b.key
            if a.weight != b.weight:
                return a.weight < b.weight
        return len(self._terms) < len(other._terms)

    def __repr__(self) -> str:
        return f"TermVector({str(self)})"

    def __str__(self) -> str:
        parts: list[str] = []
        layer = None
        for term in self._terms:
            if term.layer != layer:
                parts.append(("; " if parts else "") + f"{term.layer}:")
                layer = term.layer
            parts.append(f" {term.value}")
            if term.weight != 1.0:
                parts.append(f"/{term.weight:.2f}")
        return "[" + "".join(parts) + "]"


TermVector.EMPTY = TermVector()


class TermVectorBuilder:
    """Accumulates terms, merging frequency and weight of repeated keys."""

    def __init__(self):
        self._entries: dict[tuple[str, str], list] = {}

    def add_term(
        self,
        term_or_layer: Term | str,
        value: str | None = None,
        frequency: int = 1,
        weight: float = 1.0,
    ) -> TermVectorBuilder:
        if isinstance(term_or_layer, Term):
            term = term_or_layer
        else:
            if value is None:
                raise ValueError("A term value is required")
            term = Term(term_or_layer, value, frequency, weight)

        entry = self._entries.get(term.key)
        if entry is None:
            self._entries[term.key] = [term.frequency, term.weight]
        else:
            entry[0] += term.frequency
            entry[1] += term.weight
        return self

    def add_terms(self, terms: Iterable[Term]) -> TermVectorBuilder:
        for term in terms:
            self.add_term(term)
        return self

    def build(self) -> TermVector:
        if not self._entries:
            return TermVector.EMPTY
        return TermVector(
            Term(layer, value, frequency, weight)
            for (layer, value), (frequency, weight) in sorted(self._entries.items())
        )


# =============================================================================
# TSV serialization
# =============================================================================

_ESCAPES = {"\t": "\\t", "\n": "\\n", "\r": "\\r", "\\": "\\\\"}
_UNESCAPES = {"t": "\t", "n": "\n", "r": "\r", "\\": "\\"}


def _escape(text: str) -> str:
    return "".join(_ESCAPES.get(c, c) for c in text)


def _unescape(text: str) -> str:
    if "\\" not in text:
        return text
    out: list[str] = []
    chars = iter(text)
    for c in chars:
        if c != "\\":
            out.append(c)
            continue
        nxt = next(chars, "")
        # unknown escapes are kept verbatim
        out.append(_UNESCAPES.get(nxt, "\\" + nxt))
    return "".join(out)


def write_term_vectors(stream: TextIO, vectors: Mapping[str, TermVector]) -> None:
    """
    Write vectors as ``id<TAB>layer<TAB>value<TAB>frequency<TAB>weight`` lines.

    Args:
        stream: Text stream to write to.
        vectors: Mapping from document/query ID to its vector.
    """
    for vector_id, vector in vectors.items():
        escaped_id = _escape(vector_id)
        for term in vector:
            stream.write(
                f"{escaped_id}\t{_escape(term.layer)}\t{_escape(term.value)}"
                f"\t{term.frequency}\t{term.weight!r}\n"
            )


def read_term_vectors(stream: Iterable[str]) -> Iterator[tuple[str, TermVector]]:
    """
    Read vectors written by :func:`write_term_vectors`.

    Consecutive lines sharing the same ID form one vector.

    Yields:
        (id, vector) pairs in file order.
    """
    current_id: str | None = None
    builder = TermVectorBuilder()
    for line_number, line in enumerate(stream, start=1):
        line = line.rstrip("\r\n")
        if not line:
            continue
        fields = line.split("\t")
        if len(fields) != 5:
            raise ValueError(f"Line {line_number}: expected 5 tab-separated fields, got {len(fields)}")
        vector_id, layer, value, frequency, weight = (_unescape(f) for f in fields)
        if current_id is not None and vector_id != current_id:
            yield current_id, builder.build()
            builder = TermVectorBuilder()
        current_id = vector_id
        builder.add_term(layer, value, int(frequency), float(weight))
    if current_id is not None:
        yield current_id, builder.build()
