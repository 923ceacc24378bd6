"""
Retrieval service protocol, an in-memory reference index and file loaders.

File formats:
    term vectors  ``id<TAB>layer<TAB>value<TAB>frequency<TAB>weight`` (optionally gzipped)
    relevances    ``query_id doc[:grade] doc[:grade] ...`` (grade defaults to 1)
    rankings      ``key doc doc ...`` (best first)
"""

from __future__ import annotations

import gzip
from collections import defaultdict
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Protocol, TextIO

from ranking_layers.statistics import (
    ZERO_TERM_STATISTICS,
    LayerStatistics,
    TermStatistics,
)
from ranking_layers.term_vector import TermVector, read_term_vectors

# =============================================================================
# Protocol for the retrieval backend (duck typing)
# =============================================================================


class RetrievalService(Protocol):
    """Operations the evaluation needs from an index; must be thread-safe."""

    def search(self, layer: str, values: Iterable[str], max_docs: int) -> list[str]: ...

    def term_statistics(self, layer: str, value: str) -> TermStatistics: ...

    def layer_statistics(self, layer: str) -> LayerStatistics: ...

    def document_vector(self, doc_id: str) -> TermVector: ...

    def num_documents(self) -> int: ...


# =============================================================================
# In-memory index
# =============================================================================


class InMemoryIndex:
    """
    Read-only index over documents already analyzed into term vectors.

    Args:
        documents: Mapping from document ID to its term vector.
    """

    def __init__(self, documents: Mapping[str, TermVector]):
        self._documents = dict(documents)
        self._postings: dict[tuple[str, str], list[str]] = defaultdict(list)
        self._term_stats: dict[tuple[str, str], TermStatistics] = {}
        layer_docs: dict[str, int] = defaultdict(int)
        layer_terms: dict[str, int] = defaultdict(int)
        total_freqs: dict[tuple[str, str], int] = defaultdict(int)

        for doc_id in sorted(self._documents):
            vector = self._documents[doc_id]
            for term in vector:
                self._postings[term.key].append(doc_id)
                total_freqs[term.key] += term.frequency
                layer_terms[term.layer] += term.frequency
            for layer in vector.layers:
                layer_docs[layer] += 1

        for key, postings in self._postings.items():
            self._term_stats[key] = TermStatistics(len(postings), total_freqs[key])
        self._layer_stats = {
            layer: LayerStatistics(len(self._documents), count, layer_terms[layer])
            for layer, count in layer_docs.items()
        }

    def num_documents(self) -> int:
        return len(self._documents)

    @property
    def layers(self) -> frozenset[str]:
        return frozenset(self._layer_stats)

    def search(self, layer: str, values: Iterable[str], max_docs: int) -> list[str]:
        """OR query over ``values`` in ``layer``: most matched values first, then by ID."""
        matches: dict[str, int] = defaultdict(int)
        for value in set(values):
            for doc_id in self._postings.get((layer, value), ()):
                matches[doc_id] += 1
        ranked = sorted(matches.items(), key=lambda item: (-item[1], item[0]))
        return [doc_id for doc_id, _ in ranked[:max_docs]]

    def term_statistics(self, layer: str, value: str) -> TermStatistics:
        return self._term_stats.get((layer, value), ZERO_TERM_STATISTICS)

    def layer_statistics(self, layer: str) -> LayerStatistics:
        return self._layer_stats.get(layer, LayerStatistics(len(self._documents), 0, 0))

    def document_vector(self, doc_id: str) -> TermVector:
        try:
            return self._documents[doc_id]
        except KeyError:
            raise KeyError(f"Unknown document {doc_id!r}") from None

    def __len__(self) -> int:
        return len(self._documents)

    def __repr__(self) -> str:
        return f"InMemoryIndex(documents={len(self._documents)}, layers={sorted(self.layers)})"


# =============================================================================
# Loaders
# =============================================================================


def _open_text(path: str | Path) -> TextIO:
    path = Path(path)
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, encoding="utf-8")


def load_term_vectors(path: str | Path) -> dict[str, TermVector]:
    """Load a TSV file of term vectors; a repeated ID adds to the earlier vector."""
    vectors: dict[str, TermVector] = {}
    with _open_text(path) as f:
        for vector_id, vector in read_term_vectors(f):
            previous = vectors.get(vector_id)
            vectors[vector_id] = vector if previous is None else previous.add(vector)
    return vectors


def _parse_judgment(token: str) -> tuple[str, float]:
    # Document IDs may contain ':' (URIs), so only a numeric suffix is a grade
    doc_id, sep, grade = token.rpartition(":")
    if sep and doc_id:
        try:
            return doc_id, float(grade)
        except ValueError:
            pass
    return token, 1.0


def parse_relevances(lines: Iterable[str]) -> dict[str, dict[str, float]]:
    relevances: dict[str, dict[str, float]] = {}
    for line in lines:
        tokens = line.split()
        if not tokens or tokens[0].startswith("#"):
            continue
        judgments = relevances.setdefault(tokens[0], {})
        for token in tokens[1:]:
            doc_id, grade = _parse_judgment(token)
            judgments[doc_id] = grade
    return relevances


def load_relevances(path: str | Path) -> dict[str, dict[str, float]]:
    """
    Load gold relevances.

    Returns:
        query ID -> document ID -> graded relevance.
    """
    with _open_text(path) as f:
        return parse_relevances(f)


def load_rankings(path: str | Path) -> dict[str, list[str]]:
    """Load rankings as key -> document IDs (best first), preserving file order."""
    rankings: dict[str, list[str]] = {}
    with _open_text(path) as f:
        for line in f:
            tokens = line.split()
            if not tokens or tokens[0].startswith("#"):
                continue
            rankings.setdefault(tokens[0], []).extend(tokens[1:])
    return rankings


__all__ = [
    "RetrievalService",
    "InMemoryIndex",
    "load_term_vectors",
    "load_relevances",
    "load_rankings",
    "parse_relevances",
]
