"""
Corpus-wide statistics exposed to rankers.

Statistics are computed once per evaluation run: layer statistics for every
section + layer field and term statistics for every query term are prefetched
from the retrieval service; any other term (e.g. document-side terms needed
for normalization) is looked up lazily and cached for the rest of the run.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ranking_layers.datasets import RetrievalService
    from ranking_layers.term_vector import TermVector


@dataclass(frozen=True)
class TermStatistics:
    """Number of documents containing a term and its total frequency."""

    doc_freq: int
    total_term_freq: int


@dataclass(frozen=True)
class LayerStatistics:
    """Collection statistics for one (section + layer) field."""

    max_doc: int
    doc_count: int
    sum_total_term_freq: int


ZERO_TERM_STATISTICS = TermStatistics(0, 0)
ZERO_LAYER_STATISTICS = LayerStatistics(0, 0, 0)


class Statistics:
    """
    Read-only index statistics for one evaluation run.

    Args:
        num_documents: Total number of documents in the index.
        layer_stats: Statistics per field (section + layer).
        term_stats: Prefetched statistics per (field, value).
        service: Optional retrieval service used to resolve cache misses.
        sections: Section prefixes configured for the run.
    """

    def __init__(
        self,
        num_documents: int,
        layer_stats: Mapping[str, LayerStatistics],
        term_stats: Mapping[tuple[str, str], TermStatistics] | None = None,
        service: RetrievalService | None = None,
        sections: Iterable[str] = ("",),
    ):
        self._num_documents = num_documents
        self._layer_stats = dict(layer_stats)
        self._term_stats: dict[tuple[str, str], TermStatistics] = dict(term_stats or {})
        self._service = service
        self._sections = tuple(sections)
        self._lock = threading.Lock()

    @property
    def num_documents(self) -> int:
        return self._num_documents

    @property
    def layers(self) -> frozenset[str]:
        return frozenset(self._layer_stats)

    @property
    def sections(self) -> tuple[str, ...]:
        return self._sections

    def layer_doc_count(self, layer: str) -> int:
        """Number of documents having at least one term in ``layer``."""
        return self._layer_stats.get(layer, ZERO_LAYER_STATISTICS).doc_count

    def total_terms(self, layer: str) -> int:
        return self._layer_stats.get(layer, ZERO_LAYER_STATISTICS).sum_total_term_freq

    def term_statistics(self, layer: str, value: str) -> TermStatistics:
        key = (layer, value)
        with self._lock:
            stats = self._term_stats.get(key)
        if stats is not None:
            return stats
        if self._service is None:
            return ZERO_TERM_STATISTICS
        stats = self._service.term_statistics(layer, value)
        with self._lock:
            self._term_stats.setdefault(key, stats)
        return stats

    def doc_freq(self, layer: str, value: str) -> int:
        """Document frequency used for IDF (``layer`` must include the section prefix)."""
        return self.term_statistics(layer, value).doc_freq

    def total_term_frequency(self, layer: str, value: str) -> int:
        return self.term_statistics(layer, value).total_term_freq

    @classmethod
    def compute(
        cls,
        service: RetrievalService,
        layers: Iterable[str],
        query_vectors: Iterable[TermVector],
        sections: Iterable[str] = ("",),
    ) -> Statistics:
        """
        Prefetch statistics for the configured fields and all query terms.

        Args:
            service: Retrieval service answering statistics requests.
            layers: Configured layer names.
            query_vectors: Vectors of all the queries of the run.
            sections: Section prefixes combined with every layer.

        Returns:
            A Statistics object bound to ``service`` for lazy lookups.
        """
        sections = tuple(sections) or ("",)
        layers = tuple(layers)

        layer_stats = {
            section + layer: service.layer_statistics(section + layer)
            for section in sections
            for layer in layers
        }

        term_stats: dict[tuple[str, str], TermStatistics] = {}
        for vector in query_vectors:
            for term in vector:
                for section in sections:
                    key = (section + term.layer, term.value)
                    if key not in term_stats:
                        term_stats[key] = service.term_statistics(*key)

        return cls(service.num_documents(), layer_stats, term_stats, service, sections)
