"""
Ranking strategies scoring matched documents against a query.

Every ranker follows the same contract: given the query vector, the vectors of
the documents matched by the query (under the boolean model) and the run's
Statistics, return one score per document. Scores are only used to order
documents within one setting; they are never compared across settings.

Two strategies are provided:
1. TfIdfRanker - multi-layer, multi-section TF-IDF with optional weight
   rescaling and per-section cosine normalization
2. SemanticWeightRanker - single-section TF-IDF where a fixed semantic weight
   is split evenly among the non-textual layers present in the query

Usage:
    from ranking_layers.rankers import RankerConfig, create_ranker

    ranker = create_ranker(RankerConfig(type="tfidf", weights="textual:0.5 uri:0.5"))
    scores = ranker.rank(query_vector, doc_vectors, statistics)
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import numpy as np

from ranking_layers.errors import ConfigurationError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ranking_layers.statistics import Statistics
    from ranking_layers.term_vector import TermVector


# =============================================================================
# Protocol
# =============================================================================


class Ranker(Protocol):
    """Scores documents against a query; ``scores[i]`` belongs to ``doc_vectors[i]``."""

    def rank(
        self,
        query_vector: TermVector,
        doc_vectors: Sequence[TermVector],
        statistics: Statistics,
    ) -> NDArray[np.float64]: ...


# =============================================================================
# Scoring primitives
# =============================================================================


def idf_log(num_documents: int, doc_freq: int) -> float:
    """IDF as ln(N / df); 0 when the term or the corpus is empty."""
    if doc_freq <= 0 or num_documents <= 0:
        return 0.0
    return math.log(num_documents / doc_freq)


def idf_smoothed(num_documents: int, doc_freq: int) -> float:
    """Lucene-style IDF: ln(N / (df + 1)) + 1; 0 for an empty corpus."""
    if num_documents <= 0:
        return 0.0
    return math.log(num_documents / (doc_freq + 1)) + 1.0


def tf_log(frequency: float) -> float:
    """Document-side TF: 1 + ln(tf) for tf > 0."""
    return 1.0 + math.log(frequency) if frequency > 0 else 0.0


# =============================================================================
# Multi-layer TF-IDF
# =============================================================================


class TfIdfRanker:
    """
    Multi-layer TF-IDF ranker.

    For each section and each query term, every document containing the term in
    the ``section + layer`` field gets::

        tf_doc * idf^2 * tf_query * layer_weight * section_weight [/ norm]

    with tf_doc = 1 + ln(raw frequency), tf_query = query term weight and
    idf = ln(N / df).

    Args:
        layer_weights: Layer-to-weight map; missing layers weigh 0.
        section_weights: Section-prefix-to-weight map; defaults to {"": 1.0}.
        rescaled_layers: Layers whose total weight is kept constant: when only
            some of them are present in the query, the present ones are scaled
            up so that their sum equals the configured sum.
        normalize: Divide each contribution by the per-section L2 norm of the
            document's tf*idf values.
    """

    def __init__(
        self,
        layer_weights: Mapping[str, float],
        section_weights: Mapping[str, float] | None = None,
        rescaled_layers: Iterable[str] = (),
        normalize: bool = False,
    ):
        self.layer_weights = dict(layer_weights)
        self.section_weights = dict(section_weights) if section_weights else {"": 1.0}
        self.rescaled_layers = frozenset(rescaled_layers)
        self.normalize = normalize

    @property
    def sections(self) -> tuple[str, ...]:
        return tuple(self.section_weights)

    def effective_layer_weights(self, query_layers: Iterable[str]) -> dict[str, float]:
        """Apply weight rescaling for the layers present in the query."""
        weights = self.layer_weights
        if not self.rescaled_layers:
            return weights

        present = frozenset(query_layers)
        sum_configured = 0.0
        sum_present = 0.0
        for layer in self.rescaled_layers:
            weight = weights.get(layer, 0.0)
            sum_configured += weight
            if layer in present:
                sum_present += weight

        if sum_present > 0.0 and sum_present != sum_configured:
            multiplier = sum_configured / sum_present
            weights = dict(weights)
            for layer in self.rescaled_layers:
                weights[layer] = weights.get(layer, 0.0) * multiplier
        return weights

    def _document_norms(
        self,
        section: str,
        doc_vectors: Sequence[TermVector],
        statistics: Statistics,
    ) -> NDArray[np.float64]:
        num_docs = statistics.num_documents
        section_layers = [section + layer for layer in self.layer_weights]
        norms = np.zeros(len(doc_vectors), dtype=np.float64)
        for i, vector in enumerate(doc_vectors):
            total = 0.0
            for field_name in section_layers:
                for term in vector.get_terms(field_name):
                    tfd = tf_log(term.frequency)
                    idf = idf_log(num_docs, statistics.doc_freq(field_name, term.value))
                    total += (tfd * idf) ** 2
            norms[i] = math.sqrt(total)
        return norms

    def rank(
        self,
        query_vector: TermVector,
        doc_vectors: Sequence[TermVector],
        statistics: Statistics,
    ) -> NDArray[np.float64]:
        layer_weights = self.effective_layer_weights(query_vector.layers)
        num_docs = statistics.num_documents
        scores = np.zeros(len(doc_vectors), dtype=np.float64)

        for section, section_weight in self.section_weights.items():
            norms = self._document_norms(section, doc_vectors, statistics) if self.normalize else None

            # Iterate on query terms first so that per-term state (df, idf) is reused
            for query_term in query_vector:
                layer_weight = layer_weights.get(query_term.layer, 0.0)
                field_name = section + query_term.layer
                idf = idf_log(num_docs, statistics.doc_freq(field_name, query_term.value))
                factor = idf * idf * query_term.weight * layer_weight * section_weight
                if factor == 0.0:
                    continue

                for i, doc_vector in enumerate(doc_vectors):
                    doc_term = doc_vector.get_term(field_name, query_term.value)
                    if doc_term is None or doc_term.frequency <= 0:
                        continue
                    contribution = tf_log(doc_term.frequency) * factor
                    if norms is not None:
                        if norms[i] <= 0.0:
                            continue
                        contribution /= norms[i]
                    scores[i] += contribution

        return scores

    def __repr__(self) -> str:
        return (
            f"TfIdfRanker(section_weights={self.section_weights}, "
            f"layer_weights={self.layer_weights}, "
            f"rescaled_layers={sorted(self.rescaled_layers)}, normalize={self.normalize})"
        )


# =============================================================================
# Semantic-weight TF-IDF
# =============================================================================


class SemanticWeightRanker:
    """
    TF-IDF ranker with a fixed total weight for semantic (non-textual) layers.

    The textual layer weighs ``1 - semantic_weight``; ``semantic_weight`` is
    split evenly among the semantic layers actually present in the query, not
    among all the layers of the index.
    """

    def __init__(self, textual_layer: str = "textual", semantic_weight: float = 0.5):
        if not 0.0 <= semantic_weight <= 1.0:
            raise ConfigurationError(
                f"Semantic weight must be in [0, 1], got {semantic_weight}"
            )
        self.textual_layer = textual_layer
        self.semantic_weight = semantic_weight

    @property
    def sections(self) -> tuple[str, ...]:
        return ("",)

    def layer_weights(self, query_layers: Iterable[str]) -> dict[str, float]:
        semantic_layers = [layer for layer in query_layers if layer != self.textual_layer]
        weights = {self.textual_layer: 1.0 - self.semantic_weight}
        for layer in semantic_layers:
            weights[layer] = self.semantic_weight / len(semantic_layers)
        return weights

    def rank(
        self,
        query_vector: TermVector,
        doc_vectors: Sequence[TermVector],
        statistics: Statistics,
    ) -> NDArray[np.float64]:
        weights = self.layer_weights(query_vector.layers)
        num_docs = statistics.num_documents
        scores = np.zeros(len(doc_vectors), dtype=np.float64)

        for query_term in query_vector:
            idf = idf_smoothed(num_docs, statistics.doc_freq(query_term.layer, query_term.value))
            factor = idf * idf * query_term.weight * weights.get(query_term.layer, 0.0)
            if factor == 0.0:
                continue
            for i, doc_vector in enumerate(doc_vectors):
                doc_term = doc_vector.get_term(query_term.layer, query_term.value)
                if doc_term is None or doc_term.frequency <= 0 or doc_term.weight <= 0.0:
                    continue
                scores[i] += math.sqrt(doc_term.weight) * factor

        return scores

    def __repr__(self) -> str:
        return (
            f"SemanticWeightRanker(textual_layer={self.textual_layer!r}, "
            f"semantic_weight={self.semantic_weight})"
        )


# =============================================================================
# Configuration
# =============================================================================


def parse_weights(value: str | Mapping[str, float] | None) -> dict[str, float]:
    """
    Parse a weight string such as ``"textual:0.5 uri:0.25 type:0.25"``.

    Mappings are validated and copied. Weights must be non-negative numbers.

    Raises:
        ConfigurationError: If an entry is malformed or a weight is negative.
    """
    if value is None:
        return {}
    if isinstance(value, Mapping):
        pairs = [(str(k), v) for k, v in value.items()]
    else:
        pairs = []
        for entry in value.replace(",", " ").split():
            name, sep, weight_text = entry.rpartition(":")
            if not sep:
                raise ConfigurationError(f"Invalid weight entry {entry!r} (expected name:weight)")
            pairs.append((name.strip(), weight_text))

    weights: dict[str, float] = {}
    for name, raw in pairs:
        try:
            weight = float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid weight {raw!r} for {name!r}") from None
        if math.isnan(weight) or weight < 0.0:
            raise ConfigurationError(f"Weight for {name!r} must be non-negative, got {raw!r}")
        weights[name] = weight
    return weights


@dataclass
class RankerConfig:
    """Ranker configuration; ``type`` selects the strategy."""

    type: str = "tfidf"
    weights: str | Mapping[str, float] | None = None
    section_weights: str | Mapping[str, float] | None = None
    rescaled_layers: list[str] = field(default_factory=list)
    normalize: bool = False
    textual_layer: str = "textual"
    semantic_weight: float = 0.5


def _create_tfidf(config: RankerConfig) -> Ranker:
    layer_weights = parse_weights(config.weights)
    if not layer_weights:
        raise ConfigurationError("The tfidf ranker requires layer weights")
    section_weights = parse_weights(config.section_weights) or {"": 1.0}
    return TfIdfRanker(layer_weights, section_weights, config.rescaled_layers, config.normalize)


def _create_semantic(config: RankerConfig) -> Ranker:
    return SemanticWeightRanker(config.textual_layer, config.semantic_weight)


RANKER_TYPES = {
    "tfidf": _create_tfidf,
    "semantic": _create_semantic,
}


def create_ranker(config: RankerConfig) -> Ranker:
    """
    Instantiate the ranker described by ``config``.

    Raises:
        ConfigurationError: For an unknown type or invalid weights.
    """
    factory = RANKER_TYPES.get(config.type.strip().lower())
    if factory is None:
        raise ConfigurationError(
            f"Unsupported ranker type {config.type!r} (supported: {', '.join(RANKER_TYPES)})"
        )
    return factory(config)


def ranker_sections(ranker: Ranker) -> tuple[str, ...]:
    """Section prefixes a ranker reads statistics for."""
    return tuple(getattr(ranker, "sections", ("",)))


__all__ = [
    "Ranker",
    "TfIdfRanker",
    "SemanticWeightRanker",
    "RankerConfig",
    "RANKER_TYPES",
    "create_ranker",
    "parse_weights",
    "ranker_sections",
    "idf_log",
    "idf_smoothed",
    "tf_log",
]
