"""
Evaluation of every combination of semantic layers over a query set.

For each query the configured layers are searched once; each setting (a
non-empty subset of the layers) then ranks the union of its layers' candidates
using only its own terms, and the ranking is scored against the gold
relevances. Per-setting scores are averaged over queries and compared with
the baseline setting through a paired significance test.

Parallelism:
    Queries are processed by a ThreadPoolExecutor (one task per query). The
    aggregation happens afterwards, single-threaded and in query-ID order, so
    the results do not depend on the number of workers.

Usage:
    from ranking_layers.evaluation import Evaluation

    evaluation = Evaluation(index, ranker, ["textual", "uri", "type"], ["textual"])
    report = evaluation.run(query_vectors, relevances)
    report.ranked_settings()
"""

from __future__ import annotations

import math
import os
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from tqdm import tqdm

from ranking_layers.datasets import RetrievalService
from ranking_layers.errors import ConfigurationError, QueryEvaluationError
from ranking_layers.metrics import REPORTED_METRICS, Evaluator, Metric, RankingScore
from ranking_layers.rankers import Ranker, ranker_sections
from ranking_layers.report import format_top_scores
from ranking_layers.settings import Setting, enumerate_settings, find_baseline
from ranking_layers.significance import SignificanceTester
from ranking_layers.statistics import Statistics
from ranking_layers.term_vector import TermVector

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_MAX_DOCS = int(os.environ.get("EVAL_MAX_DOCS", "1000"))
DEFAULT_CUTOFF = int(os.environ.get("EVAL_CUTOFF", "10"))
DEFAULT_NUM_WORKERS = int(os.environ.get("EVAL_NUM_WORKERS", "0"))  # 0 = auto
DEFAULT_CACHE_SIZE = int(os.environ.get("EVAL_CACHE_SIZE", "100000"))

RANKING_LIMIT = 10  # hits listed per query in the setting rows


# =============================================================================
# Document vector cache
# =============================================================================


class DocumentVectorCache:
    """
    Bounded LRU cache of document vectors shared by all the query workers.

    The loader runs outside the lock: two workers missing the same document
    both load it and the second insertion wins. ``max_size=0`` disables caching.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE):
        if max_size < 0:
            raise ValueError(f"max_size must be non-negative, got {max_size}")
        self.max_size = max_size
        self._entries: OrderedDict[str, TermVector] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_or_load(self, doc_id: str, loader: Callable[[str], TermVector]) -> TermVector:
        with self._lock:
            vector = self._entries.get(doc_id)
            if vector is not None:
                self._entries.move_to_end(doc_id)
                self.hits += 1
                return vector

        vector = loader(doc_id)

        with self._lock:
            self.misses += 1
            if self.max_size > 0:
                self._entries[doc_id] = vector
                self._entries.move_to_end(doc_id)
                while len(self._entries) > self.max_size:
                    self._entries.popitem(last=False)
        return vector

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._entries


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class Hit:
    """A ranked document with its score."""

    doc_id: str
    score: float


@dataclass
class QueryEvaluation:
    """Rankings and scores of one query, indexed by setting position."""

    query_id: str
    query_layers: frozenset[str]
    hits: list[list[Hit]]
    scores: list[RankingScore]

    def ranking(self, position: int, limit: int | None = None) -> list[str]:
        hits = self.hits[position] if limit is None else self.hits[position][:limit]
        return [hit.doc_id for hit in hits]


def _sort_hits(hits: Iterable[Hit]) -> list[Hit]:
    return sorted(hits, key=lambda hit: (-hit.score, hit.doc_id))


@dataclass
class EvaluationReport:
    """Outcome of :meth:`Evaluation.run`."""

    settings: list[Setting]
    baseline: int
    sort_metric: Metric
    metrics: tuple[Metric, ...]
    aggregates: list[RankingScore]
    pvalues: list[dict[Metric, float]]
    queries: dict[str, QueryEvaluation]
    relevances: Mapping[str, Mapping[str, float]]
    failed_queries: dict[str, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def baseline_setting(self) -> Setting:
        return self.settings[self.baseline]

    def ranked_settings(self) -> list[int]:
        """Setting positions sorted by the sort metric (best first, ties by label)."""
        labelled = [(setting.label, position) for position, setting in enumerate(self.settings)]
        key = RankingScore.sort_key(self.sort_metric)
        return [
            position
            for _, position in sorted(
                labelled, key=lambda item: (*key(self.aggregates[item[1]]), item[0])
            )
        ]

    def aggregate_rows(self) -> list[dict[str, Any]]:
        """One row per setting (ranked): each metric followed by its p-value."""
        rows = []
        for position in self.ranked_settings():
            row: dict[str, Any] = {"setting": self.settings[position].label}
            score = self.aggregates[position]
            for metric in self.metrics:
                row[str(metric)] = score.get(metric)
                row[f"{metric} p"] = self.pvalues[position][metric]
            rows.append(row)
        return rows

    def setting_rows(self, position: int) -> list[dict[str, Any]]:
        """One row per query for the setting at ``position``."""
        setting = self.settings[position]
        rows = []
        for query_id, evaluation in self.queries.items():
            row: dict[str, Any] = {"query": query_id}
            score = evaluation.scores[position]
            for metric in self.metrics:
                row[str(metric)] = score.get(metric)
            row["ranking"] = " ".join(evaluation.ranking(position, RANKING_LIMIT))
            row["layers"] = ",".join(
                layer for layer in setting.layers if layer in evaluation.query_layers
            )
            rows.append(row)
        return rows

    def query_rows(self, query_id: str) -> list[dict[str, Any]]:
        """One row per setting for one query, sorted by the sort metric."""
        evaluation = self.queries[query_id]
        labelled = [
            (setting.label, evaluation.scores[position])
            for position, setting in enumerate(self.settings)
        ]
        rows = []
        for label, score in RankingScore.sort_scores(labelled, self.sort_metric):
            row: dict[str, Any] = {"setting": label}
            for metric in self.metrics:
                row[str(metric)] = score.get(metric)
            rows.append(row)
        return rows

    def summary(self) -> dict[str, Any]:
        ranked = self.ranked_settings()
        best = ranked[0]
        return {
            "num_queries": len(self.queries),
            "num_failed_queries": len(self.failed_queries),
            "num_settings": len(self.settings),
            "baseline": self.baseline_setting.label,
            "sort_metric": str(self.sort_metric),
            "best_setting": self.settings[best].label,
            "best_score": self.aggregates[best].get(self.sort_metric),
            "baseline_score": self.aggregates[self.baseline].get(self.sort_metric),
            "elapsed_seconds": self.elapsed_seconds,
            "settings": {
                self.settings[position].label: {
                    str(metric): self.aggregates[position].get(metric) for metric in self.metrics
                }
                for position in ranked
            },
        }


# =============================================================================
# Orchestrator
# =============================================================================


def _parse_layers(layers: str | Iterable[str]) -> tuple[str, ...]:
    if isinstance(layers, str):
        layers = layers.replace(",", " ").split()
    return tuple(layers)


class Evaluation:
    """
    Runs every layer combination over a query set.

    Args:
        service: Retrieval backend (thread-safe).
        ranker: Ranker shared by all the settings.
        layers: Configured layers; settings are their non-empty subsets.
        baseline_layers: Layers of the baseline setting.
        sort_metric: Metric used to order settings in the report.
        tester: Significance tester against the baseline.
        max_docs: Maximum candidates retrieved per layer and section.
        cutoff: Largest cutoff of the @n metrics.
        num_workers: Query worker threads (0 = executor default).
        drop_zero_scores: Remove documents scoring exactly 0 from rankings.
        fail_fast: Propagate the first query failure instead of isolating it.
        cache_size: Capacity of the document vector cache.
        progress: Show a progress bar over queries.

    Raises:
        ConfigurationError: For invalid layers, baseline, metric or limits.
    """

    def __init__(
        self,
        service: RetrievalService,
        ranker: Ranker,
        layers: str | Iterable[str],
        baseline_layers: str | Iterable[str],
        sort_metric: Metric | str = "map",
        tester: SignificanceTester | None = None,
        max_docs: int = DEFAULT_MAX_DOCS,
        cutoff: int = DEFAULT_CUTOFF,
        num_workers: int = DEFAULT_NUM_WORKERS,
        drop_zero_scores: bool = True,
        fail_fast: bool = False,
        cache_size: int = DEFAULT_CACHE_SIZE,
        progress: bool = True,
    ):
        if max_docs < 1:
            raise ConfigurationError(f"max_docs must be positive, got {max_docs}")
        if cutoff < 1:
            raise ConfigurationError(f"cutoff must be positive, got {cutoff}")
        if num_workers < 0:
            raise ConfigurationError(f"num_workers must be non-negative, got {num_workers}")
        if cache_size < 0:
            raise ConfigurationError(f"cache_size must be non-negative, got {cache_size}")
        try:
            self.sort_metric = Metric.parse(sort_metric)
        except ValueError as e:
            raise ConfigurationError(str(e)) from None
        if self.sort_metric.at is not None and self.sort_metric.at > cutoff:
            raise ConfigurationError(
                f"Sort metric {self.sort_metric} exceeds the cutoff {cutoff}"
            )

        self.service = service
        self.ranker = ranker
        self.layers = _parse_layers(layers)
        self.settings = enumerate_settings(self.layers)
        self.baseline = find_baseline(self.settings, _parse_layers(baseline_layers))
        self.tester = tester or SignificanceTester()
        self.max_docs = max_docs
        self.cutoff = cutoff
        self.num_workers = num_workers
        self.drop_zero_scores = drop_zero_scores
        self.fail_fast = fail_fast
        self.progress = progress
        self.sections = ranker_sections(ranker) or ("",)
        self.metrics = tuple(m for m in REPORTED_METRICS if m.at is None or m.at <= cutoff)
        self.cache = DocumentVectorCache(cache_size)

    # -------------------------------------------------------------------------
    # Per-query processing
    # -------------------------------------------------------------------------

    def _match(self, query_vector: TermVector) -> dict[str, set[str]]:
        candidates: dict[str, set[str]] = {}
        for layer in self.layers:
            values = [term.value for term in query_vector.get_terms(layer)]
            matched: set[str] = set()
            if values:
                for section in self.sections:
                    matched.update(self.service.search(section + layer, values, self.max_docs))
            candidates[layer] = matched
        return candidates

    def _rank_setting(
        self,
        setting: Setting,
        query_vector: TermVector,
        candidates: Mapping[str, set[str]],
        doc_vectors: Mapping[str, TermVector],
        statistics: Statistics,
    ) -> list[Hit]:
        doc_ids = sorted(set().union(*(candidates[layer] for layer in setting.layers)))
        if not doc_ids:
            return []
        fields = [section + layer for section in self.sections for layer in setting.layers]
        projected_query = query_vector.project(setting.layers)
        projected_docs = [doc_vectors[doc_id].project(fields) for doc_id in doc_ids]
        scores = self.ranker.rank(projected_query, projected_docs, statistics)
        return _sort_hits(
            Hit(doc_id, float(score))
            for doc_id, score in zip(doc_ids, scores, strict=True)
            if not (self.drop_zero_scores and score == 0.0)
        )

    def evaluate_query(
        self,
        query_id: str,
        query_vector: TermVector,
        relevances: Mapping[str, float] | Iterable[str],
        statistics: Statistics,
    ) -> QueryEvaluation:
        """Rank and score one query under every setting."""
        candidates = self._match(query_vector)
        all_docs = sorted(set().union(*candidates.values()))
        doc_vectors = {
            doc_id: self.cache.get_or_load(doc_id, self.service.document_vector)
            for doc_id in all_docs
        }

        hits: list[list[Hit]] = []
        scores: list[RankingScore] = []
        for setting in self.settings:
            setting_hits = self._rank_setting(
                setting, query_vector, candidates, doc_vectors, statistics
            )
            ranking = [hit.doc_id for hit in setting_hits]
            hits.append(setting_hits)
            scores.append(Evaluator(self.cutoff).add(ranking, relevances).get())

        logger.debug(f"Query {query_id}: {len(all_docs)} candidates")
        return QueryEvaluation(
            query_id, query_vector.layers & frozenset(self.layers), hits, scores
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        queries: Mapping[str, TermVector],
        relevances: Mapping[str, Mapping[str, float] | Iterable[str]],
    ) -> EvaluationReport:
        """
        Evaluate every setting over the judged queries.

        Args:
            queries: query ID -> query term vector.
            relevances: query ID -> gold relevances (graded mapping or set).

        Returns:
            The EvaluationReport; failed queries are listed, not aggregated.

        Raises:
            QueryEvaluationError: With ``fail_fast``, for the first failing query.
        """
        start = time.perf_counter()
        query_ids = sorted(set(queries) & set(relevances))
        unjudged = len(queries) - len(query_ids)
        if unjudged:
            logger.warning(f"{unjudged} queries without relevance judgments ignored")
        logger.info(
            f"Evaluating {len(query_ids)} queries over {len(self.settings)} settings "
            f"(layers: {', '.join(self.layers)}; baseline: {self.settings[self.baseline]})"
        )

        statistics = Statistics.compute(
            self.service, self.layers, (queries[q] for q in query_ids), self.sections
        )

        def evaluate_one(query_id: str) -> QueryEvaluation | str:
            try:
                return self.evaluate_query(
                    query_id, queries[query_id], relevances[query_id], statistics
                )
            except Exception as e:
                if self.fail_fast:
                    raise QueryEvaluationError(query_id, e) from e
                logger.opt(exception=e).error(f"Evaluation of query {query_id} failed")
                return f"{type(e).__name__}: {e}"

        with ThreadPoolExecutor(max_workers=self.num_workers or None) as executor:
            outcomes = list(
                tqdm(
                    executor.map(evaluate_one, query_ids),
                    total=len(query_ids),
                    desc="Evaluating queries",
                    disable=not self.progress,
                )
            )

        evaluations: dict[str, QueryEvaluation] = {}
        failed: dict[str, str] = {}
        for query_id, outcome in zip(query_ids, outcomes, strict=True):
            if isinstance(outcome, QueryEvaluation):
                evaluations[query_id] = outcome
            else:
                failed[query_id] = outcome
        if failed:
            logger.warning(f"{len(failed)} queries excluded from aggregation after failures")

        aggregates = self._aggregate(evaluations)
        pvalues = self._pvalues(evaluations)

        report = EvaluationReport(
            settings=list(self.settings),
            baseline=self.baseline,
            sort_metric=self.sort_metric,
            metrics=self.metrics,
            aggregates=aggregates,
            pvalues=pvalues,
            queries=evaluations,
            relevances={q: _as_grades(relevances[q]) for q in query_ids},
            failed_queries=failed,
            elapsed_seconds=time.perf_counter() - start,
        )
        logger.info(
            f"Evaluated {len(evaluations)} queries in {report.elapsed_seconds:.1f}s "
            f"(document cache: {self.cache.hits} hits, {self.cache.misses} misses)"
        )
        logger.info(f"Top scores by {self.sort_metric}:\n{format_top_scores(report)}")
        return report

    def _aggregate(self, evaluations: Mapping[str, QueryEvaluation]) -> list[RankingScore]:
        aggregates = []
        for position in range(len(self.settings)):
            scores = [evaluation.scores[position] for evaluation in evaluations.values()]
            aggregates.append(
                RankingScore.average(scores) if scores else Evaluator(self.cutoff).get()
            )
        return aggregates

    def _pvalues(self, evaluations: Mapping[str, QueryEvaluation]) -> list[dict[Metric, float]]:
        pvalues: list[dict[Metric, float]] = []
        for position in range(len(self.settings)):
            if position == self.baseline:
                pvalues.append({metric: math.nan for metric in self.metrics})
                continue
            values: dict[Metric, float] = {}
            for metric in self.metrics:
                baseline_values = [e.scores[self.baseline].get(metric) for e in evaluations.values()]
                setting_values = [e.scores[position].get(metric) for e in evaluations.values()]
                values[metric] = self.tester.pvalue(baseline_values, setting_values)
            pvalues.append(values)
        return pvalues


def _as_grades(relevances: Mapping[str, float] | Iterable[str]) -> dict[str, float]:
    if isinstance(relevances, Mapping):
        return dict(relevances)
    return dict.fromkeys(relevances, 1.0)


__all__ = [
    "DocumentVectorCache",
    "Evaluation",
    "EvaluationReport",
    "Hit",
    "QueryEvaluation",
]
