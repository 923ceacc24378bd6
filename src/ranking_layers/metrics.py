"""
Ranking-quality metrics: precision@k, MRR, NDCG (two gain conventions) and MAP.

RankingScore is an immutable snapshot of metrics averaged over one or more
rankings. Evaluator accumulates the *sums* behind those averages, so partial
results computed for different queries (or in different threads) can be
merged by addition before the final division.

Usage:
    from ranking_layers.metrics import Evaluator, RankingScore

    score = RankingScore.evaluate(["x", "a", "b", "c"], {"a", "c", "d"})
    score.mrr            # 0.5
    score.precision(4)   # 0.5

    evaluator = Evaluator(10)
    evaluator.add(ranking_q1, relevances_q1).add(ranking_q2, relevances_q2)
    evaluator.get().map()
"""

from __future__ import annotations

import math
import re
import threading
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np

from ranking_layers.errors import MissingJudgmentsError

_LN2 = math.log(2.0)


# =============================================================================
# Measures
# =============================================================================


class Measure(Enum):
    PRECISION = "p"
    MRR = "mrr"
    NDCG = "ndcg"
    ALT_NDCG = "altndcg"
    MAP = "map"


_MEASURE_ALIASES = {
    "p": Measure.PRECISION,
    "prec": Measure.PRECISION,
    "precision": Measure.PRECISION,
    "mrr": Measure.MRR,
    "ndcg": Measure.NDCG,
    "altndcg": Measure.ALT_NDCG,
    "alt_ndcg": Measure.ALT_NDCG,
    "map": Measure.MAP,
}

_METRIC_PATTERN = re.compile(r"^([a-z_]+?)(?:@?(\d+))?$")


@dataclass(frozen=True)
class Metric:
    """A measure, optionally evaluated at a cutoff (e.g. ``p@10``, ``map``)."""

    measure: Measure
    at: int | None = None

    def __post_init__(self):
        if self.at is not None and self.at < 1:
            raise ValueError(f"Invalid cutoff {self.at} for {self.measure.value}")
        if self.measure is Measure.MRR and self.at is not None:
            raise ValueError("MRR @ N is not a valid measure")
        if self.measure is Measure.PRECISION and self.at is None:
            raise ValueError("Precision requires a cutoff (e.g. p@10)")

    @classmethod
    def parse(cls, text: str | Metric) -> Metric:
        """Parse ``p@10``, ``P10``, ``ndcg``, ``ndcg@10``, ``map10``, ``mrr``..."""
        if isinstance(text, Metric):
            return text
        normalized = text.strip().lower().replace(" ", "")
        match = _METRIC_PATTERN.match(normalized)
        measure = _MEASURE_ALIASES.get(match.group(1)) if match else None
        if measure is None:
            raise ValueError(f"Unknown metric {text!r}")
        at = int(match.group(2)) if match.group(2) else None
        return cls(measure, at)

    def __str__(self) -> str:
        return self.measure.value if self.at is None else f"{self.measure.value}@{self.at}"


REPORTED_METRICS: tuple[Metric, ...] = tuple(
    Metric.parse(name)
    for name in ("p@1", "p@3", "p@5", "p@10", "mrr", "ndcg", "ndcg@10", "map", "map@10")
)


# =============================================================================
# RankingScore
# =============================================================================


class RankingScore:
    """
    Immutable aggregate of ranking metrics over ``num_rankings`` rankings.

    Per-cutoff values are available for ``1 <= n <= max_n``; asking for a
    larger cutoff raises ValueError.
    """

    __slots__ = (
        "_max_n",
        "_num_rankings",
        "_precisions",
        "_mrr",
        "_ndcg",
        "_ndcgs",
        "_alt_ndcg",
        "_alt_ndcgs",
        "_map",
        "_maps",
    )

    def __init__(
        self,
        max_n: int,
        num_rankings: int,
        precisions: Sequence[float],
        mrr: float,
        ndcg: float,
        ndcgs: Sequence[float],
        alt_ndcg: float,
        alt_ndcgs: Sequence[float],
        map_: float,
        maps: Sequence[float],
    ):
        self._max_n = max_n
        self._num_rankings = num_rankings
        self._precisions = tuple(float(v) for v in precisions)
        self._mrr = float(mrr)
        self._ndcg = float(ndcg)
        self._ndcgs = tuple(float(v) for v in ndcgs)
        self._alt_ndcg = float(alt_ndcg)
        self._alt_ndcgs = tuple(float(v) for v in alt_ndcgs)
        self._map = float(map_)
        self._maps = tuple(float(v) for v in maps)

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @staticmethod
    def evaluate(
        ranking: Sequence[Hashable],
        relevances: Mapping[Hashable, float] | Iterable[Hashable],
    ) -> RankingScore:
        """Score a single ranking, with cutoffs up to its length."""
        return Evaluator(max(1, len(ranking))).add(ranking, relevances).get()

    @staticmethod
    def average(scores: Iterable[RankingScore]) -> RankingScore:
        """
        Average scores weighting each by the number of rankings it covers.

        The result is truncated to the smallest ``max_n`` among the inputs.

        Raises:
            ValueError: If no score is supplied.
        """
        scores = list(scores)
        if not scores:
            raise ValueError("No scores supplied")
        evaluator = Evaluator(min(score.max_n for score in scores))
        for score in scores:
            evaluator.add_score(score)
        return evaluator.get()

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def _check_cutoff(self, n: int) -> int:
        if n <= 0:
            raise ValueError(f"Invalid cutoff {n}")
        if n > self._max_n:
            raise ValueError(f"No data for N = {n} (max N: {self._max_n})")
        return n - 1

    @property
    def max_n(self) -> int:
        return self._max_n

    @property
    def num_rankings(self) -> int:
        return self._num_rankings

    @property
    def mrr(self) -> float:
        return self._mrr

    def precision(self, n: int) -> float:
        return self._precisions[self._check_cutoff(n)]

    def ndcg(self, n: int | None = None) -> float:
        return self._ndcg if n is None else self._ndcgs[self._check_cutoff(n)]

    def alt_ndcg(self, n: int | None = None) -> float:
        return self._alt_ndcg if n is None else self._alt_ndcgs[self._check_cutoff(n)]

    def map(self, n: int | None = None) -> float:
        return self._map if n is None else self._maps[self._check_cutoff(n)]

    def get(self, metric: Metric | Measure | str, at: int | None = None) -> float:
        if isinstance(metric, Measure):
            metric = Metric(metric, at)
        elif isinstance(metric, str):
            metric = Metric.parse(metric)
        measure, n = metric.measure, metric.at
        if measure is Measure.PRECISION:
            return self.precision(n)
        if measure is Measure.MRR:
            return self.mrr
        if measure is Measure.NDCG:
            return self.ndcg(n)
        if measure is Measure.ALT_NDCG:
            return self.alt_ndcg(n)
        return self.map(n)

    def to_dict(self, metrics: Iterable[Metric] = REPORTED_METRICS) -> dict[str, float]:
        return {str(metric): self.get(metric) for metric in metrics if _within(metric, self._max_n)}

    # -------------------------------------------------------------------------
    # Ordering
    # -------------------------------------------------------------------------

    @staticmethod
    def sort_key(metric: Metric | str, higher_first: bool = True) -> Callable[[RankingScore], Any]:
        """Key function ordering scores by ``metric`` (NaN values last)."""
        metric = Metric.parse(metric)

        def key(score: RankingScore) -> tuple[bool, float]:
            value = score.get(metric)
            if math.isnan(value):
                return (True, 0.0)
            return (False, -value if higher_first else value)

        return key

    @staticmethod
    def sort_scores(
        labelled: Iterable[tuple[str, RankingScore]],
        metric: Metric | str,
        higher_first: bool = True,
    ) -> list[tuple[str, RankingScore]]:
        """Sort (label, score) pairs by ``metric``, breaking ties by label."""
        key = RankingScore.sort_key(metric, higher_first)
        return sorted(labelled, key=lambda item: (*key(item[1]), item[0]))

    # -------------------------------------------------------------------------
    # Object protocol
    # -------------------------------------------------------------------------

    def _state(self) -> tuple:
        return tuple(getattr(self, slot) for slot in self.__slots__)

    def __eq__(self, other: object) -> bool:
        if other is self:
            return True
        if not isinstance(other, RankingScore):
            return NotImplemented
        return self._state() == other._state()

    def __hash__(self) -> int:
        return hash(self._state())

    def __repr__(self) -> str:
        return f"RankingScore({self})"

    def __str__(self) -> str:
        cutoffs = []
        n = 1
        while n <= self._max_n:
            # 1, 3, 5, 10, 30, 50, 100, ...
            cutoffs.append(n)
            n *= 3
            if n <= self._max_n:
                cutoffs.append(n)
                n = n // 3 * 5
                if n <= self._max_n:
                    cutoffs.append(n)
                    n *= 2

        parts = [f"p@{n}={self.precision(n):.3f}" for n in cutoffs]
        parts.append(f"mrr={self.mrr:.3f}")
        parts.append(f"ndcg={self.ndcg():.3f}")
        parts.extend(f"ndcg@{n}={self.ndcg(n):.3f}" for n in cutoffs)
        parts.append(f"map={self.map():.3f}")
        parts.extend(f"map@{n}={self.map(n):.3f}" for n in cutoffs)
        parts.append(f"nr={self._num_rankings}")
        return ", ".join(parts)


def _within(metric: Metric, max_n: int) -> bool:
    return metric.at is None or metric.at <= max_n


# =============================================================================
# Evaluator
# =============================================================================


class Evaluator:
    """
    Mergeable accumulator of metric sums.

    ``add`` scores one ranking; ``add_score`` and ``merge`` fold in results
    that may already cover several rankings. Merging anything with a smaller
    ``max_n`` shrinks this accumulator to that cutoff. Mutations and ``get``
    are serialized by a per-instance lock; ``get`` is memoized until the next
    mutation.
    """

    def __init__(self, max_n: int):
        if max_n < 1:
            raise ValueError(f"max_n must be positive, got {max_n}")
        self._lock = threading.Lock()
        self._max_n = max_n
        self._num_rankings = 0
        self._sum_precisions = np.zeros(max_n, dtype=np.float64)
        self._sum_mrr = 0.0
        self._sum_ndcg = 0.0
        self._sum_ndcgs = np.zeros(max_n, dtype=np.float64)
        self._sum_alt_ndcg = 0.0
        self._sum_alt_ndcgs = np.zeros(max_n, dtype=np.float64)
        self._sum_map = 0.0
        self._sum_maps = np.zeros(max_n, dtype=np.float64)
        self._result: RankingScore | None = None

    @property
    def max_n(self) -> int:
        return self._max_n

    @property
    def num_rankings(self) -> int:
        return self._num_rankings

    def _shrink(self, max_n: int) -> None:
        if max_n < self._max_n:
            self._max_n = max_n
            self._sum_precisions = self._sum_precisions[:max_n].copy()
            self._sum_ndcgs = self._sum_ndcgs[:max_n].copy()
            self._sum_alt_ndcgs = self._sum_alt_ndcgs[:max_n].copy()
            self._sum_maps = self._sum_maps[:max_n].copy()

    def add(
        self,
        ranking: Iterable[Hashable],
        relevances: Mapping[Hashable, float] | Iterable[Hashable],
    ) -> Evaluator:
        """
        Score one ranking against gold relevances.

        Args:
            ranking: Ranked item IDs, best first.
            relevances: Either a mapping item -> graded relevance (only grades
                > 0 count as relevant) or an iterable of relevant items
                (every item has gain 1).

        Returns:
            This evaluator, for chaining.
        """
        if isinstance(relevances, Mapping):
            grades = {item: float(grade) for item, grade in relevances.items() if grade > 0}
        else:
            grades = dict.fromkeys(relevances, 1.0)
        num_relevant = len(grades)
        ideal = sorted(grades.values(), reverse=True)
        max_n = self._max_n

        precisions = np.zeros(max_n, dtype=np.float64)
        ndcgs = np.zeros(max_n, dtype=np.float64)
        alt_ndcgs = np.zeros(max_n, dtype=np.float64)
        maps = np.zeros(max_n, dtype=np.float64)

        n = 0  # current position
        c = 0  # relevant items seen so far
        mrr = 0.0
        map_num = 0.0
        ndcg_num = ndcg_den = 0.0
        alt_num = alt_den = 0.0

        def record(position: int) -> None:
            precisions[position - 1] = c / position
            if num_relevant:
                ndcgs[position - 1] = ndcg_num / ndcg_den
                alt_ndcgs[position - 1] = alt_num / alt_den
                maps[position - 1] = map_num / num_relevant

        seen: set[Hashable] = set()
        for item in ranking:
            n += 1
            discount = 1.0 if n == 1 else _LN2 / math.log(n)
            alt_discount = _LN2 / math.log(n + 1)

            if item in grades and item not in seen:
                c += 1
                map_num += c / n
                if c == 1:
                    mrr = 1.0 / n
                grade = grades[item]
                ndcg_num += grade * discount
                alt_num += (2.0**grade - 1.0) * alt_discount
            seen.add(item)

            if n <= num_relevant:
                ndcg_den += ideal[n - 1] * discount
                alt_den += (2.0 ** ideal[n - 1] - 1.0) * alt_discount
            if n <= max_n:
                record(n)

        # Positions past the end of the ranking still count, penalizing short rankings
        for n in range(n + 1, max(max_n, num_relevant) + 1):
            if n <= num_relevant:
                discount = 1.0 if n == 1 else _LN2 / math.log(n)
                alt_discount = _LN2 / math.log(n + 1)
                ndcg_den += ideal[n - 1] * discount
                alt_den += (2.0 ** ideal[n - 1] - 1.0) * alt_discount
            if n <= max_n:
                record(n)

        with self._lock:
            k = self._max_n
            self._num_rankings += 1
            self._sum_precisions += precisions[:k]
            self._sum_mrr += mrr
            # Queries without relevant items contribute nothing to NDCG/MAP
            if num_relevant:
                self._sum_ndcg += ndcg_num / ndcg_den
                self._sum_alt_ndcg += alt_num / alt_den
                self._sum_map += map_num / num_relevant
                self._sum_ndcgs += ndcgs[:k]
                self._sum_alt_ndcgs += alt_ndcgs[:k]
                self._sum_maps += maps[:k]
            self._result = None
        return self

    def add_score(self, score: RankingScore) -> Evaluator:
        """Merge a RankingScore, weighted by the rankings it covers."""
        weight = score.num_rankings
        with self._lock:
            self._shrink(score.max_n)
            k = self._max_n
            self._num_rankings += weight
            self._sum_mrr += score.mrr * weight
            self._sum_ndcg += score.ndcg() * weight
            self._sum_alt_ndcg += score.alt_ndcg() * weight
            self._sum_map += score.map() * weight
            self._sum_precisions += np.array(score._precisions[:k]) * weight
            self._sum_ndcgs += np.array(score._ndcgs[:k]) * weight
            self._sum_alt_ndcgs += np.array(score._alt_ndcgs[:k]) * weight
            self._sum_maps += np.array(score._maps[:k]) * weight
            self._result = None
        return self

    def merge(self, other: Evaluator) -> Evaluator:
        """Add the sums accumulated by ``other`` into this evaluator."""
        with other._lock:
            snapshot = (
                other._max_n,
                other._num_rankings,
                other._sum_mrr,
                other._sum_ndcg,
                other._sum_alt_ndcg,
                other._sum_map,
                other._sum_precisions.copy(),
                other._sum_ndcgs.copy(),
                other._sum_alt_ndcgs.copy(),
                other._sum_maps.copy(),
            )
        max_n, num_rankings, mrr, ndcg, alt_ndcg, map_, precisions, ndcgs, alt_ndcgs, maps = snapshot

        with self._lock:
            self._shrink(max_n)
            k = self._max_n
            self._num_rankings += num_rankings
            self._sum_mrr += mrr
            self._sum_ndcg += ndcg
            self._sum_alt_ndcg += alt_ndcg
            self._sum_map += map_
            self._sum_precisions += precisions[:k]
            self._sum_ndcgs += ndcgs[:k]
            self._sum_alt_ndcgs += alt_ndcgs[:k]
            self._sum_maps += maps[:k]
            self._result = None
        return self

    @staticmethod
    def combine(left: Evaluator, right: Evaluator) -> Evaluator:
        """Return a new evaluator holding the sums of both operands."""
        return Evaluator(min(left.max_n, right.max_n)).merge(left).merge(right)

    def get(self) -> RankingScore:
        """Divide the sums by the number of rankings (all zeros if there are none)."""
        with self._lock:
            if self._result is None:
                count = self._num_rankings

                def mean(value):
                    return value / count if count else value * 0.0

                self._result = RankingScore(
                    self._max_n,
                    count,
                    mean(self._sum_precisions),
                    mean(self._sum_mrr),
                    mean(self._sum_ndcg),
                    mean(self._sum_ndcgs),
                    mean(self._sum_alt_ndcg),
                    mean(self._sum_alt_ndcgs),
                    mean(self._sum_map),
                    mean(self._sum_maps),
                )
            return self._result


# =============================================================================
# Batch scoring of ranking files
# =============================================================================


def score_rankings(
    rankings: Mapping[str, Sequence[str]],
    relevances: Mapping[str, Mapping[str, float]],
    cutoff: int = 10,
) -> tuple[dict[str, RankingScore], RankingScore]:
    """
    Score several rankings against their gold relevances.

    Args:
        rankings: Mapping from key (e.g. query ID) to ranked document IDs.
        relevances: Mapping from key to document ID -> graded relevance.
        cutoff: Largest cutoff for the @n metrics.

    Returns:
        (per-key scores, overall average).

    Raises:
        MissingJudgmentsError: If a ranked key has no gold relevances.
    """
    overall = Evaluator(cutoff)
    per_key: dict[str, RankingScore] = {}
    for key, ranking in rankings.items():
        if key not in relevances:
            raise MissingJudgmentsError(f"No gold relevances for key {key}")
        score = Evaluator(cutoff).add(ranking, relevances[key]).get()
        per_key[key] = score
        overall.add_score(score)
    return per_key, overall.get()


__all__ = [
    "Measure",
    "Metric",
    "REPORTED_METRICS",
    "RankingScore",
    "Evaluator",
    "score_rankings",
]
