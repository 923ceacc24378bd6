"""
Paired significance tests between per-query metric values of two systems.

Both tests take two equally long sequences, where position i holds the value
of query i for the baseline and for the system under test, and return a
two-sided p-value. Degenerate inputs yield NaN rather than an exception.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from enum import Enum

import numpy as np
from loguru import logger
from scipy import stats

DEFAULT_AR_ITERATIONS = 1000


def drop_nan_pairs(
    baseline: Sequence[float], system: Sequence[float]
) -> tuple[np.ndarray, np.ndarray]:
    """Remove the positions where either value is NaN."""
    a = np.asarray(baseline, dtype=np.float64)
    b = np.asarray(system, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Samples have different lengths: {len(a)} vs {len(b)}")
    mask = ~(np.isnan(a) | np.isnan(b))
    return a[mask], b[mask]


def paired_t_test(baseline: Sequence[float], system: Sequence[float]) -> float:
    """
    Two-sided paired t-test.

    Returns:
        The p-value; 1.0 for identical samples, NaN with fewer than two pairs
        or when the differences are constant but non-zero.
    """
    a = np.asarray(baseline, dtype=np.float64)
    b = np.asarray(system, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Samples have different lengths: {len(a)} vs {len(b)}")
    if len(a) < 2:
        return math.nan
    diff = b - a
    if np.all(diff == 0.0):
        return 1.0
    if np.all(diff == diff[0]):
        return math.nan
    result = stats.ttest_rel(a, b)
    return float(result.pvalue)


def approximate_randomization(
    baseline: Sequence[float],
    system: Sequence[float],
    iterations: int = DEFAULT_AR_ITERATIONS,
) -> float:
    """
    Two-sided approximate randomization test.

    Iteration ``i`` uses a generator seeded with ``i``, so the p-value is
    reproducible. Each iteration swaps every pair with probability 0.5 and
    counts how often the permuted mean difference reaches the observed one.

    Args:
        baseline: Per-query values of the baseline.
        system: Per-query values of the system.
        iterations: Number of random permutations K.

    Returns:
        (count + 1) / (K + 1), or NaN for empty samples.
    """
    a = np.asarray(baseline, dtype=np.float64)
    b = np.asarray(system, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Samples have different lengths: {len(a)} vs {len(b)}")
    if iterations < 1:
        raise ValueError(f"iterations must be positive, got {iterations}")
    if len(a) == 0:
        return math.nan

    diff = b - a
    observed = abs(diff.mean())
    count = 0
    for i in range(iterations):
        rng = np.random.default_rng(i)
        signs = np.where(rng.random(len(diff)) < 0.5, -1.0, 1.0)
        if abs((diff * signs).mean()) >= observed:
            count += 1
    return (count + 1) / (iterations + 1)


class SignificanceTest(Enum):
    TTEST = "ttest"
    AR = "ar"

    @classmethod
    def parse(cls, name: str | SignificanceTest) -> SignificanceTest:
        if isinstance(name, SignificanceTest):
            return name
        normalized = name.strip().lower()
        aliases = {"t": "ttest", "t-test": "ttest", "approximate_randomization": "ar"}
        try:
            return cls(aliases.get(normalized, normalized))
        except ValueError:
            raise ValueError(
                f"Unknown statistical test {name!r} (supported: ttest, ar)"
            ) from None


class SignificanceTester:
    """Runs the configured paired test on NaN-filtered samples."""

    def __init__(
        self,
        test: SignificanceTest | str = SignificanceTest.TTEST,
        iterations: int = DEFAULT_AR_ITERATIONS,
    ):
        self.test = SignificanceTest.parse(test)
        self.iterations = iterations

    def pvalue(self, baseline: Sequence[float], system: Sequence[float]) -> float:
        a, b = drop_nan_pairs(baseline, system)
        try:
            if self.test is SignificanceTest.AR:
                return approximate_randomization(a, b, self.iterations)
            return paired_t_test(a, b)
        except (ValueError, FloatingPointError, ArithmeticError) as e:
            logger.warning(f"Statistical test {self.test.value} failed: {e}")
            return math.nan

    def __repr__(self) -> str:
        return f"SignificanceTester(test={self.test.value!r}, iterations={self.iterations})"


def compare_settings(
    baseline: Mapping[str, Mapping[str, float]],
    system: Mapping[str, Mapping[str, float]],
    metrics: Iterable[str] | None = None,
    iterations: int = DEFAULT_AR_ITERATIONS,
) -> dict[str, dict[str, float]]:
    """
    Compare per-query metric tables of two settings.

    Args:
        baseline: query ID -> metric name -> value for the baseline.
        system: Same for the compared setting.
        metrics: Metrics to compare; defaults to those present in both tables.
        iterations: Iterations of the approximate randomization test.

    Returns:
        metric -> {"baseline", "system", "delta", "ttest", "ar"} computed over
        the queries both tables share.
    """
    queries = sorted(set(baseline) & set(system))
    if metrics is None:
        names = [
            name
            for name in (baseline[queries[0]] if queries else {})
            if all(name in baseline[q] and name in system[q] for q in queries)
        ]
    else:
        names = list(metrics)

    results: dict[str, dict[str, float]] = {}
    for name in names:
        a, b = drop_nan_pairs(
            [baseline[q].get(name, math.nan) for q in queries],
            [system[q].get(name, math.nan) for q in queries],
        )
        mean_a = float(a.mean()) if len(a) else math.nan
        mean_b = float(b.mean()) if len(b) else math.nan
        results[name] = {
            "baseline": mean_a,
            "system": mean_b,
            "delta": mean_b - mean_a,
            "ttest": paired_t_test(a, b),
            "ar": approximate_randomization(a, b, iterations),
        }
    return results


__all__ = [
    "DEFAULT_AR_ITERATIONS",
    "SignificanceTest",
    "SignificanceTester",
    "approximate_randomization",
    "compare_settings",
    "drop_nan_pairs",
    "paired_t_test",
]
