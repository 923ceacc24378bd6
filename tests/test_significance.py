import math

import numpy as np
import pytest

from ranking_layers.significance import (
    SignificanceTest,
    SignificanceTester,
    approximate_randomization,
    compare_settings,
    drop_nan_pairs,
    paired_t_test,
)


@pytest.fixture
def improved_samples():
    rng = np.random.default_rng(42)
    baseline = rng.uniform(0.1, 0.5, size=30)
    system = baseline + 0.3 + rng.normal(0.0, 0.02, size=30)
    return baseline, system


def test_identical_samples_are_not_significant():
    values = [0.1, 0.5, 0.3, 0.9]
    assert paired_t_test(values, values) == 1.0
    assert approximate_randomization(values, values, iterations=50) == 1.0


def test_degenerate_t_test_inputs():
    assert math.isnan(paired_t_test([0.1], [0.2]))
    assert math.isnan(paired_t_test([], []))
    assert math.isnan(paired_t_test([0.0, 1.0, 2.0], [0.5, 1.5, 2.5]))


def test_clear_improvement_is_significant(improved_samples):
    baseline, system = improved_samples
    assert paired_t_test(baseline, system) < 0.01
    assert approximate_randomization(baseline, system, iterations=200) < 0.05


def test_approximate_randomization_is_reproducible():
    rng = np.random.default_rng(1)
    baseline = rng.uniform(size=20)
    system = rng.uniform(size=20)

    first = approximate_randomization(baseline, system, iterations=300)
    second = approximate_randomization(baseline, system, iterations=300)

    assert first == second
    assert 1 / 301 <= first <= 1.0


def test_approximate_randomization_edge_cases():
    assert math.isnan(approximate_randomization([], []))
    with pytest.raises(ValueError):
        approximate_randomization([0.1], [0.2, 0.3])
    with pytest.raises(ValueError):
        approximate_randomization([0.1], [0.2], iterations=0)


def test_drop_nan_pairs():
    a, b = drop_nan_pairs([0.1, math.nan, 0.3, 0.4], [0.2, 0.5, math.nan, 0.6])
    np.testing.assert_array_equal(a, [0.1, 0.4])
    np.testing.assert_array_equal(b, [0.2, 0.6])


@pytest.mark.parametrize("name, expected", [("ttest", SignificanceTest.TTEST), ("AR", SignificanceTest.AR)])
def test_parse_test_name(name, expected):
    assert SignificanceTest.parse(name) is expected


def test_unknown_test_name():
    with pytest.raises(ValueError):
        SignificanceTest.parse("wilcoxon")


def test_tester_filters_nan_pairs(improved_samples):
    baseline, system = improved_samples
    tester = SignificanceTester("ttest")

    with_nan = tester.pvalue(list(baseline) + [math.nan], list(system) + [0.5])

    assert with_nan == pytest.approx(paired_t_test(baseline, system))
    assert math.isnan(tester.pvalue([math.nan], [0.1]))


def test_tester_uses_approximate_randomization(improved_samples):
    baseline, system = improved_samples
    tester = SignificanceTester(SignificanceTest.AR, iterations=100)
    assert tester.pvalue(baseline, system) == approximate_randomization(baseline, system, 100)


def test_compare_settings_on_common_queries():
    baseline = {
        "q1": {"map": 0.2, "mrr": 0.5},
        "q2": {"map": 0.4, "mrr": 1.0},
        "q3": {"map": 0.1, "mrr": 0.0},
        "q4": {"map": 0.9, "mrr": 1.0},
    }
    system = {
        "q1": {"map": 0.3, "mrr": 0.5},
        "q2": {"map": 0.6, "mrr": 1.0},
        "q3": {"map": 0.4, "mrr": 1.0},
    }

    results = compare_settings(baseline, system, iterations=50)

    assert set(results) == {"map", "mrr"}
    assert results["map"]["baseline"] == pytest.approx(0.7 / 3)
    assert results["map"]["system"] == pytest.approx(1.3 / 3)
    assert results["map"]["delta"] == pytest.approx(0.2)
    assert 0.0 < results["map"]["ttest"] < 1.0
    assert 0.0 < results["map"]["ar"] <= 1.0

    only_map = compare_settings(baseline, system, metrics=["map"], iterations=10)
    assert list(only_map) == ["map"]
