import math

import pytest

from ranking_layers.errors import MissingJudgmentsError
from ranking_layers.metrics import (
    REPORTED_METRICS,
    Evaluator,
    Measure,
    Metric,
    RankingScore,
    score_rankings,
)


def test_worked_example():
    score = RankingScore.evaluate(["x", "a", "b", "c"], {"a", "c", "d"})

    assert score.mrr == pytest.approx(0.5)
    assert score.precision(1) == 0.0
    assert score.precision(2) == pytest.approx(0.5)
    assert score.precision(4) == pytest.approx(0.5)
    assert score.map() == pytest.approx(1 / 3)

    # relevant at ranks 2 and 4; ideal ranking fills ranks 1..3
    dcg = 1.0 + math.log(2) / math.log(4)
    idcg = 1.0 + 1.0 + math.log(2) / math.log(3)
    assert score.ndcg() == pytest.approx(dcg / idcg)


def test_perfect_ranking():
    score = Evaluator(5).add(["a", "b", "x"], {"a", "b"}).get()

    assert score.ndcg() == pytest.approx(1.0)
    assert score.alt_ndcg() == pytest.approx(1.0)
    assert score.map() == pytest.approx(1.0)
    assert score.mrr == 1.0
    assert score.ndcg(2) == pytest.approx(1.0)
    assert score.precision(2) == 1.0
    assert score.precision(3) == pytest.approx(2 / 3)


def test_positions_past_end_of_ranking_count():
    score = Evaluator(10).add(["a"], {"a"}).get()

    assert score.precision(1) == 1.0
    assert score.precision(10) == pytest.approx(0.1)
    assert score.map(10) == pytest.approx(1.0)
    assert score.ndcg(10) == pytest.approx(1.0)


def test_short_ranking_penalized_when_relevant_items_missing():
    score = Evaluator(2).add(["a"], {"a", "b", "c"}).get()

    assert score.map() == pytest.approx(1 / 3)
    idcg = 1.0 + 1.0 + math.log(2) / math.log(3)
    assert score.ndcg() == pytest.approx(1.0 / idcg)


def test_no_relevant_items():
    score = Evaluator(3).add(["a", "b"], set()).get()

    assert score.precision(1) == 0.0
    assert score.mrr == 0.0
    assert score.ndcg() == 0.0
    assert score.map() == 0.0


def test_empty_ranking():
    score = Evaluator(3).add([], {"a"}).get()

    assert score.num_rankings == 1
    assert score.precision(3) == 0.0
    assert score.mrr == 0.0
    assert score.ndcg() == 0.0
    assert score.map() == 0.0


def test_duplicate_items_count_once():
    score = Evaluator(2).add(["a", "a"], {"a"}).get()

    assert score.precision(2) == pytest.approx(0.5)
    assert score.map() == pytest.approx(1.0)


def test_graded_relevance():
    grades = {"a": 3.0, "b": 1.0, "c": 0.0}
    swapped = Evaluator(3).add(["x", "b", "a"], grades).get()
    ideal = Evaluator(3).add(["a", "b"], grades).get()

    assert ideal.ndcg() == pytest.approx(1.0)
    assert ideal.alt_ndcg() == pytest.approx(1.0)
    assert swapped.ndcg() < 1.0
    assert swapped.alt_ndcg() < swapped.ndcg()

    # zero grade is not relevant
    unjudged = Evaluator(1).add(["c"], grades).get()
    assert unjudged.precision(1) == 0.0
    assert unjudged.mrr == 0.0


def test_evaluator_is_additive():
    r1, g1 = ["x", "a", "b"], {"a", "c"}
    r2, g2 = ["b", "y"], {"b"}

    combined = Evaluator(5).add(r1, g1).add(r2, g2).get()
    averaged = RankingScore.average([Evaluator(5).add(r1, g1).get(), Evaluator(5).add(r2, g2).get()])

    assert combined == averaged
    assert combined.num_rankings == 2
    assert combined.mrr == pytest.approx((0.5 + 1.0) / 2)


def test_merge_and_combine():
    left = Evaluator(10).add(["a"], {"a"})
    right = Evaluator(5).add(["x", "a"], {"a"})

    combined = Evaluator.combine(left, right)

    assert combined.max_n == 5
    assert combined.num_rankings == 2
    assert combined.get().mrr == pytest.approx(0.75)
    with pytest.raises(ValueError):
        combined.get().precision(6)

    left.merge(right)
    assert left.max_n == 5
    assert left.get() == combined.get()


def test_empty_evaluator_gives_zero_scores():
    score = Evaluator(3).get()

    assert score.num_rankings == 0
    assert score.mrr == 0.0
    assert score.precision(3) == 0.0


def test_get_is_memoized_until_next_update():
    evaluator = Evaluator(3)
    evaluator.add(["a"], {"a"})
    first = evaluator.get()
    assert evaluator.get() is first

    evaluator.add(["x"], {"a"})
    assert evaluator.get() is not first
    assert evaluator.get().mrr == pytest.approx(0.5)


def test_average_requires_scores():
    with pytest.raises(ValueError):
        RankingScore.average([])


def test_invalid_cutoffs():
    score = Evaluator(10).add(["a"], {"a"}).get()
    with pytest.raises(ValueError):
        score.precision(11)
    with pytest.raises(ValueError):
        score.precision(0)
    with pytest.raises(ValueError):
        Evaluator(0)


@pytest.mark.parametrize(
    "text, measure, at",
    [
        ("p@10", Measure.PRECISION, 10),
        ("P10", Measure.PRECISION, 10),
        ("mrr", Measure.MRR, None),
        ("ndcg", Measure.NDCG, None),
        ("NDCG@10", Measure.NDCG, 10),
        ("ndcg10", Measure.NDCG, 10),
        ("map", Measure.MAP, None),
        ("map10", Measure.MAP, 10),
        ("altndcg@5", Measure.ALT_NDCG, 5),
    ],
)
def test_metric_parse(text, measure, at):
    metric = Metric.parse(text)
    assert metric.measure is measure
    assert metric.at == at


@pytest.mark.parametrize("text", ["p", "mrr@5", "recall@10", "map@0"])
def test_metric_parse_rejects_invalid(text):
    with pytest.raises(ValueError):
        Metric.parse(text)


def test_reported_metrics():
    assert [str(m) for m in REPORTED_METRICS] == [
        "p@1", "p@3", "p@5", "p@10", "mrr", "ndcg", "ndcg@10", "map", "map@10",
    ]


def test_get_dispatches_on_metric():
    score = RankingScore.evaluate(["x", "a", "b", "c"], {"a", "c", "d"})

    assert score.get("mrr") == score.mrr
    assert score.get("p@4") == score.precision(4)
    assert score.get(Measure.MAP) == score.map()
    assert score.get(Metric(Measure.NDCG, 2)) == score.ndcg(2)
    assert set(score.to_dict()) == {"p@1", "p@3", "mrr", "ndcg", "map"}


def test_sort_scores_breaks_ties_by_label_and_puts_nan_last():
    good = Evaluator(1).add(["a"], {"a"}).get()
    bad = Evaluator(1).add(["x"], {"a"}).get()
    nan = RankingScore(1, 1, [0.0], 0.0, 0.0, [0.0], 0.0, [0.0], math.nan, [0.0])

    ordered = RankingScore.sort_scores(
        [("z", bad), ("nan", nan), ("b", good), ("a", good)], "map"
    )

    assert [label for label, _ in ordered] == ["a", "b", "z", "nan"]


def test_score_rankings():
    per_key, overall = score_rankings(
        {"q1": ["a", "b"], "q2": ["x", "c"]},
        {"q1": {"a": 1.0}, "q2": {"c": 1.0}},
        cutoff=2,
    )

    assert per_key["q1"].mrr == 1.0
    assert per_key["q2"].mrr == 0.5
    assert overall.mrr == pytest.approx(0.75)
    assert overall.num_rankings == 2

    with pytest.raises(MissingJudgmentsError):
        score_rankings({"q3": ["a"]}, {"q1": {"a": 1.0}})
