import math
import threading

import numpy as np
import pytest

from conftest import make_vector
from ranking_layers.datasets import InMemoryIndex
from ranking_layers.errors import ConfigurationError, QueryEvaluationError
from ranking_layers.evaluation import DocumentVectorCache, Evaluation
from ranking_layers.rankers import TfIdfRanker
from ranking_layers.significance import SignificanceTester

LAYERS = ["textual", "uri"]


class FailingIndex(InMemoryIndex):
    """Index whose search fails for queries mentioning a given value."""

    def __init__(self, documents, failing_value):
        super().__init__(documents)
        self.failing_value = failing_value

    def search(self, layer, values, max_docs):
        values = list(values)
        if self.failing_value in values:
            raise RuntimeError("index unavailable")
        return super().search(layer, values, max_docs)


def make_evaluation(index, weights=None, **kwargs):
    ranker = TfIdfRanker(weights or {"textual": 1.0, "uri": 1.0})
    kwargs.setdefault("progress", False)
    return Evaluation(index, ranker, LAYERS, ["textual"], **kwargs)


def test_settings_and_baseline(index, queries, relevances):
    report = make_evaluation(index).run(queries, relevances)

    assert [s.label for s in report.settings] == ["textual", "uri", "textual,uri"]
    assert report.baseline == 0
    assert report.baseline_setting.label == "textual"
    assert all(math.isnan(p) for p in report.pvalues[0].values())
    assert set(report.queries) == {"q1", "q2", "q3"}
    assert not report.failed_queries


def test_rankings_sorted_by_score_then_id(index, queries, relevances):
    report = make_evaluation(index).run(queries, relevances)
    q1 = report.queries["q1"]

    assert q1.ranking(0) == ["d1", "d2", "d3"]
    assert q1.ranking(1) == ["d1", "d4"]
    assert q1.ranking(2) == ["d1", "d2", "d3", "d4"]
    assert q1.hits[0][0].score > q1.hits[0][1].score
    assert q1.hits[0][1].score == q1.hits[0][2].score

    q2 = report.queries["q2"]
    assert q2.ranking(2) == ["d2", "d1"]
    assert q1.query_layers == {"textual", "uri"}
    assert report.queries["q3"].query_layers == {"textual"}


def test_aggregates_and_ordering(index, queries, relevances):
    report = make_evaluation(index).run(queries, relevances)

    assert report.aggregates[0].map() == pytest.approx(2 / 3)
    assert report.aggregates[1].map() == pytest.approx(2 / 3)
    assert report.aggregates[2].map() == pytest.approx((0.75 + 1.0 + 1.0) / 3)
    assert report.aggregates[0].num_rankings == 3
    # tie between textual and uri broken by label
    assert report.ranked_settings() == [2, 0, 1]


def test_zero_score_documents_dropped_by_default(index, queries, relevances):
    weights = {"textual": 1.0, "uri": 0.0}

    dropped = make_evaluation(index, weights).run(queries, relevances)
    kept = make_evaluation(index, weights, drop_zero_scores=False).run(queries, relevances)

    assert dropped.queries["q1"].ranking(2) == ["d1", "d2", "d3"]
    assert dropped.queries["q1"].ranking(1) == []
    assert kept.queries["q1"].ranking(2) == ["d1", "d2", "d3", "d4"]
    assert kept.queries["q1"].ranking(1) == ["d1", "d4"]


def test_results_independent_of_worker_count(index, queries, relevances):
    weights = {"textual": 0.5, "uri": 0.5}
    serial = make_evaluation(index, weights, num_workers=1).run(queries, relevances)
    parallel = make_evaluation(index, weights, num_workers=4).run(queries, relevances)

    assert serial.aggregates == parallel.aggregates
    for position in range(len(serial.settings)):
        np.testing.assert_array_equal(
            list(serial.pvalues[position].values()), list(parallel.pvalues[position].values())
        )
    for query_id, evaluation in serial.queries.items():
        assert evaluation.hits == parallel.queries[query_id].hits
        assert evaluation.scores == parallel.queries[query_id].scores


def test_failing_query_is_isolated(documents, queries, relevances):
    index = FailingIndex(documents, "cat")

    report = make_evaluation(index).run(queries, relevances)

    assert set(report.failed_queries) == {"q3"}
    assert "RuntimeError" in report.failed_queries["q3"]
    assert set(report.queries) == {"q1", "q2"}
    assert all(score.num_rankings == 2 for score in report.aggregates)
    assert report.summary()["num_failed_queries"] == 1


def test_fail_fast_propagates(documents, queries, relevances):
    index = FailingIndex(documents, "cat")

    with pytest.raises(QueryEvaluationError) as excinfo:
        make_evaluation(index, fail_fast=True).run(queries, relevances)

    assert excinfo.value.query_id == "q3"
    assert isinstance(excinfo.value.cause, RuntimeError)


def test_query_without_candidates_scores_zero(index, queries, relevances):
    queries = dict(queries, q4=make_vector({"textual": {"zzz": 1}}))
    relevances = dict(relevances, q4={"d1": 1.0})

    report = make_evaluation(index).run(queries, relevances)

    q4 = report.queries["q4"]
    assert all(hits == [] for hits in q4.hits)
    assert q4.scores[0].map() == 0.0
    assert q4.scores[0].num_rankings == 1
    assert report.aggregates[0].num_rankings == 4


def test_unjudged_queries_are_ignored(index, queries, relevances):
    queries = dict(queries, q9=make_vector({"textual": {"obama": 1}}))

    report = make_evaluation(index).run(queries, relevances)

    assert "q9" not in report.queries
    assert "q9" not in report.failed_queries


def test_max_docs_limits_candidates_per_layer(index, queries, relevances):
    report = make_evaluation(index, max_docs=1).run(queries, relevances)

    assert report.queries["q1"].ranking(0) == ["d1"]


def test_approximate_randomization_tester(index, queries, relevances):
    tester = SignificanceTester("ar", iterations=20)
    report = make_evaluation(index, tester=tester).run(queries, relevances)

    for position, pvalues in enumerate(report.pvalues):
        if position != report.baseline:
            assert all(0.0 < p <= 1.0 for p in pvalues.values())


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_docs": 0},
        {"cutoff": 0},
        {"sort_metric": "recall"},
        {"sort_metric": "p@20"},
        {"num_workers": -1},
    ],
)
def test_invalid_configuration_rejected(index, kwargs):
    with pytest.raises(ConfigurationError):
        make_evaluation(index, **kwargs)


def test_baseline_must_match_a_setting(index):
    with pytest.raises(ConfigurationError):
        Evaluation(index, TfIdfRanker({"textual": 1.0}), LAYERS, ["type"], progress=False)
    with pytest.raises(ConfigurationError):
        Evaluation(index, TfIdfRanker({"textual": 1.0}), [], ["textual"], progress=False)


def test_report_rows(index, queries, relevances):
    report = make_evaluation(index).run(queries, relevances)

    aggregate_rows = report.aggregate_rows()
    assert [row["setting"] for row in aggregate_rows] == ["textual,uri", "textual", "uri"]
    assert "map p" in aggregate_rows[0]
    assert aggregate_rows[0]["map"] == pytest.approx(report.aggregates[2].map())

    setting_rows = report.setting_rows(1)
    assert [row["query"] for row in setting_rows] == ["q1", "q2", "q3"]
    assert setting_rows[0]["ranking"] == "d1 d4"
    assert setting_rows[2]["layers"] == ""

    query_rows = report.query_rows("q2")
    assert len(query_rows) == 3

    summary = report.summary()
    assert summary["best_setting"] == "textual,uri"
    assert summary["baseline"] == "textual"
    assert summary["num_queries"] == 3
    assert set(summary["settings"]) == {"textual", "uri", "textual,uri"}


def test_document_vector_cache_evicts_least_recently_used(documents):
    loads = []

    def loader(doc_id):
        loads.append(doc_id)
        return documents[doc_id]

    cache = DocumentVectorCache(max_size=2)
    cache.get_or_load("d1", loader)
    cache.get_or_load("d2", loader)
    cache.get_or_load("d1", loader)
    cache.get_or_load("d3", loader)

    assert "d1" in cache
    assert "d2" not in cache
    assert len(cache) == 2
    assert loads == ["d1", "d2", "d3"]
    assert (cache.hits, cache.misses) == (1, 3)


def test_document_vector_cache_disabled(documents):
    cache = DocumentVectorCache(max_size=0)
    assert cache.get_or_load("d1", documents.__getitem__) == documents["d1"]
    assert len(cache) == 0
    with pytest.raises(ValueError):
        DocumentVectorCache(max_size=-1)


def test_document_vector_cache_reads_hold_the_lock(documents):
    cache = DocumentVectorCache(max_size=2)
    cache.get_or_load("d1", documents.__getitem__)
    results = []

    def read():
        results.append((len(cache), "d1" in cache))

    with cache._lock:
        reader = threading.Thread(target=read)
        reader.start()
        reader.join(timeout=0.2)
        assert reader.is_alive()
    reader.join(timeout=5)

    assert results == [(1, True)]
