import gzip
import io

import pytest

from ranking_layers.datasets import (
    InMemoryIndex,
    load_rankings,
    load_relevances,
    load_term_vectors,
)
from ranking_layers.statistics import LayerStatistics, Statistics, TermStatistics
from ranking_layers.term_vector import write_term_vectors


def test_search_orders_by_matched_values_then_id(index):
    assert index.search("textual", ["obama", "president"], 10) == ["d1", "d2", "d3"]
    assert index.search("textual", ["obama", "president"], 2) == ["d1", "d2"]
    assert index.search("uri", ["dbpedia:Barack_Obama"], 10) == ["d1", "d4"]
    assert index.search("textual", ["unknown"], 10) == []
    assert index.search("frame", ["obama"], 10) == []


def test_index_statistics(index):
    assert index.num_documents() == 5
    assert index.term_statistics("textual", "obama") == TermStatistics(2, 3)
    assert index.term_statistics("textual", "missing") == TermStatistics(0, 0)
    assert index.layer_statistics("uri") == LayerStatistics(5, 3, 3)
    assert index.layer_statistics("frame").doc_count == 0
    assert index.layers == {"textual", "uri"}


def test_document_vector_lookup(index, documents):
    assert index.document_vector("d1") == documents["d1"]
    with pytest.raises(KeyError):
        index.document_vector("d9")


def test_statistics_prefetch_and_lazy_lookup(index, queries):
    statistics = Statistics.compute(index, ["textual", "uri"], queries.values())

    assert statistics.num_documents == 5
    assert statistics.doc_freq("textual", "obama") == 2
    assert statistics.layer_doc_count("textual") == 4
    assert statistics.total_terms("uri") == 3
    # not a query term: resolved through the index
    assert statistics.doc_freq("textual", "cat") == 1
    assert statistics.doc_freq("textual", "missing") == 0


def test_statistics_without_service():
    statistics = Statistics(10, {})
    assert statistics.doc_freq("textual", "anything") == 0
    assert statistics.layer_doc_count("textual") == 0


def test_load_term_vectors_gzip(tmp_path, documents):
    path = tmp_path / "terms.tsv.gz"
    buffer = io.StringIO()
    write_term_vectors(buffer, documents)
    with gzip.open(path, "wt", encoding="utf-8") as f:
        f.write(buffer.getvalue())

    assert load_term_vectors(path) == documents


def test_load_relevances(tmp_path):
    path = tmp_path / "relevances.txt"
    path.write_text(
        "# query judgments\n"
        "q1 d1 d2:2 http://dbpedia.org/resource/X:0.5\n"
        "q2 dbpedia:Rome\n"
        "q1 d3:0\n"
    )

    relevances = load_relevances(path)

    assert relevances == {
        "q1": {"d1": 1.0, "d2": 2.0, "http://dbpedia.org/resource/X": 0.5, "d3": 0.0},
        "q2": {"dbpedia:Rome": 1.0},
    }


def test_load_rankings(tmp_path):
    path = tmp_path / "rankings.txt"
    path.write_text("q2 d3 d1\nq1 d1\n\nq1 d2\n")

    rankings = load_rankings(path)

    assert list(rankings) == ["q2", "q1"]
    assert rankings["q1"] == ["d1", "d2"]


def test_index_from_empty_mapping():
    index = InMemoryIndex({})
    assert index.num_documents() == 0
    assert index.search("textual", ["a"], 5) == []
