import pytest

from ranking_layers.datasets import InMemoryIndex
from ranking_layers.term_vector import TermVector


def make_vector(layers: dict[str, dict[str, int]]) -> TermVector:
    builder = TermVector.builder()
    for layer, values in layers.items():
        for value, frequency in values.items():
            builder.add_term(layer, value, frequency)
    return builder.build()


@pytest.fixture
def documents():
    return {
        "d1": make_vector({"textual": {"obama": 2, "president": 1}, "uri": {"dbpedia:Barack_Obama": 1}}),
        "d2": make_vector({"textual": {"president": 1}, "uri": {"dbpedia:United_States": 1}}),
        "d3": make_vector({"textual": {"obama": 1}}),
        "d4": make_vector({"uri": {"dbpedia:Barack_Obama": 1}}),
        "d5": make_vector({"textual": {"cat": 3}}),
    }


@pytest.fixture
def index(documents):
    return InMemoryIndex(documents)


@pytest.fixture
def queries():
    return {
        "q1": make_vector({"textual": {"obama": 1, "president": 1}, "uri": {"dbpedia:Barack_Obama": 1}}),
        "q2": make_vector({"textual": {"president": 1}, "uri": {"dbpedia:United_States": 1}}),
        "q3": make_vector({"textual": {"cat": 1}}),
    }


@pytest.fixture
def relevances():
    return {
        "q1": {"d1": 1.0, "d4": 1.0},
        "q2": {"d2": 1.0},
        "q3": {"d5": 2.0},
    }
