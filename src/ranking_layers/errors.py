"""Exceptions raised by ranking_layers."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid configuration detected at setup, before any query is processed."""


class QueryEvaluationError(RuntimeError):
    """Retrieval, ranking or scoring of a single query failed."""

    def __init__(self, query_id: str, cause: BaseException):
        super().__init__(f"Evaluation of query {query_id!r} failed: {cause}")
        self.query_id = query_id
        self.cause = cause


class MissingJudgmentsError(KeyError):
    """A ranking was supplied for a key without gold relevance judgments."""
