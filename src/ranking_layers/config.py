"""
Evaluation configuration.

Defaults come from ``EVAL_*`` environment variables; a configuration can also
be read from a ``.properties`` file using the keys below (shown with the
default ``ke4ir.`` prefix):

    ke4ir.layers                         textual uri type frame time
    ke4ir.maxDocs                        1000
    ke4ir.results.sort                   map
    ke4ir.results.baseline               textual
    ke4ir.results.test                   ttest | ar
    ke4ir.ranker.type                    tfidf | semantic
    ke4ir.ranker.tfidf.weights           textual:0.5 uri:0.125 ...
    ke4ir.ranker.tfidf.sectionweights    title.:0.6 body.:0.4
    ke4ir.ranker.tfidf.rescaling         uri type frame time
    ke4ir.ranker.tfidf.normalize         false
    ke4ir.ranker.tfidf.textuallayer      textual
    ke4ir.ranker.tfidf.semanticweight    0.5
    ke4ir.docs.terms                     docs/terms.tsv.gz
    ke4ir.queries.terms                  queries/terms.tsv.gz
    ke4ir.queries.relevances             queries/relevances.tsv.gz
    ke4ir.results                        results
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from ranking_layers.errors import ConfigurationError
from ranking_layers.evaluation import (
    DEFAULT_CACHE_SIZE,
    DEFAULT_CUTOFF,
    DEFAULT_MAX_DOCS,
    DEFAULT_NUM_WORKERS,
    Evaluation,
)
from ranking_layers.metrics import Metric
from ranking_layers.rankers import RankerConfig, create_ranker
from ranking_layers.settings import enumerate_settings, find_baseline
from ranking_layers.significance import (
    DEFAULT_AR_ITERATIONS,
    SignificanceTest,
    SignificanceTester,
)

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_LAYERS = os.environ.get("EVAL_LAYERS", "textual uri type frame time")
DEFAULT_BASELINE = os.environ.get("EVAL_BASELINE", "textual")
DEFAULT_SORT_METRIC = os.environ.get("EVAL_SORT_METRIC", "map")
DEFAULT_TEST = os.environ.get("EVAL_TEST", "ttest")
DEFAULT_ITERATIONS = int(os.environ.get("EVAL_AR_ITERATIONS", str(DEFAULT_AR_ITERATIONS)))
DEFAULT_PREFIX = "ke4ir."

_LIST_SEPARATOR = re.compile(r"[\s,;]+")
_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0", ""}


def split_list(value: str | list[str] | tuple[str, ...]) -> list[str]:
    """Split a whitespace/comma/semicolon separated list."""
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v for v in _LIST_SEPARATOR.split(value.strip()) if v]


def parse_bool(value: str | bool, name: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    normalized = value.strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    raise ConfigurationError(f"Invalid boolean {value!r} for {name}")


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigurationError(f"Invalid integer {value!r} for {name}") from None


def _parse_float(value: str, name: str) -> float:
    try:
        return float(value.strip())
    except ValueError:
        raise ConfigurationError(f"Invalid number {value!r} for {name}") from None


# =============================================================================
# Properties files
# =============================================================================

_PROPERTY_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _unescape_property(text: str) -> str:
    out = []
    chars = iter(text)
    for c in chars:
        if c != "\\":
            out.append(c)
            continue
        nxt = next(chars, "")
        if nxt == "u":
            code = "".join(next(chars, "") for _ in range(4))
            out.append(chr(int(code, 16)))
        else:
            out.append(_PROPERTY_ESCAPES.get(nxt, nxt))
    return "".join(out)


def _ends_with_continuation(line: str) -> bool:
    backslashes = len(line) - len(line.rstrip("\\"))
    return backslashes % 2 == 1


def parse_properties(text: str) -> dict[str, str]:
    """
    Parse Java ``.properties`` content.

    Supports ``#``/``!`` comments, ``=``/``:``/whitespace separators, line
    continuations with a trailing backslash and the usual escapes.
    """
    properties: dict[str, str] = {}
    logical = ""
    for raw in text.splitlines():
        line = raw.lstrip()
        if not logical and (not line or line[0] in "#!"):
            continue
        if _ends_with_continuation(line):
            logical += line[:-1]
            continue
        logical += line
        match = re.match(r"((?:\\.|[^=:\s\\])*)\s*[=:\s]?\s*(.*)$", logical)
        key, value = match.group(1), match.group(2)
        properties[_unescape_property(key)] = _unescape_property(value)
        logical = ""
    if logical:
        match = re.match(r"((?:\\.|[^=:\s\\])*)\s*[=:\s]?\s*(.*)$", logical)
        properties[_unescape_property(match.group(1))] = _unescape_property(match.group(2))
    return properties


def load_properties(path: str | Path) -> dict[str, str]:
    """Read a Java-style ``.properties`` file (ISO-8859-1 as in Java, UTF-8 accepted)."""
    raw = Path(path).read_bytes()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("latin-1")
    return parse_properties(text)


# =============================================================================
# Configuration object
# =============================================================================


@dataclass
class EvaluationConfig:
    """Evaluation configuration."""

    layers: list[str] = field(default_factory=lambda: split_list(DEFAULT_LAYERS))
    baseline: list[str] = field(default_factory=lambda: split_list(DEFAULT_BASELINE))
    sort_metric: str = DEFAULT_SORT_METRIC
    statistical_test: str = DEFAULT_TEST
    ar_iterations: int = DEFAULT_ITERATIONS
    max_docs: int = DEFAULT_MAX_DOCS
    cutoff: int = DEFAULT_CUTOFF
    num_workers: int = DEFAULT_NUM_WORKERS
    drop_zero_scores: bool = True
    fail_fast: bool = False
    cache_size: int = DEFAULT_CACHE_SIZE
    ranker: RankerConfig = field(default_factory=RankerConfig)
    # Input/output paths (optional; used by the command line)
    docs_terms: Path | None = None
    queries_terms: Path | None = None
    relevances: Path | None = None
    results_dir: Path | None = None

    def validate(self) -> EvaluationConfig:
        """
        Check the configuration before any query is processed.

        Raises:
            ConfigurationError: Describing the first problem found.
        """
        settings = enumerate_settings(self.layers)
        find_baseline(settings, self.baseline)
        try:
            metric = Metric.parse(self.sort_metric)
            SignificanceTest.parse(self.statistical_test)
        except ValueError as e:
            raise ConfigurationError(str(e)) from None
        if self.max_docs < 1:
            raise ConfigurationError(f"maxDocs must be positive, got {self.max_docs}")
        if self.cutoff < 1:
            raise ConfigurationError(f"cutoff must be positive, got {self.cutoff}")
        if metric.at is not None and metric.at > self.cutoff:
            raise ConfigurationError(f"Sort metric {metric} exceeds the cutoff {self.cutoff}")
        if self.ar_iterations < 1:
            raise ConfigurationError(f"AR iterations must be positive, got {self.ar_iterations}")
        if self.num_workers < 0:
            raise ConfigurationError(f"num_workers must be non-negative, got {self.num_workers}")
        if self.cache_size < 0:
            raise ConfigurationError(f"cache_size must be non-negative, got {self.cache_size}")
        create_ranker(self.resolved_ranker())
        return self

    def resolved_ranker(self) -> RankerConfig:
        """Ranker config; a tfidf ranker without weights weighs all the layers equally."""
        if self.ranker.type.strip().lower() != "tfidf" or self.ranker.weights:
            return self.ranker
        uniform = {layer: 1.0 / len(self.layers) for layer in self.layers}
        return replace(self.ranker, weights=uniform)

    @classmethod
    def from_properties(
        cls,
        properties: Mapping[str, str],
        prefix: str = DEFAULT_PREFIX,
        root: str | Path | None = None,
    ) -> EvaluationConfig:
        """
        Build a configuration from properties; absent keys keep their defaults.

        Args:
            properties: Parsed properties.
            prefix: Key prefix (a trailing '.' is added if missing).
            root: Directory relative paths are resolved against.
        """
        pr = prefix if not prefix or prefix.endswith(".") else prefix + "."
        root = Path(root) if root is not None else None

        def get(key: str) -> str | None:
            return properties.get(pr + key)

        def path(key: str) -> Path | None:
            value = get(key)
            if value is None or not value.strip():
                return None
            resolved = Path(value.strip())
            return root / resolved if root is not None and not resolved.is_absolute() else resolved

        config = cls()
        if (value := get("layers")) is not None:
            config.layers = split_list(value)
        if (value := get("maxDocs")) is not None:
            config.max_docs = _parse_int(value, pr + "maxDocs")
        if (value := get("cutoff")) is not None:
            config.cutoff = _parse_int(value, pr + "cutoff")
        if (value := get("results.sort")) is not None:
            config.sort_metric = value.strip()
        if (value := get("results.baseline")) is not None:
            config.baseline = split_list(value)
        if (value := get("results.test")) is not None:
            config.statistical_test = value.strip().lower()
        if (value := get("results.iterations")) is not None:
            config.ar_iterations = _parse_int(value, pr + "results.iterations")
        if (value := get("results.dropzeroscores")) is not None:
            config.drop_zero_scores = parse_bool(value, pr + "results.dropzeroscores")
        if (value := get("workers")) is not None:
            config.num_workers = _parse_int(value, pr + "workers")

        ranker = config.ranker
        if (value := get("ranker.type")) is not None:
            ranker.type = value.strip().lower()
        if (value := get("ranker.tfidf.weights")) is not None:
            ranker.weights = value
        if (value := get("ranker.tfidf.sectionweights")) is not None:
            ranker.section_weights = value if value.strip() else None
        if (value := get("ranker.tfidf.rescaling")) is not None:
            ranker.rescaled_layers = split_list(value)
        if (value := get("ranker.tfidf.normalize")) is not None:
            ranker.normalize = parse_bool(value, pr + "ranker.tfidf.normalize")
        if (value := get("ranker.tfidf.textuallayer")) is not None:
            ranker.textual_layer = value.strip()
        if (value := get("ranker.tfidf.semanticweight")) is not None:
            ranker.semantic_weight = _parse_float(value, pr + "ranker.tfidf.semanticweight")

        config.docs_terms = path("docs.terms")
        config.queries_terms = path("queries.terms")
        config.relevances = path("queries.relevances")
        config.results_dir = path("results")
        return config

    def create_evaluation(self, service, progress: bool = True) -> Evaluation:
        """Validate and build the Evaluation over ``service``."""
        self.validate()
        return Evaluation(
            service,
            create_ranker(self.resolved_ranker()),
            self.layers,
            self.baseline,
            sort_metric=self.sort_metric,
            tester=SignificanceTester(self.statistical_test, self.ar_iterations),
            max_docs=self.max_docs,
            cutoff=self.cutoff,
            num_workers=self.num_workers,
            drop_zero_scores=self.drop_zero_scores,
            fail_fast=self.fail_fast,
            cache_size=self.cache_size,
            progress=progress,
        )


__all__ = [
    "EvaluationConfig",
    "load_properties",
    "parse_properties",
    "parse_bool",
    "split_list",
]
