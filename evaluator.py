"""
Layer-combination evaluator.

Ranks every query with every non-empty combination of the configured layers,
scores the rankings against gold relevances and compares each combination
with the baseline through a paired significance test.

Configure via a properties file, flags, or environment variables:
    EVAL_LAYERS="textual uri type frame time"   # Layers to combine
    EVAL_BASELINE=textual                       # Layers of the baseline setting
    EVAL_SORT_METRIC=map                        # Metric used to rank settings
    EVAL_TEST=ttest                             # ttest or ar
    EVAL_MAX_DOCS=1000                          # Candidates per layer
    EVAL_NUM_WORKERS=0                          # Query threads (0 = auto)

Run with:
    uv run python evaluator.py --config ke4ir.properties
    uv run python evaluator.py --docs docs/terms.tsv.gz --queries queries/terms.tsv.gz \
        --relevances queries/relevances.tsv --weights "textual:0.5 uri:0.5" --layers textual,uri
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from ranking_layers.config import EvaluationConfig, load_properties, split_list
from ranking_layers.datasets import InMemoryIndex, load_relevances, load_term_vectors
from ranking_layers.errors import ConfigurationError
from ranking_layers.report import write_report


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format="{time:HH:mm:ss} | {level: <7} | {message}")


def evaluate(config: EvaluationConfig, progress: bool = True) -> dict[str, Any]:
    """
    Run an evaluation described by ``config``.

    Args:
        config: Validated configuration with the docs/queries/relevances paths set.
        progress: Show a progress bar over queries.

    Returns:
        The summary of the run (see EvaluationReport.summary).
    """
    for name in ("docs_terms", "queries_terms", "relevances"):
        if getattr(config, name) is None:
            raise ConfigurationError(f"Missing path: {name}")

    # Surface configuration errors before loading any data
    config.validate()

    logger.info(f"Loading document vectors from {config.docs_terms}")
    index = InMemoryIndex(load_term_vectors(config.docs_terms))
    logger.info(f"Loading query vectors from {config.queries_terms}")
    queries = load_term_vectors(config.queries_terms)
    relevances = load_relevances(config.relevances)
    logger.info(f"Loaded {len(index)} documents, {len(queries)} queries, {len(relevances)} judged")

    evaluation = config.create_evaluation(index, progress=progress)
    report = evaluation.run(queries, relevances)
    if config.results_dir is not None:
        write_report(report, config.results_dir)
    summary = report.summary()
    summary["failed_queries"] = report.failed_queries
    return summary


def build_config(args: argparse.Namespace) -> EvaluationConfig:
    if args.config:
        config_path = Path(args.config)
        config = EvaluationConfig.from_properties(
            load_properties(config_path), prefix=args.prefix, root=config_path.parent
        )
    else:
        config = EvaluationConfig()

    # Flags override the properties file
    if args.layers:
        config.layers = split_list(args.layers)
    if args.baseline:
        config.baseline = split_list(args.baseline)
    if args.sort:
        config.sort_metric = args.sort
    if args.test:
        config.statistical_test = args.test
    if args.iterations is not None:
        config.ar_iterations = args.iterations
    if args.max_docs is not None:
        config.max_docs = args.max_docs
    if args.cutoff is not None:
        config.cutoff = args.cutoff
    if args.workers is not None:
        config.num_workers = args.workers
    if args.keep_zero_scores:
        config.drop_zero_scores = False
    if args.fail_fast:
        config.fail_fast = True
    if args.ranker:
        config.ranker.type = args.ranker
    if args.weights:
        config.ranker.weights = args.weights
    if args.section_weights:
        config.ranker.section_weights = args.section_weights
    if args.rescaling:
        config.ranker.rescaled_layers = split_list(args.rescaling)
    if args.normalize:
        config.ranker.normalize = True
    if args.semantic_weight is not None:
        config.ranker.semantic_weight = args.semantic_weight
    if args.docs:
        config.docs_terms = Path(args.docs)
    if args.queries:
        config.queries_terms = Path(args.queries)
    if args.relevances:
        config.relevances = Path(args.relevances)
    if args.output:
        config.results_dir = Path(args.output)
    return config


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Evaluate all the combinations of semantic layers against a textual baseline.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Everything from a properties file (ke4ir.* keys)
  python evaluator.py --config ke4ir.properties

  # Override the statistical test and the sort metric
  python evaluator.py --config ke4ir.properties --test ar --sort ndcg@10

  # Explicit inputs
  python evaluator.py --docs docs/terms.tsv.gz --queries queries/terms.tsv.gz \\
      --relevances queries/relevances.tsv --layers textual,uri,type \\
      --weights "textual:0.5 uri:0.25 type:0.25" --rescaling uri,type --output results
""",
    )
    parser.add_argument("--config", type=str, default="", help="Properties file.")
    parser.add_argument("--prefix", type=str, default="ke4ir.", help="Property key prefix (default: ke4ir.).")
    parser.add_argument("--docs", type=str, default="", help="Document term vectors (TSV, optionally .gz).")
    parser.add_argument("--queries", type=str, default="", help="Query term vectors (TSV, optionally .gz).")
    parser.add_argument("--relevances", type=str, default="", help="Gold relevances file.")
    parser.add_argument("--output", type=str, default="", help="Directory for the report files.")
    parser.add_argument("--layers", type=str, default="", help="Layers to combine (comma-separated).")
    parser.add_argument("--baseline", type=str, default="", help="Layers of the baseline setting.")
    parser.add_argument("--sort", type=str, default="", help="Sort metric (e.g. map, ndcg@10, p@5).")
    parser.add_argument("--test", type=str, choices=["ttest", "ar"], default=None, help="Significance test.")
    parser.add_argument("--iterations", type=int, default=None, help="Approximate randomization iterations.")
    parser.add_argument("--max-docs", type=int, default=None, help="Candidates retrieved per layer.")
    parser.add_argument("--cutoff", type=int, default=None, help="Largest cutoff of the @n metrics.")
    parser.add_argument("--workers", type=int, default=None, help="Query worker threads (0 = auto).")
    parser.add_argument("--ranker", type=str, choices=["tfidf", "semantic"], default=None, help="Ranker type.")
    parser.add_argument("--weights", type=str, default="", help='Layer weights, e.g. "textual:0.5 uri:0.5".')
    parser.add_argument("--section-weights", type=str, default="", help='Section weights, e.g. "title.:0.6 body.:0.4".')
    parser.add_argument("--rescaling", type=str, default="", help="Layers whose total weight is rescaled.")
    parser.add_argument("--normalize", action="store_true", help="Cosine-normalize document scores.")
    parser.add_argument("--semantic-weight", type=float, default=None, help="Semantic weight of the semantic ranker.")
    parser.add_argument("--keep-zero-scores", action="store_true", help="Keep documents scoring 0 in rankings.")
    parser.add_argument("--fail-fast", action="store_true", help="Abort on the first failing query.")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (default: INFO).")
    args = parser.parse_args()

    configure_logging(args.log_level)
    try:
        config = build_config(args)
        results = evaluate(config, progress=not args.no_progress)
    except ConfigurationError as e:
        parser.error(str(e))
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
