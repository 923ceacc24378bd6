#!/usr/bin/env python3
"""
Score a rankings file against gold relevances.

Rankings are lines ``key doc doc ...`` (best first); relevances are lines
``key doc[:grade] ...``. Prints the score of every key followed by the
average, or a JSON object with --json.

Usage:
    python scripts/score_rankings.py rankings.txt relevances.txt --cutoff 10
"""
from __future__ import annotations

import argparse
import json

from ranking_layers.datasets import load_rankings, load_relevances
from ranking_layers.errors import MissingJudgmentsError
from ranking_layers.metrics import score_rankings


def main() -> None:
    parser = argparse.ArgumentParser(description="Score rankings against gold relevances.")
    parser.add_argument("rankings", help="Rankings file.")
    parser.add_argument("relevances", help="Gold relevances file.")
    parser.add_argument("--cutoff", type=int, default=10, help="Largest cutoff of the @n metrics (default: 10).")
    parser.add_argument("--json", action="store_true", help="Print the scores as JSON.")
    args = parser.parse_args()

    rankings = load_rankings(args.rankings)
    relevances = load_relevances(args.relevances)
    try:
        per_key, overall = score_rankings(rankings, relevances, args.cutoff)
    except MissingJudgmentsError as e:
        parser.error(str(e))

    if args.json:
        output = {key: score.to_dict() for key, score in per_key.items()}
        output["average"] = overall.to_dict()
        print(json.dumps(output, indent=2))
        return

    for key, score in per_key.items():
        print(f"{key}: {score}")
    print(f"average: {overall}")


if __name__ == "__main__":
    main()
