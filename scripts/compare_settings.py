#!/usr/bin/env python3
"""
Compare two setting-*.csv files written by evaluator.py.

For every metric shared by the two files, prints the mean of each setting
over their common queries, the delta, and the p-values of the paired t-test
and of the approximate randomization test.

Usage:
    python scripts/compare_settings.py results/setting-textual.csv results/setting-textual_uri.csv
"""
from __future__ import annotations

import argparse
import math

from ranking_layers.report import read_setting_table
from ranking_layers.significance import DEFAULT_AR_ITERATIONS, compare_settings


def _fmt(value: float) -> str:
    return "   n/a" if math.isnan(value) else f"{value:.4f}"


def main() -> None:
    parser = argparse.ArgumentParser(description="Compare two per-query setting files.")
    parser.add_argument("baseline", help="setting-*.csv of the baseline.")
    parser.add_argument("system", help="setting-*.csv of the compared setting.")
    parser.add_argument("--metrics", type=str, default="", help="Metrics to compare (comma-separated).")
    parser.add_argument(
        "--iterations",
        type=int,
        default=DEFAULT_AR_ITERATIONS,
        help=f"Approximate randomization iterations (default: {DEFAULT_AR_ITERATIONS}).",
    )
    args = parser.parse_args()

    baseline = read_setting_table(args.baseline)
    system = read_setting_table(args.system)
    common = set(baseline) & set(system)
    if not common:
        parser.error("The two files have no query in common.")

    metrics = [m.strip() for m in args.metrics.split(",") if m.strip()] or None
    results = compare_settings(baseline, system, metrics, args.iterations)

    print(f"{len(common)} common queries")
    print(f"{'metric':<10} {'baseline':>8} {'system':>8} {'delta':>8} {'ttest':>8} {'ar':>8}")
    for name, row in results.items():
        print(
            f"{name:<10} {_fmt(row['baseline']):>8} {_fmt(row['system']):>8} "
            f"{row['delta']:>+8.4f} {_fmt(row['ttest']):>8} {_fmt(row['ar']):>8}"
        )


if __name__ == "__main__":
    main()
