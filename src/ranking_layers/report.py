"""
Report files for an evaluation run.

Every file is a ``;``-separated CSV:
    aggregates.csv        one row per setting, metrics followed by their p-value
    setting-<layers>.csv  one row per query of a setting
    query-<id>.csv        one row per setting of a query
    ranking-<id>.csv      top hits of every single-layer setting, side by side
"""

from __future__ import annotations

import csv
import math
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from ranking_layers.evaluation import EvaluationReport

SEPARATOR = ";"
RANKING_DEPTH = 50


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return "" if math.isnan(value) else f"{value:.6f}"
    return str(value)


def _safe_name(name: str) -> str:
    return re.sub(r"[^\w.-]+", "_", name)


def _unique_names(names: Iterable[str]) -> list[str]:
    """Sanitize names for the file system, suffixing ``-2``, ``-3``... on collisions."""
    result = []
    used: set[str] = set()
    for name in names:
        base = candidate = _safe_name(name)
        suffix = 1
        while candidate in used:
            suffix += 1
            candidate = f"{base}-{suffix}"
        used.add(candidate)
        result.append(candidate)
    return result


def _write_rows(path: Path, rows: Iterable[Mapping[str, Any]], header: list[str] | None = None) -> None:
    rows = list(rows)
    if header is None:
        header = list(rows[0]) if rows else []
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, delimiter=SEPARATOR)
        writer.writerow(header)
        for row in rows:
            writer.writerow([_format_value(row.get(column, "")) for column in header])


def _ranking_rows(report: EvaluationReport, query_id: str) -> tuple[list[str], list[dict[str, Any]]]:
    evaluation = report.queries[query_id]
    judgments = report.relevances.get(query_id, {})
    positions = [p for p, setting in enumerate(report.settings) if len(setting.layers) == 1]

    header = ["rank"]
    for position in positions:
        layer = report.settings[position].layers[0]
        header.extend([layer, f"{layer} score", f"{layer} rel"])

    rows = []
    for rank in range(RANKING_DEPTH):
        row: dict[str, Any] = {"rank": rank + 1}
        found = False
        for position in positions:
            hits = evaluation.hits[position]
            if rank >= len(hits):
                continue
            found = True
            layer = report.settings[position].layers[0]
            hit = hits[rank]
            row[layer] = hit.doc_id
            row[f"{layer} score"] = hit.score
            row[f"{layer} rel"] = judgments.get(hit.doc_id, 0.0)
        if not found:
            break
        rows.append(row)
    return header, rows


def write_report(report: EvaluationReport, directory: str | Path) -> Path:
    """
    Write all the report files of ``report`` into ``directory`` (created if needed).

    Returns:
        The output directory.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    _write_rows(directory / "aggregates.csv", report.aggregate_rows())

    setting_header = ["query", *map(str, report.metrics), "ranking", "layers"]
    setting_names = _unique_names("_".join(setting.layers) for setting in report.settings)
    for position, name in enumerate(setting_names):
        table = report.setting_rows(position)
        _write_rows(directory / f"setting-{name}.csv", table, setting_header)

    query_ids = list(report.queries)
    for query_id, name in zip(query_ids, _unique_names(query_ids), strict=True):
        _write_rows(directory / f"query-{name}.csv", report.query_rows(query_id))
        header, rows = _ranking_rows(report, query_id)
        _write_rows(directory / f"ranking-{name}.csv", rows, header)

    logger.info(f"Report written to {directory}")
    return directory


def read_setting_table(path: str | Path) -> dict[str, dict[str, float]]:
    """Read a ``setting-*.csv`` file back as query ID -> metric -> value."""
    table: dict[str, dict[str, float]] = {}
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f, delimiter=SEPARATOR)
        for row in reader:
            query_id = row.pop("query")
            values = {}
            for column, text in row.items():
                if column in ("ranking", "layers") or column is None:
                    continue
                values[column] = float(text) if text else math.nan
            table[query_id] = values
    return table


def format_top_scores(report: EvaluationReport, limit: int = 10) -> str:
    """Render the best ``limit`` settings as an aligned text table."""
    names = [str(metric) for metric in report.metrics]
    ranked = report.ranked_settings()[:limit]
    labels = [report.settings[p].label for p in ranked]
    width = max([len("setting"), *map(len, labels)])

    lines = ["  ".join(["setting".ljust(width), *(name.rjust(8) for name in names)])]
    for position, label in zip(ranked, labels, strict=True):
        cells = []
        for metric in report.metrics:
            value = report.aggregates[position].get(metric)
            pvalue = report.pvalues[position][metric]
            marker = "*" if not math.isnan(pvalue) and pvalue < 0.05 else " "
            cells.append(f"{value:.4f}{marker}".rjust(8))
        suffix = "  (baseline)" if position == report.baseline else ""
        lines.append("  ".join([label.ljust(width), *cells]) + suffix)
    return "\n".join(lines)


__all__ = ["write_report", "read_setting_table", "format_top_scores"]
