"""Serialize and summarize a ReconciliationReport.

``report_to_dict`` is the JSON-safe structure handed to report consumers.
``write_report`` also flattens the per-entity, per-component and per-group
rows into CSV files with polars.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

import polars as pl

from recon.compare import worst_first
from recon.model import ReconciliationReport

log = logging.getLogger(__name__)

EMPLOYEE_COLUMNS = {
    "layer": pl.Utf8,
    "entity_id": pl.Utf8,
    "entity_name": pl.Utf8,
    "membership": pl.Utf8,
    "file_total": pl.Float64,
    "canonical_total": pl.Float64,
    "diff": pl.Float64,
    "percent_diff": pl.Float64,
    "classification": pl.Utf8,
}
COMPONENT_COLUMNS = {
    "layer": pl.Utf8,
    "entity_id": pl.Utf8,
    "component_id": pl.Utf8,
    "component_name": pl.Utf8,
    "metric": pl.Utf8,
    "presence": pl.Utf8,
    "file_amount": pl.Float64,
    "canonical_amount": pl.Float64,
    "diff": pl.Float64,
    "percent_diff": pl.Float64,
    "classification": pl.Utf8,
}
COMPONENT_TOTAL_COLUMNS = {
    "layer": pl.Utf8,
    "component_id": pl.Utf8,
    "component_name": pl.Utf8,
    "metric": pl.Utf8,
    "file_total": pl.Float64,
    "canonical_total": pl.Float64,
    "diff": pl.Float64,
    "percent_diff": pl.Float64,
    "classification": pl.Utf8,
    "entity_count": pl.Int64,
    "exact_count": pl.Int64,
}
GROUP_COLUMNS = {
    "group_key": pl.Utf8,
    "file_total": pl.Float64,
    "canonical_total": pl.Float64,
    "diff": pl.Float64,
    "percent_diff": pl.Float64,
    "classification": pl.Utf8,
    "entity_count": pl.Int64,
    "file_entity_count": pl.Int64,
    "canonical_entity_count": pl.Int64,
}


def report_to_dict(report: ReconciliationReport) -> dict[str, Any]:
    """Plain dict/list/str/float structure, ``json.dumps``-ready."""
    data = dataclasses.asdict(report)
    if report.depth is not None:
        data["depth"]["max_layer"] = report.depth.max_layer
        data["depth"]["periods"]["rows_per_period"] = report.depth.periods.rows_per_period
    data["layers"] = [
        {**layer, "worst_classification": result.worst_classification}
        for layer, result in zip(data["layers"], report.layers)
    ]
    return data


def employee_rows(report: ReconciliationReport) -> list[dict[str, Any]]:
    employees = report.layer("employee")
    if employees is None or not employees.available:
        return []
    return [
        {
            "layer": "employee",
            "entity_id": e.entity_id,
            "entity_name": e.entity_name,
            "membership": e.membership,
            "file_total": e.file_total,
            "canonical_total": e.canonical_total,
            "diff": e.diff,
            "percent_diff": e.percent_diff,
            "classification": e.classification,
        }
        for e in employees.employees
    ]


def component_rows(report: ReconciliationReport) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for name in ("component", "metric"):
        result = report.layer(name)
        if result is None or not result.available:
            continue
        for e in result.employees:
            for c in e.components:
                rows.append(
                    {
                        "layer": name,
                        "entity_id": e.entity_id,
                        "component_id": c.component_id,
                        "component_name": c.component_name,
                        "metric": c.metric,
                        "presence": c.presence,
                        "file_amount": c.file_amount,
                        "canonical_amount": c.canonical_amount,
                        "diff": c.diff,
                        "percent_diff": c.percent_diff,
                        "classification": c.classification,
                    }
                )
    return rows


def component_total_rows(report: ReconciliationReport) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for name in ("component", "metric"):
        result = report.layer(name)
        if result is None or not result.available:
            continue
        for r in result.components:
            rows.append({"layer": name, **dataclasses.asdict(r)})
    return rows


def group_rows(report: ReconciliationReport) -> list[dict[str, Any]]:
    result = report.layer("grouping")
    if result is None or not result.available:
        return []
    return [dataclasses.asdict(g) for g in result.groups]


def write_report(report: ReconciliationReport, out_dir: str | Path) -> list[Path]:
    """Write report.json plus the employee, component, component-total and group CSVs.

    Returns the paths written.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    report_path = out_dir / "report.json"
    report_path.write_text(json.dumps(report_to_dict(report), indent=2) + "\n")
    written = [report_path]

    tables = (
        ("employees.csv", employee_rows(report), EMPLOYEE_COLUMNS),
        ("components.csv", component_rows(report), COMPONENT_COLUMNS),
        ("component_totals.csv", component_total_rows(report), COMPONENT_TOTAL_COLUMNS),
        ("groups.csv", group_rows(report), GROUP_COLUMNS),
    )
    for filename, rows, schema in tables:
        path = out_dir / filename
        pl.DataFrame(rows, schema=schema).write_csv(path)
        written.append(path)

    log.info("Report written to %s", out_dir)
    return written


# ---------------------------------------------------------------------------
# Terminal summary
# ---------------------------------------------------------------------------


def _pct(value: float | None) -> str:
    return "n/a" if value is None else f"{value:+.2%}"


def format_report(report: ReconciliationReport, max_rows: int = 10) -> str:
    lines = [f"Status: {report.status}"]
    if report.period_filter:
        lines.append(f"Period: {report.period_filter}")

    for result in report.layers:
        if not result.available:
            lines.append(f"\n[{result.layer}] unavailable: {result.reason}")
            continue
        s = result.summary
        lines.append(f"\n[{result.layer}] {result.reason}")
        if s is not None:
            lines.append(
                f"  file {s.file_total:,.2f}  canonical {s.canonical_total:,.2f}  "
                f"diff {s.diff:+,.2f} ({_pct(s.percent_diff)})  {s.classification}"
            )
            if s.matched is not None:
                lines.append(
                    f"  matched {s.matched}  file-only {s.file_only}  canonical-only {s.vl_only}"
                )
        if result.layer == "employee":
            flagged = [e for e in worst_first(result.employees) if e.classification != "exact"]
            for e in flagged[:max_rows]:
                lines.append(
                    f"    {e.entity_id:<12} {e.membership:<9} diff {e.diff:+,.2f} "
                    f"({_pct(e.percent_diff)})  {e.classification}"
                )
            if len(flagged) > max_rows:
                lines.append(f"    ... {len(flagged) - max_rows} more")
        if result.layer in ("component", "metric"):
            for r in result.components[:max_rows]:
                name = r.component_id if r.metric is None else f"{r.component_id}/{r.metric}"
                lines.append(
                    f"    {name:<12} file {r.file_total:,.2f}  canonical {r.canonical_total:,.2f}  "
                    f"diff {r.diff:+,.2f} ({_pct(r.percent_diff)})  {r.classification}  "
                    f"exact {r.exact_count}/{r.entity_count}"
                )
        if result.layer == "grouping":
            for g in result.groups[:max_rows]:
                lines.append(
                    f"    {g.group_key:<12} diff {g.diff:+,.2f} ({_pct(g.percent_diff)})  {g.classification}"
                )

    if report.false_agreements:
        lines.append(f"\nFalse agreements ({len(report.false_agreements)}):")
        for f in report.false_agreements[:max_rows]:
            lines.append(
                f"  {f.entity_id:<12} {f.entity_classification} at {f.observed_layer}, "
                f"masked {f.masked_impact:,.2f} in {', '.join(f.component_ids)}"
            )

    if report.findings:
        lines.append(f"\nFindings ({len(report.findings)}):")
        for f in report.findings[:max_rows]:
            lines.append(f"  [{f.severity}] {f.title}")

    if report.issues:
        lines.append(f"\nIssues ({len(report.issues)}):")
        for i in report.issues:
            where = f" [{i.layer}]" if i.layer else ""
            lines.append(f"  - {i.code}{where}: {i.message}")
    return "\n".join(lines)
