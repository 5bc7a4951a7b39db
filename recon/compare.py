"""Comparison Engine: join, partition and diff the two datasets at one layer.

Both sides are coerced into small polars frames (one row per file row or
canonical result, one row per component amount or metric value), registered
with a DuckDB connection, and compared with FULL OUTER JOINs. DuckDB does
the partitioning and per-entity sums; Python only classifies the deltas.

Each call is self-contained: it normalizes, filters and registers its own
inputs and unregisters them before returning, so layers can be driven one
at a time or share one connection.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterator, Sequence

import duckdb
import polars as pl

from recon.errors import LayerUnavailableError
from recon.model import (
    ENTITY_ID,
    ENTITY_NAME,
    GROUP,
    LAYERS,
    TOTAL_AMOUNT,
    CanonicalResult,
    Classification,
    ComparisonSummary,
    ComponentComparison,
    ComponentRollup,
    EmployeeComparison,
    GroupComparison,
    Issue,
    Layer,
    LayerResult,
    MappingResult,
    Membership,
    ParsedFile,
    Presence,
    severity,
)
from recon.normalize import Period, id_text, normalize_id, parse_amount, resolve_period

log = logging.getLogger(__name__)

TOLERANCE_THRESHOLD = 0.05
AMBER_THRESHOLD = 0.15
DIFF_DECIMALS = 6
PERCENT_DECIMALS = 10
MAX_LISTED_IDS = 5

FILE_SCHEMA = {
    "row": pl.Int64,
    "eid": pl.Utf8,
    "display_id": pl.Utf8,
    "name": pl.Utf8,
    "group_key": pl.Utf8,
    "amount": pl.Float64,
}
FILE_PARTS_SCHEMA = {
    "eid": pl.Utf8,
    "component_id": pl.Utf8,
    "metric": pl.Utf8,
    "amount": pl.Float64,
}
CANONICAL_SCHEMA = {
    "eid": pl.Utf8,
    "display_id": pl.Utf8,
    "name": pl.Utf8,
    "group_key": pl.Utf8,
    "amount": pl.Float64,
}
CANONICAL_PARTS_SCHEMA = FILE_PARTS_SCHEMA


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_delta(percent_diff: float | None, diff: float = 0.0) -> Classification:
    """Band a delta on ``|percent_diff|``, or on ``|diff|`` when there is no percentage.

    ``0 -> exact``, ``(0, 0.05] -> within_tolerance``, ``(0.05, 0.15] -> amber``,
    anything larger ``-> red``.
    """
    magnitude = abs(percent_diff) if percent_diff is not None else abs(diff)
    if magnitude == 0:
        return "exact"
    if magnitude <= TOLERANCE_THRESHOLD:
        return "within_tolerance"
    if magnitude <= AMBER_THRESHOLD:
        return "amber"
    return "red"


def compute_delta(
    file_amount: float, canonical_amount: float
) -> tuple[float, float | None, Classification]:
    """Return ``(diff, percent_diff, classification)``; canonical amount is the denominator."""
    diff = round(file_amount - canonical_amount, DIFF_DECIMALS) + 0.0
    if canonical_amount != 0:
        percent_diff: float | None = round(diff / canonical_amount, PERCENT_DECIMALS) + 0.0
    else:
        percent_diff = None
    return diff, percent_diff, classify_delta(percent_diff, diff)


def _membership(in_file: bool, in_canonical: bool) -> Membership:
    if in_file and in_canonical:
        return "matched"
    return "file_only" if in_file else "vl_only"


def _presence(in_file: bool, in_canonical: bool) -> Presence:
    if in_file and in_canonical:
        return "both"
    return "file_only" if in_file else "vl_only"


# ---------------------------------------------------------------------------
# Input preparation
# ---------------------------------------------------------------------------


@dataclass
class PreparedInputs:
    """Both datasets as typed frames, after period filtering and id normalization."""

    file: pl.DataFrame
    file_parts: pl.DataFrame
    canonical: pl.DataFrame
    canonical_parts: pl.DataFrame
    has_ids: bool
    has_groups: bool
    component_names: dict[str, str]
    issues: list[Issue] = field(default_factory=list)


def _period_filter(
    layer: Layer,
    period_filter: str,
    period_cols: Sequence[str],
    rows: list[dict[str, Any]],
    results: list[CanonicalResult],
    issues: list[Issue],
) -> tuple[list[dict[str, Any]], list[CanonicalResult]]:
    """Drop file rows and canonical results outside ``period_filter``.

    File rows are only filtered when a period column is mapped. Several
    period columns (month and year) are combined into one period per row.
    """
    target = resolve_period([period_filter])
    if target is None:
        return rows, results

    if period_cols:
        kept = [r for r in rows if _within(resolve_period(r.get(c) for c in period_cols), target)]
        if rows and not kept:
            issues.append(
                Issue(
                    "period_mismatch",
                    f"Period filter {period_filter!r} matched none of the {len(rows)} file row(s) "
                    f"(period column(s): {', '.join(period_cols)})",
                    layer=layer,
                )
            )
        rows = kept

    kept_results = [r for r in results if _within(resolve_period([r.period_key]), target)]
    if results and not kept_results:
        issues.append(
            Issue(
                "period_mismatch",
                f"Period filter {period_filter!r} matched none of the {len(results)} canonical result(s)",
                layer=layer,
            )
        )
    return rows, kept_results


def _within(period: Period | None, target: Period) -> bool:
    return period is not None and period.within(target)


def prepare_inputs(
    layer: Layer,
    mapping: MappingResult,
    parsed_file: ParsedFile,
    canonical_results: Sequence[CanonicalResult],
    period_filter: str | None = None,
) -> PreparedInputs:
    id_col = mapping.column_for(ENTITY_ID)
    name_col = mapping.column_for(ENTITY_NAME)
    total_col = mapping.column_for(TOTAL_AMOUNT)
    group_col = mapping.column_for(GROUP)
    component_cols = mapping.component_columns()
    metric_cols = mapping.metric_columns()
    issues: list[Issue] = []

    rows = list(parsed_file.rows)
    results = list(canonical_results)
    if period_filter:
        rows, results = _period_filter(
            layer, period_filter, mapping.period_columns(), rows, results, issues
        )

    if total_col is None and not component_cols:
        raise LayerUnavailableError(layer, "no total amount or component columns mapped")
    if total_col is None:
        issues.append(
            Issue(
                "derived_total",
                "File total derived from the sum of mapped component columns",
                layer=layer,
            )
        )

    bad_cells: Counter[str] = Counter()

    def amount(row: dict[str, Any], col: str) -> float | None:
        try:
            return parse_amount(row.get(col))
        except ValueError:
            bad_cells[col] += 1
            return None

    file_records: list[dict[str, Any]] = []
    part_records: list[dict[str, Any]] = []
    blank_ids = 0
    for idx, row in enumerate(rows):
        eid: str | None = None
        if id_col is not None:
            eid = normalize_id(row.get(id_col))
            if not eid:
                blank_ids += 1
                continue
        components: dict[str, float | None] = {}
        for col, cid in component_cols:
            value = amount(row, col)
            if value is not None:
                components[cid] = (components.get(cid) or 0.0) + value
            else:
                components.setdefault(cid, None)
        if total_col is not None:
            total = amount(row, total_col)
        else:
            present = [v for v in components.values() if v is not None]
            total = sum(present) if present else None
        group_value = normalize_id(row.get(group_col)) if group_col is not None else ""
        file_records.append(
            {
                "row": idx,
                "eid": eid,
                "display_id": id_text(row.get(id_col)) if id_col is not None else None,
                "name": id_text(row.get(name_col)) if name_col is not None else None,
                "group_key": group_value or None,
                "amount": total,
            }
        )
        for cid, value in components.items():
            if value is not None:
                part_records.append({"eid": eid, "component_id": cid, "metric": None, "amount": value})
        for col, cid, metric in metric_cols:
            value = amount(row, col)
            if value is not None:
                part_records.append({"eid": eid, "component_id": cid, "metric": metric, "amount": value})

    if blank_ids:
        issues.append(
            Issue("blank_ids", f"{blank_ids} file row(s) with a blank entity id were skipped", layer=layer)
        )
    for col, count in bad_cells.items():
        issues.append(
            Issue(
                "unparseable_amount",
                f"{count} value(s) in column {col!r} are not amounts and were treated as absent",
                layer=layer,
            )
        )

    mapped_components = {cid for _, cid in component_cols}
    mapped_metrics = {(cid, metric) for _, cid, metric in metric_cols}
    component_names: dict[str, str] = {}
    canonical_records: list[dict[str, Any]] = []
    canonical_parts: list[dict[str, Any]] = []
    for r in results:
        eid = normalize_id(r.entity_id)
        if not eid:
            continue
        group_value = normalize_id(r.group_key) if r.group_key is not None else ""
        canonical_records.append(
            {
                "eid": eid,
                "display_id": id_text(r.entity_id),
                "name": r.entity_name,
                "group_key": group_value or None,
                "amount": float(r.total_amount),
            }
        )
        for c in r.components:
            component_names.setdefault(c.component_id, c.component_name)
            if c.component_id in mapped_components:
                canonical_parts.append(
                    {"eid": eid, "component_id": c.component_id, "metric": None, "amount": float(c.amount)}
                )
            for metric, value in c.metrics.items():
                if (c.component_id, metric) in mapped_metrics:
                    canonical_parts.append(
                        {"eid": eid, "component_id": c.component_id, "metric": metric, "amount": float(value)}
                    )

    return PreparedInputs(
        file=pl.DataFrame(file_records, schema=FILE_SCHEMA),
        file_parts=pl.DataFrame(part_records, schema=FILE_PARTS_SCHEMA),
        canonical=pl.DataFrame(canonical_records, schema=CANONICAL_SCHEMA),
        canonical_parts=pl.DataFrame(canonical_parts, schema=CANONICAL_PARTS_SCHEMA),
        has_ids=id_col is not None,
        has_groups=group_col is not None,
        component_names=component_names,
        issues=issues,
    )


@contextmanager
def registered(conn: duckdb.DuckDBPyConnection, inputs: PreparedInputs) -> Iterator[None]:
    """Expose the prepared frames to DuckDB as ``_recon_*`` views."""
    frames = {
        "_recon_file": inputs.file,
        "_recon_file_parts": inputs.file_parts,
        "_recon_canonical": inputs.canonical,
        "_recon_canonical_parts": inputs.canonical_parts,
    }
    for name, df in frames.items():
        conn.register(name, df)
    try:
        yield
    finally:
        for name in frames:
            conn.unregister(name)


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

TOTALS_SQL = """
SELECT
    (SELECT coalesce(sum(amount), 0) FROM _recon_file) AS file_total,
    (SELECT coalesce(sum(amount), 0) FROM _recon_canonical) AS canonical_total
"""

ENTITY_SQL = """
WITH f AS (
    SELECT eid, min(display_id) AS display_id, max(name) AS name,
           coalesce(sum(amount), 0) AS amount, count(*) AS n
    FROM _recon_file
    GROUP BY eid
), c AS (
    SELECT eid, min(display_id) AS display_id, max(name) AS name, sum(amount) AS amount
    FROM _recon_canonical
    GROUP BY eid
)
SELECT
    coalesce(f.eid, c.eid) AS eid,
    coalesce(c.display_id, f.display_id) AS display_id,
    coalesce(c.name, f.name, '') AS name,
    f.eid IS NOT NULL AS in_file,
    c.eid IS NOT NULL AS in_canonical,
    coalesce(f.amount, 0) AS file_amount,
    coalesce(c.amount, 0) AS canonical_amount,
    coalesce(f.n, 0) AS n
FROM f FULL OUTER JOIN c ON f.eid = c.eid
ORDER BY 1
"""

# {metric_filter} selects component amounts (metric IS NULL) or metric values.
PARTS_SQL = """
WITH matched AS (
    SELECT DISTINCT f.eid FROM _recon_file f JOIN _recon_canonical c ON f.eid = c.eid
), f AS (
    SELECT eid, component_id, metric, sum(amount) AS amount
    FROM _recon_file_parts
    WHERE {metric_filter}
    GROUP BY ALL
), c AS (
    SELECT eid, component_id, metric, sum(amount) AS amount
    FROM _recon_canonical_parts
    WHERE {metric_filter}
    GROUP BY ALL
)
SELECT
    coalesce(f.eid, c.eid) AS eid,
    coalesce(f.component_id, c.component_id) AS component_id,
    coalesce(f.metric, c.metric) AS metric,
    f.eid IS NOT NULL AS in_file,
    c.eid IS NOT NULL AS in_canonical,
    coalesce(f.amount, 0) AS file_amount,
    coalesce(c.amount, 0) AS canonical_amount
FROM f FULL OUTER JOIN c
    ON f.eid = c.eid
    AND f.component_id = c.component_id
    AND f.metric IS NOT DISTINCT FROM c.metric
WHERE coalesce(f.eid, c.eid) IN (SELECT eid FROM matched)
ORDER BY 1, 2, 3
"""

GROUPS_SQL = """
WITH f AS (
    SELECT group_key, coalesce(sum(amount), 0) AS amount,
           count(DISTINCT coalesce(eid, '#' || CAST("row" AS VARCHAR))) AS n
    FROM _recon_file
    WHERE group_key IS NOT NULL
    GROUP BY group_key
), c AS (
    SELECT group_key, sum(amount) AS amount, count(DISTINCT eid) AS n
    FROM _recon_canonical
    WHERE group_key IS NOT NULL
    GROUP BY group_key
), e AS (
    SELECT group_key, count(DISTINCT k) AS n
    FROM (
        SELECT group_key, coalesce(eid, '#' || CAST("row" AS VARCHAR)) AS k FROM _recon_file
        UNION ALL
        SELECT group_key, eid AS k FROM _recon_canonical
    )
    WHERE group_key IS NOT NULL
    GROUP BY group_key
)
SELECT
    coalesce(f.group_key, c.group_key) AS group_key,
    coalesce(f.amount, 0) AS file_amount,
    coalesce(c.amount, 0) AS canonical_amount,
    e.n AS entity_count,
    coalesce(f.n, 0) AS file_count,
    coalesce(c.n, 0) AS canonical_count
FROM f FULL OUTER JOIN c ON f.group_key = c.group_key
JOIN e ON e.group_key = coalesce(f.group_key, c.group_key)
"""


# ---------------------------------------------------------------------------
# Issue helpers
# ---------------------------------------------------------------------------


def _zero_denominator_issue(layer: Layer, ids: list[str]) -> Issue | None:
    if not ids:
        return None
    listed = ", ".join(ids[:MAX_LISTED_IDS])
    more = f" and {len(ids) - MAX_LISTED_IDS} more" if len(ids) > MAX_LISTED_IDS else ""
    return Issue(
        "zero_denominator",
        f"{len(ids)} comparison(s) have a zero canonical amount and were classified "
        f"on the absolute difference ({listed}{more})",
        layer=layer,
    )


def _duplicate_issue(layer: Layer, ids: list[str]) -> Issue | None:
    if not ids:
        return None
    listed = ", ".join(ids[:MAX_LISTED_IDS])
    more = f" and {len(ids) - MAX_LISTED_IDS} more" if len(ids) > MAX_LISTED_IDS else ""
    return Issue(
        "duplicate_ids",
        f"{len(ids)} entity id(s) appear on several file rows; their amounts were summed ({listed}{more})",
        layer=layer,
    )


def _no_overlap_issue(layer: Layer) -> Issue:
    return Issue(
        "no_overlap",
        "No entity ids overlap between the file and canonical results after normalization",
        layer=layer,
    )


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


@dataclass
class _Entities:
    """Per-entity comparisons keyed by normalized id, in id order."""

    by_key: dict[str, EmployeeComparison]
    issues: list[Issue]

    @property
    def employees(self) -> list[EmployeeComparison]:
        return list(self.by_key.values())

    def count(self, membership: Membership) -> int:
        return sum(1 for e in self.by_key.values() if e.membership == membership)

    @property
    def matched(self) -> dict[str, EmployeeComparison]:
        return {k: e for k, e in self.by_key.items() if e.membership == "matched"}


def _entities(conn: duckdb.DuckDBPyConnection, layer: Layer) -> _Entities:
    by_key: dict[str, EmployeeComparison] = {}
    zero_ids: list[str] = []
    duplicates: list[str] = []
    for eid, display_id, name, in_file, in_canonical, file_amount, canonical_amount, n in conn.execute(
        ENTITY_SQL
    ).fetchall():
        diff, percent, classification = compute_delta(file_amount, canonical_amount)
        membership = _membership(in_file, in_canonical)
        if membership == "matched" and percent is None and diff != 0:
            zero_ids.append(display_id)
        if n > 1:
            duplicates.append(display_id)
        by_key[eid] = EmployeeComparison(
            entity_id=display_id,
            entity_name=name,
            membership=membership,
            file_total=file_amount,
            canonical_total=canonical_amount,
            diff=diff,
            percent_diff=percent,
            classification=classification,
        )
    issues = [
        i
        for i in (_zero_denominator_issue(layer, zero_ids), _duplicate_issue(layer, duplicates))
        if i is not None
    ]
    return _Entities(by_key, issues)


def _summary(
    conn: duckdb.DuckDBPyConnection,
    entities: _Entities | None,
    classifications: Sequence[str],
    totals: tuple[float, float] | None = None,
) -> ComparisonSummary:
    if totals is None:
        totals = conn.execute(TOTALS_SQL).fetchone()
    file_total, canonical_total = totals
    diff, percent, classification = compute_delta(file_total, canonical_total)
    counts = Counter(classifications)
    return ComparisonSummary(
        matched=entities.count("matched") if entities else None,
        file_only=entities.count("file_only") if entities else None,
        vl_only=entities.count("vl_only") if entities else None,
        file_total=file_total,
        canonical_total=canonical_total,
        diff=diff,
        percent_diff=percent,
        classification=classification,
        exact=counts["exact"],
        within_tolerance=counts["within_tolerance"],
        amber=counts["amber"],
        red=counts["red"],
    )


def _aggregate_layer(conn: duckdb.DuckDBPyConnection, inputs: PreparedInputs) -> LayerResult:
    issues = list(inputs.issues)
    entities: _Entities | None = None
    if inputs.has_ids:
        entities = _entities(conn, "aggregate")
        issues.extend(i for i in entities.issues if i.code == "duplicate_ids")
        if not entities.matched and entities.employees:
            issues.append(_no_overlap_issue("aggregate"))
    summary = _summary(
        conn, entities, [e.classification for e in entities.matched.values()] if entities else []
    )
    if summary.percent_diff is None and summary.diff != 0:
        issues.append(_zero_denominator_issue("aggregate", ["aggregate total"]))
    return LayerResult(
        layer="aggregate",
        available=True,
        reason="totals compared",
        summary=summary,
        issues=issues,
    )


def _employee_layer(conn: duckdb.DuckDBPyConnection, inputs: PreparedInputs) -> LayerResult:
    if not inputs.has_ids:
        raise LayerUnavailableError("employee", "no entity id column mapped")
    entities = _entities(conn, "employee")
    issues = list(inputs.issues) + entities.issues
    if not entities.matched:
        issues.append(_no_overlap_issue("employee"))
    summary = _summary(conn, entities, [e.classification for e in entities.matched.values()])
    return LayerResult(
        layer="employee",
        available=True,
        reason=f"{summary.matched} matched, {summary.file_only} file-only, {summary.vl_only} canonical-only",
        summary=summary,
        employees=entities.employees,
        issues=issues,
    )


def _rollups(employees: Sequence[EmployeeComparison]) -> list[ComponentRollup]:
    """Sum each component (or component metric) over the matched entities.

    Components with a delta come first, largest absolute delta first.
    """
    grouped: dict[tuple[str, str | None], list[ComponentComparison]] = {}
    for e in employees:
        for c in e.components:
            grouped.setdefault((c.component_id, c.metric), []).append(c)

    rollups: list[ComponentRollup] = []
    for (cid, metric), comparisons in grouped.items():
        file_total = round(math.fsum(c.file_amount for c in comparisons), DIFF_DECIMALS)
        canonical_total = round(math.fsum(c.canonical_amount for c in comparisons), DIFF_DECIMALS)
        diff, percent, classification = compute_delta(file_total, canonical_total)
        rollups.append(
            ComponentRollup(
                component_id=cid,
                component_name=comparisons[0].component_name,
                file_total=file_total,
                canonical_total=canonical_total,
                diff=diff,
                percent_diff=percent,
                classification=classification,
                entity_count=len(comparisons),
                exact_count=sum(1 for c in comparisons if c.classification == "exact"),
                metric=metric,
            )
        )
    rollups.sort(
        key=lambda r: (r.classification == "exact", -abs(r.diff), r.component_id, r.metric or "")
    )
    return rollups


def _parts_layer(
    conn: duckdb.DuckDBPyConnection, inputs: PreparedInputs, layer: Layer
) -> LayerResult:
    metric_layer = layer == "metric"
    if not inputs.has_ids:
        raise LayerUnavailableError(layer, "no entity id column mapped")
    what = "metric" if metric_layer else "component"
    metric_filter = "metric IS NOT NULL" if metric_layer else "metric IS NULL"
    wanted = pl.col("metric").is_not_null() if metric_layer else pl.col("metric").is_null()
    if (
        inputs.file_parts.filter(wanted).is_empty()
        and inputs.canonical_parts.filter(wanted).is_empty()
    ):
        raise LayerUnavailableError(layer, f"no comparable {what} values in either dataset")

    entities = _entities(conn, layer)
    parts: dict[str, list[ComponentComparison]] = {}
    zero_ids: list[str] = []
    for eid, cid, metric, in_file, in_canonical, file_amount, canonical_amount in conn.execute(
        PARTS_SQL.format(metric_filter=metric_filter)
    ).fetchall():
        diff, percent, classification = compute_delta(file_amount, canonical_amount)
        if percent is None and diff != 0 and in_canonical:
            label = entities.by_key[eid].entity_id
            zero_ids.append(f"{label}/{cid}" + (f".{metric}" if metric else ""))
        parts.setdefault(eid, []).append(
            ComponentComparison(
                component_id=cid,
                component_name=inputs.component_names.get(cid, cid),
                presence=_presence(in_file, in_canonical),
                file_amount=file_amount,
                canonical_amount=canonical_amount,
                diff=diff,
                percent_diff=percent,
                classification=classification,
                metric=metric,
            )
        )

    employees = [
        replace(e, components=parts.get(key, []))
        for key, e in entities.matched.items()
    ]
    compared = [c for e in employees for c in e.components]
    rollups = _rollups(employees)
    issues = list(inputs.issues) + [i for i in entities.issues if i.code == "duplicate_ids"]
    zero_issue = _zero_denominator_issue(layer, zero_ids)
    if zero_issue:
        issues.append(zero_issue)
    if not employees:
        issues.append(_no_overlap_issue(layer))
    totals: tuple[float, float] | None = None
    if not metric_layer:
        totals = (
            round(math.fsum(r.file_total for r in rollups), DIFF_DECIMALS),
            round(math.fsum(r.canonical_total for r in rollups), DIFF_DECIMALS),
        )
    summary = _summary(conn, entities, [c.classification for c in compared], totals)
    return LayerResult(
        layer=layer,
        available=True,
        reason=f"{len(compared)} {what} comparison(s) across {len(employees)} matched entities",
        summary=summary,
        employees=employees,
        components=rollups,
        issues=issues,
    )


def _component_layer(conn: duckdb.DuckDBPyConnection, inputs: PreparedInputs) -> LayerResult:
    return _parts_layer(conn, inputs, "component")


def _metric_layer(conn: duckdb.DuckDBPyConnection, inputs: PreparedInputs) -> LayerResult:
    return _parts_layer(conn, inputs, "metric")


def _grouping_layer(conn: duckdb.DuckDBPyConnection, inputs: PreparedInputs) -> LayerResult:
    if not inputs.has_groups:
        raise LayerUnavailableError("grouping", "no grouping column mapped")
    if inputs.file["group_key"].is_null().all() or inputs.canonical["group_key"].is_null().all():
        raise LayerUnavailableError("grouping", "group key missing from one of the datasets")

    groups: list[GroupComparison] = []
    zero_ids: list[str] = []
    for group_key, file_amount, canonical_amount, n, file_n, canonical_n in conn.execute(
        GROUPS_SQL
    ).fetchall():
        diff, percent, classification = compute_delta(file_amount, canonical_amount)
        if percent is None and diff != 0:
            zero_ids.append(group_key)
        groups.append(
            GroupComparison(
                group_key=group_key,
                file_total=file_amount,
                canonical_total=canonical_amount,
                diff=diff,
                percent_diff=percent,
                classification=classification,
                entity_count=n,
                file_entity_count=file_n,
                canonical_entity_count=canonical_n,
            )
        )
    groups.sort(key=lambda g: (-abs(g.diff), g.group_key))

    issues = list(inputs.issues)
    zero_issue = _zero_denominator_issue("grouping", zero_ids)
    if zero_issue:
        issues.append(zero_issue)
    summary = _summary(conn, None, [g.classification for g in groups])
    return LayerResult(
        layer="grouping",
        available=True,
        reason=f"{len(groups)} group(s) compared",
        summary=summary,
        groups=groups,
        issues=issues,
    )


_LAYER_FUNCS: dict[str, Callable[[duckdb.DuckDBPyConnection, PreparedInputs], LayerResult]] = {
    "aggregate": _aggregate_layer,
    "employee": _employee_layer,
    "component": _component_layer,
    "metric": _metric_layer,
    "grouping": _grouping_layer,
}


def compare_at_layer(
    layer: Layer,
    mapping: MappingResult,
    parsed_file: ParsedFile,
    canonical_results: Sequence[CanonicalResult],
    period_filter: str | None = None,
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
) -> LayerResult:
    """Compute one comparison layer.

    Never raises for data problems: a layer that cannot be computed comes
    back as ``LayerResult(available=False)`` with the reason. Pass ``conn``
    to reuse a DuckDB connection across layers; otherwise an in-memory one
    is opened and closed here.
    """
    if layer not in LAYERS:
        raise ValueError(f"Unknown layer: {layer!r}")
    own_conn = conn is None
    if conn is None:
        conn = duckdb.connect(":memory:")
    try:
        inputs = prepare_inputs(layer, mapping, parsed_file, canonical_results, period_filter)
        with registered(conn, inputs):
            result = _LAYER_FUNCS[layer](conn, inputs)
        log.info(
            "Layer %s: %s (worst %s)",
            layer,
            result.reason,
            result.worst_classification or "n/a",
        )
        return result
    except LayerUnavailableError as e:
        log.warning("Layer %s unavailable: %s", layer, e.reason)
        return LayerResult.unavailable(layer, e.reason)
    except duckdb.Error as e:
        log.warning("Layer %s failed: %s", layer, e)
        return LayerResult.unavailable(layer, f"comparison query failed: {e}")
    finally:
        if own_conn:
            conn.close()


def worst_first(employees: Sequence[EmployeeComparison]) -> list[EmployeeComparison]:
    """Employees ordered by severity, then by absolute diff, both descending."""
    return sorted(employees, key=lambda e: (-severity(e.classification), -abs(e.diff), e.entity_id))
