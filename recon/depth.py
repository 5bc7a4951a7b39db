"""Depth Assessor: decide which comparison layers the two datasets support."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Literal, Sequence

from recon.model import (
    ENTITY_ID,
    GROUP,
    LAYERS,
    TOTAL_AMOUNT,
    CanonicalResult,
    DataQuality,
    DepthAssessment,
    LayerAssessment,
    MappingResult,
    ParsedFile,
    PeriodCount,
    PeriodDiscovery,
)
from recon.normalize import Period, id_text, normalize_id, parse_amount, resolve_period

log = logging.getLogger(__name__)

NO_METRIC_COLUMNS = "no metric-level columns found"
NO_OVERLAP = "no overlapping entity ids after normalization"
MAX_LISTED_PERIODS = 6
UNMATCHED_SHARE_WARNING = 0.2


def _file_total(mapping: MappingResult, parsed_file: ParsedFile) -> float:
    columns: list[str]
    total_col = mapping.column_for(TOTAL_AMOUNT)
    if total_col is not None:
        columns = [total_col]
    else:
        columns = [col for col, _ in mapping.component_columns()]
    total = 0.0
    for row in parsed_file.rows:
        for col in columns:
            try:
                total += parse_amount(row.get(col)) or 0.0
            except ValueError:
                continue
    return total


def _id_overlap(
    id_col: str, parsed_file: ParsedFile, canonical_results: Sequence[CanonicalResult]
) -> tuple[set[str], set[str]]:
    raw_file = [v for v in parsed_file.column_values(id_col) if id_text(v)]
    raw_canonical = [r.entity_id for r in canonical_results if id_text(r.entity_id)]
    return {normalize_id(v) for v in raw_file}, {normalize_id(v) for v in raw_canonical}


def _false_agreement_risk(
    mapping: MappingResult,
    parsed_file: ParsedFile,
    canonical_results: Sequence[CanonicalResult],
    matchable: int,
) -> Literal["low", "medium", "high"]:
    canonical_has_components = any(len(r.components) > 1 for r in canonical_results)
    file_has_components = bool(mapping.component_columns())
    if canonical_has_components and file_has_components:
        return "low" if matchable > 0 else "medium"

    canonical_total = sum(r.total_amount for r in canonical_results)
    file_total = _file_total(mapping, parsed_file)
    if canonical_total > 0 and file_total > 0:
        gap = abs(canonical_total - file_total) / max(canonical_total, file_total)
        # Close totals with no breakdown to check against.
        if gap < 0.05:
            return "high"
    return "medium"


def discover_periods(
    mapping: MappingResult,
    parsed_file: ParsedFile,
    canonical_results: Sequence[CanonicalResult],
) -> PeriodDiscovery:
    """Distinct file periods with row counts, matched against canonical periods.

    A file period matches a canonical period when either falls inside the
    other, so a month-only file value matches that month in any year and a
    file quarter matches the canonical months inside it.
    """
    canonical: dict[str, Period] = {}
    for r in canonical_results:
        period = resolve_period([r.period_key])
        if period is not None:
            canonical.setdefault(period.key, period)
    canonical_ordered = sorted(canonical.values(), key=lambda p: p.sort_key)

    columns = mapping.period_columns()
    if not columns:
        return PeriodDiscovery(canonical_periods=[p.key for p in canonical_ordered])

    found: dict[str, Period] = {}
    counts: Counter[str] = Counter()
    unresolved = 0
    for row in parsed_file.rows:
        period = resolve_period(row.get(c) for c in columns)
        if period is None:
            unresolved += 1
            continue
        found.setdefault(period.key, period)
        counts[period.key] += 1
    ordered = sorted(found.values(), key=lambda p: p.sort_key)

    matched: list[str] = []
    file_only: list[str] = []
    covered: set[str] = set()
    for p in ordered:
        partners = [c.key for c in canonical_ordered if p.within(c) or c.within(p)]
        if partners:
            matched.append(p.key)
            covered.update(partners)
        else:
            file_only.append(p.key)

    return PeriodDiscovery(
        period_columns=columns,
        periods=[PeriodCount(p.key, p.label, counts[p.key]) for p in ordered],
        unresolved_rows=unresolved,
        canonical_periods=[p.key for p in canonical_ordered],
        matched=matched,
        file_only=file_only,
        canonical_only=[p.key for p in canonical_ordered if p.key not in covered],
    )


def _listed(keys: Sequence[str]) -> str:
    listed = ", ".join(keys[:MAX_LISTED_PERIODS])
    if len(keys) > MAX_LISTED_PERIODS:
        listed += f" and {len(keys) - MAX_LISTED_PERIODS} more"
    return listed


def _period_recommendations(periods: PeriodDiscovery) -> list[str]:
    recs: list[str] = []
    if len(periods.periods) > 1:
        recs.append(
            f"File spans {len(periods.periods)} periods ({_listed([p.label for p in periods.periods])}). "
            "Pass a period filter so amounts are not summed across periods."
        )
    elif len(periods.canonical_periods) > 1:
        recs.append(
            f"Canonical results span {len(periods.canonical_periods)} periods "
            f"({_listed(list(periods.canonical_periods))}). Pass a period filter."
        )
    if periods.periods and not periods.matched and periods.canonical_periods:
        recs.append(
            "None of the file's periods match a canonical period. "
            "Check the period columns and the canonical period keys."
        )
    if periods.unresolved_rows:
        recs.append(f"{periods.unresolved_rows} file row(s) have no period value.")
    return recs


def _recommendations(
    layers: Sequence[LayerAssessment],
    quality: DataQuality,
    risk: str,
    periods: PeriodDiscovery,
) -> list[str]:
    recs: list[str] = _period_recommendations(periods)
    by_layer = {a.layer: a for a in layers}

    if quality.unmatched_file_ids > quality.matchable_ids * UNMATCHED_SHARE_WARNING:
        recs.append(
            f"{quality.unmatched_file_ids} file ids have no canonical result. "
            "Check id format consistency."
        )
    if quality.unmatched_canonical_ids > quality.matchable_ids * UNMATCHED_SHARE_WARNING:
        recs.append(
            f"{quality.unmatched_canonical_ids} canonical entities have no file record. "
            "Make sure the file covers the whole population."
        )

    if risk == "high":
        recs.append(
            "Totals are close but no component-level comparison is possible. "
            "Map component columns to check the breakdown."
        )
    elif risk == "medium":
        recs.append(
            "Component-level data is limited; totals may be hiding offsetting errors."
        )

    if not by_layer["component"].available:
        recs.append("Map file columns to plan components for a deeper comparison.")
    if by_layer["grouping"].available:
        recs.append("Review per-group totals for location-specific discrepancies.")

    if not recs:
        recs.append("Full-depth comparison available across all layers.")
    return recs


def assess_depth(
    mapping: MappingResult,
    parsed_file: ParsedFile,
    canonical_results: Sequence[CanonicalResult],
) -> DepthAssessment:
    """Mark each layer available or not, with the reason, in ascending order."""
    canonical_results = list(canonical_results)
    total_col = mapping.column_for(TOTAL_AMOUNT)
    id_col = mapping.column_for(ENTITY_ID)
    group_col = mapping.column_for(GROUP)
    component_cols = mapping.component_columns()
    canonical_components = {
        c.component_id for r in canonical_results for c in r.components
    }
    canonical_metrics = {
        (c.component_id, m)
        for r in canonical_results
        for c in r.components
        for m in c.metrics
    }

    file_ids: set[str] = set()
    canonical_ids: set[str] = set()
    matched_ids: set[str] = set()
    if id_col is not None:
        file_ids, canonical_ids = _id_overlap(id_col, parsed_file, canonical_results)
        matched_ids = file_ids & canonical_ids

    assessments: dict[str, LayerAssessment] = {}

    # L0
    if total_col is not None:
        assessments["aggregate"] = LayerAssessment(
            "aggregate", True, f"total amount mapped to {total_col!r}"
        )
    elif component_cols:
        assessments["aggregate"] = LayerAssessment(
            "aggregate", True, "file total derived from mapped component columns"
        )
    else:
        assessments["aggregate"] = LayerAssessment(
            "aggregate", False, "no total amount or component columns mapped"
        )

    # L1
    if id_col is None:
        reason = "no entity id column mapped"
    elif not assessments["aggregate"].available:
        reason = "no amount columns to compare"
    elif not matched_ids:
        reason = NO_OVERLAP
    else:
        reason = ""
    assessments["employee"] = LayerAssessment(
        "employee",
        not reason,
        reason or f"{len(matched_ids)} of {len(file_ids)} file ids match canonical results",
    )

    # L2
    usable = sorted({cid for _, cid in component_cols if cid in canonical_components})
    if not component_cols:
        reason = "no component columns mapped"
    elif not usable:
        reason = "mapped components do not exist in canonical results"
    elif not assessments["employee"].available:
        reason = "component comparison needs employee-level matching"
    else:
        reason = ""
    assessments["component"] = LayerAssessment(
        "component",
        not reason,
        reason or f"{len(usable)} component(s) comparable: {', '.join(usable)}",
    )

    # L3
    metric_cols = [
        (col, cid, metric)
        for col, cid, metric in mapping.metric_columns()
        if cid in canonical_components
    ]
    comparable_metrics = [t for t in metric_cols if (t[1], t[2]) in canonical_metrics]
    if not assessments["component"].available:
        reason = "metric comparison needs component-level comparison"
    elif not metric_cols:
        reason = NO_METRIC_COLUMNS
    elif not comparable_metrics:
        reason = "canonical results carry no values for the mapped metric columns"
    else:
        reason = ""
    assessments["metric"] = LayerAssessment(
        "metric",
        not reason,
        reason or f"{len(comparable_metrics)} metric column(s) comparable",
    )

    # L4
    if group_col is None:
        reason = "no grouping column mapped"
    elif not any(r.group_key for r in canonical_results):
        reason = "canonical results carry no group key"
    elif not assessments["aggregate"].available:
        reason = "no amount columns to compare"
    else:
        reason = ""
    assessments["grouping"] = LayerAssessment(
        "grouping", not reason, reason or f"grouping by {group_col!r}"
    )

    layers = [assessments[layer] for layer in LAYERS]
    quality = DataQuality(
        file_record_count=len(parsed_file.rows),
        canonical_record_count=len(canonical_results),
        matchable_ids=len(matched_ids),
        unmatched_file_ids=len(file_ids - canonical_ids),
        unmatched_canonical_ids=len(canonical_ids - file_ids),
    )
    risk = _false_agreement_risk(mapping, parsed_file, canonical_results, len(matched_ids))
    periods = discover_periods(mapping, parsed_file, canonical_results)
    depth = DepthAssessment(
        layers=layers,
        data_quality=quality,
        false_agreement_risk=risk,
        recommendations=_recommendations(layers, quality, risk, periods),
        periods=periods,
    )
    log.info(
        "Depth: %s available (risk %s)",
        ", ".join(depth.available_layers()) or "no layers",
        risk,
    )
    return depth


def describe(depth: DepthAssessment) -> list[dict[str, Any]]:
    """Flat rows for printing a layer plan."""
    return [
        {"layer": a.layer, "available": a.available, "reason": a.reason}
        for a in depth.layers
    ]
