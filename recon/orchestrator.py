"""Cross-Layer Orchestrator: map, plan, compare per layer, detect false agreement.

``reconcile`` is the full async pipeline (the column classifier is the only
await). ``run_layers`` is the synchronous half, for hosts that already hold
a reviewed ``MappingResult``.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Sequence

import duckdb

from recon.classifier import ColumnClassifier
from recon.compare import compare_at_layer
from recon.depth import NO_OVERLAP, assess_depth
from recon.errors import FileFormatError, IncompleteMappingError
from recon.mapper import DEFAULT_CLASSIFIER_TIMEOUT, map_columns
from recon.model import (
    PASSING,
    CanonicalResult,
    DepthAssessment,
    FalseAgreementFlag,
    Finding,
    Issue,
    KnownComponent,
    Layer,
    LayerResult,
    MappingResult,
    ParsedFile,
    ReconciliationReport,
    Status,
    known_components_from,
    layer_index,
    severity,
)
from recon.signals import SignalSink

log = logging.getLogger(__name__)

MAPPER_SAMPLE_ROWS = 50
WARNING_CLASSIFICATIONS = frozenset({"amber", "red"})

FINDING_ORDER = ("critical", "warning", "info", "exact")
MAX_FINDINGS = 10
SYSTEMATIC_MIN_ENTITIES = 3
MIN_FINDING_DELTA = 0.01
HIGH_MATCH_RATE = 0.99


def validate_parsed_file(parsed_file: ParsedFile) -> None:
    if not parsed_file.headers:
        raise FileFormatError("File has no columns")
    if not parsed_file.rows:
        raise FileFormatError("File has no data rows")


# ---------------------------------------------------------------------------
# False agreement
# ---------------------------------------------------------------------------


def detect_false_agreements(layers: Sequence[LayerResult]) -> list[FalseAgreementFlag]:
    """Flag entities that pass on their total but fail on a component.

    ``masked_impact`` sums the absolute diffs of every component that
    classifies worse than the entity itself.
    """
    component_layer = next(
        (r for r in layers if r.layer == "component" and r.available), None
    )
    if component_layer is None:
        return []
    observed = "employee" if any(r.layer == "employee" and r.available for r in layers) else "aggregate"

    flags: list[FalseAgreementFlag] = []
    for e in component_layer.employees:
        if e.classification not in PASSING:
            continue
        offending = [c for c in e.components if c.classification in WARNING_CLASSIFICATIONS]
        if not offending:
            continue
        masked = sum(
            abs(c.diff)
            for c in e.components
            if severity(c.classification) > severity(e.classification)
        )
        flags.append(
            FalseAgreementFlag(
                entity_id=e.entity_id,
                entity_name=e.entity_name,
                observed_layer=observed,
                disagreement_layer="component",
                masked_impact=round(masked, 6),
                entity_classification=e.classification,
                component_ids=[c.component_id for c in offending],
            )
        )
    flags.sort(key=lambda f: (-f.masked_impact, f.entity_id))
    return flags


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


def _systematic_deltas(component_layer: LayerResult) -> list[Finding]:
    """Components where several entities carry the identical delta."""
    shared: dict[tuple[str, float], list[str]] = {}
    names: dict[str, str] = {}
    for e in component_layer.employees:
        for c in e.components:
            if abs(c.diff) < MIN_FINDING_DELTA:
                continue
            names[c.component_id] = c.component_name
            shared.setdefault((c.component_id, round(c.diff, 2)), []).append(e.entity_id)

    findings: list[Finding] = []
    for (cid, diff), entity_ids in shared.items():
        if len(entity_ids) < SYSTEMATIC_MIN_ENTITIES:
            continue
        findings.append(
            Finding(
                severity="critical",
                pattern="systematic_delta",
                title=f"Systematic delta in {names[cid]}",
                detail=(
                    f"{len(entity_ids)} entities share a delta of {diff:+,.2f}; "
                    "a plan configuration value is the likely cause"
                ),
                impact=round(abs(diff) * len(entity_ids), 2),
                entity_count=len(entity_ids),
                layer="component",
                component_id=cid,
            )
        )
    return findings


def _component_findings(component_layer: LayerResult) -> list[Finding]:
    findings = _systematic_deltas(component_layer)
    rollups = component_layer.components
    off = [r for r in rollups if r.classification != "exact"]
    if len(off) == 1 and len(rollups) > 1:
        r = off[0]
        findings.append(
            Finding(
                severity="warning",
                pattern="concentrated_delta",
                title=f"All component deltas are in {r.component_name}",
                detail=f"{len(rollups) - 1} other component(s) match exactly",
                impact=abs(r.diff),
                entity_count=r.entity_count - r.exact_count,
                layer="component",
                component_id=r.component_id,
            )
        )
    exact = [r for r in rollups if r.classification == "exact"]
    if exact:
        findings.append(
            Finding(
                severity="exact",
                pattern="zero_delta_components",
                title=f"{len(exact)} component(s) at zero delta",
                detail=", ".join(r.component_name for r in exact),
                impact=0.0,
                entity_count=max(r.entity_count for r in exact),
                layer="component",
            )
        )
    return findings


def _entity_findings(result: LayerResult) -> list[Finding]:
    s = result.summary
    if s is None or s.matched is None:
        return []
    findings: list[Finding] = []
    unmatched = (s.file_only or 0) + (s.vl_only or 0)
    if unmatched:
        findings.append(
            Finding(
                severity="warning",
                pattern="population_mismatch",
                title=f"{unmatched} entity id(s) on one side only",
                detail=f"{s.file_only} file-only, {s.vl_only} canonical-only; check id formats",
                impact=0.0,
                entity_count=unmatched,
                layer=result.layer,
            )
        )
    if result.layer != "employee" or not s.matched:
        return findings

    passing = s.exact + s.within_tolerance
    failing = [
        e for e in result.employees if e.membership == "matched" and e.classification not in PASSING
    ]
    if failing:
        findings.append(
            Finding(
                severity="critical" if s.red else "warning",
                pattern="entity_deltas",
                title=f"{len(failing)} matched entity(ies) outside tolerance",
                detail=f"{s.amber} amber, {s.red} red of {s.matched} matched",
                impact=round(math.fsum(abs(e.diff) for e in failing), 2),
                entity_count=len(failing),
                layer="employee",
            )
        )
    rate = passing / s.matched
    if rate >= HIGH_MATCH_RATE:
        findings.append(
            Finding(
                severity="exact",
                pattern="high_match_rate",
                title=f"{rate:.1%} of matched entities agree",
                detail=f"{s.exact} exact and {s.within_tolerance} within tolerance of {s.matched}",
                impact=abs(s.diff),
                entity_count=s.matched,
                layer="employee",
            )
        )
    return findings


def rank_findings(
    layers: Sequence[LayerResult], flags: Sequence[FalseAgreementFlag]
) -> list[Finding]:
    """Short list of conclusions, most severe first, then by impact."""
    by_layer = {r.layer: r for r in layers if r.available}
    findings: list[Finding] = []
    if flags:
        findings.append(
            Finding(
                severity="critical",
                pattern="false_agreement",
                title=f"{len(flags)} false agreement(s)",
                detail="Entity totals agree while their components disagree",
                impact=round(math.fsum(f.masked_impact for f in flags), 2),
                entity_count=len(flags),
                layer="component",
            )
        )
    if "component" in by_layer:
        findings.extend(_component_findings(by_layer["component"]))
    entity_layer = by_layer.get("employee") or by_layer.get("aggregate")
    if entity_layer is not None:
        findings.extend(_entity_findings(entity_layer))

    findings.sort(
        key=lambda f: (FINDING_ORDER.index(f.severity), -f.impact, f.pattern, f.component_id or "")
    )
    return findings[:MAX_FINDINGS]


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def _dedupe(issues: Sequence[Issue]) -> list[Issue]:
    seen: set[tuple[str, str, str | None]] = set()
    out: list[Issue] = []
    for i in issues:
        key = (i.code, i.message, i.entity_id)
        if key in seen:
            continue
        seen.add(key)
        out.append(i)
    return out


def overall_status(
    layers: Sequence[LayerResult],
    flags: Sequence[FalseAgreementFlag],
    issues: Sequence[Issue],
) -> Status:
    if flags or issues:
        return "degraded"
    for r in layers:
        if not r.available:
            return "degraded"
        classification = r.worst_classification
        if classification is not None and classification not in PASSING:
            return "degraded"
    return "ok"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def planned_layers(depth: DepthAssessment) -> list[Layer]:
    """Layers to run: every available one, plus L1 when it only lacks overlapping ids.

    A no-overlap employee layer still lists the file-only and canonical-only
    entities, which is what an id-format mismatch needs to be diagnosed.
    """
    layers = depth.available_layers()
    employee = depth.assessment("employee")
    if employee is not None and not employee.available and employee.reason == NO_OVERLAP:
        layers.append("employee")
        layers.sort(key=layer_index)
    return layers


def _multiple_periods_issue(depth: DepthAssessment) -> Issue | None:
    periods = depth.periods
    if not periods.spans_several_periods:
        return None
    if len(periods.periods) > 1:
        where = f"the file spans {len(periods.periods)} periods"
    else:
        where = f"the canonical results span {len(periods.canonical_periods)} periods"
    return Issue(
        "multiple_periods",
        f"No period filter given and {where}; amounts were summed across periods",
    )


def run_layers(
    mapping: MappingResult,
    parsed_file: ParsedFile,
    canonical_results: Sequence[CanonicalResult],
    period_filter: str | None = None,
    *,
    cancel: threading.Event | None = None,
) -> ReconciliationReport:
    """Assess depth and run every planned layer in ascending order.

    ``cancel`` is checked before each layer; a cancelled run keeps the
    layers already completed and is reported as degraded.
    """
    validate_parsed_file(parsed_file)
    results = list(canonical_results)
    depth = assess_depth(mapping, parsed_file, results)

    layers: list[LayerResult] = []
    issues: list[Issue] = list(mapping.issues)
    if period_filter is None:
        period_issue = _multiple_periods_issue(depth)
        if period_issue is not None:
            issues.append(period_issue)
    conn = duckdb.connect(":memory:")
    try:
        for layer in planned_layers(depth):
            if cancel is not None and cancel.is_set():
                log.warning("Run cancelled before layer %s", layer)
                issues.append(
                    Issue("cancelled", f"Run cancelled before layer {layer}", layer=layer)
                )
                break
            layers.append(
                compare_at_layer(layer, mapping, parsed_file, results, period_filter, conn=conn)
            )
    finally:
        conn.close()

    for r in layers:
        issues.extend(r.issues)
    issues = _dedupe(issues)
    flags = detect_false_agreements(layers)
    status = overall_status(layers, flags, issues)
    findings = rank_findings(layers, flags)
    log.info(
        "Reconciliation %s: %d layer(s), %d false agreement(s), %d issue(s)",
        status,
        len(layers),
        len(flags),
        len(issues),
    )
    return ReconciliationReport(
        layers=layers,
        false_agreements=flags,
        status=status,
        issues=issues,
        mapping=mapping,
        depth=depth,
        period_filter=period_filter,
        findings=findings,
    )


async def reconcile(
    parsed_file: ParsedFile,
    canonical_results: Sequence[CanonicalResult],
    classifier: ColumnClassifier | None = None,
    period_filter: str | None = None,
    *,
    signals: SignalSink | None = None,
    known_components: Sequence[KnownComponent] | None = None,
    cancel: threading.Event | None = None,
    classifier_timeout: float = DEFAULT_CLASSIFIER_TIMEOUT,
) -> ReconciliationReport:
    """Map columns, then run every layer the data supports.

    Raises FileFormatError or IncompleteMappingError; every other problem
    ends up on the report.
    """
    validate_parsed_file(parsed_file)
    results = list(canonical_results)
    if known_components is None:
        known_components = known_components_from(results)

    mapping = await map_columns(
        parsed_file.headers,
        parsed_file.sample(MAPPER_SAMPLE_ROWS),
        known_components,
        classifier,
        signals=signals,
        timeout=classifier_timeout,
        known_entity_ids=[r.entity_id for r in results],
        source_name=parsed_file.source_name,
    )
    return run_layers(mapping, parsed_file, results, period_filter, cancel=cancel)


_FAILURE_CODES = {
    FileFormatError: "file_format",
    IncompleteMappingError: "incomplete_mapping",
}


def failed_report(
    exc: Exception,
    *,
    mapping: MappingResult | None = None,
    period_filter: str | None = None,
) -> ReconciliationReport:
    """Serializable record of a run that could not proceed."""
    code = next(
        (c for exc_type, c in _FAILURE_CODES.items() if isinstance(exc, exc_type)), "error"
    )
    return ReconciliationReport(
        layers=(),
        false_agreements=(),
        status="failed",
        issues=(Issue(code, str(exc)),),
        mapping=mapping,
        period_filter=period_filter,
    )
