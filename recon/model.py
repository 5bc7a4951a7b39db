"""Data model shared by the mapper, depth assessor, comparison engine and orchestrator.

Every type here is a frozen dataclass created fresh for one reconciliation
run. Sequences are stored as tuples; constructors accept lists and coerce
them so callers can build inputs from plain JSON.

Semantic roles are plain strings:

    entity_id, entity_name, total_amount, period, year, group, unmapped
    component:<component_id>
    metric:<component_id>.<metric_name>
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal

Scalar = Any  # str | int | float | bool | datetime | None

MappingOrigin = Literal["ai", "deterministic", "manual_override"]
Classification = Literal["exact", "within_tolerance", "amber", "red"]
Layer = Literal["aggregate", "employee", "component", "metric", "grouping"]
Membership = Literal["matched", "file_only", "vl_only"]
Presence = Literal["both", "file_only", "vl_only"]
Status = Literal["ok", "degraded", "failed"]
FindingSeverity = Literal["critical", "warning", "info", "exact"]

# Ascending order: cheapest sanity check first.
LAYERS: tuple[Layer, ...] = ("aggregate", "employee", "component", "metric", "grouping")
CLASSIFICATIONS: tuple[Classification, ...] = (
    "exact",
    "within_tolerance",
    "amber",
    "red",
)
PASSING: frozenset[str] = frozenset({"exact", "within_tolerance"})

ENTITY_ID = "entity_id"
ENTITY_NAME = "entity_name"
TOTAL_AMOUNT = "total_amount"
PERIOD = "period"
YEAR = "year"
GROUP = "group"
UNMAPPED = "unmapped"
COMPONENT_PREFIX = "component:"
METRIC_PREFIX = "metric:"

# Roles a file may map to at most one column.
SINGLE_VALUED_ROLES: tuple[str, ...] = (ENTITY_ID, ENTITY_NAME, TOTAL_AMOUNT, PERIOD, YEAR, GROUP)


def layer_index(layer: str) -> int:
    """Return the L-number of a layer (aggregate = 0)."""
    return LAYERS.index(layer)  # type: ignore[arg-type]


def severity(classification: str) -> int:
    """Rank a classification: exact < within_tolerance < amber < red."""
    return CLASSIFICATIONS.index(classification)  # type: ignore[arg-type]


def worst(classifications: Iterable[str]) -> Classification | None:
    """Return the most severe classification, or None for an empty input."""
    ranked = [severity(c) for c in classifications]
    if not ranked:
        return None
    return CLASSIFICATIONS[max(ranked)]


def component_role(component_id: str) -> str:
    return f"{COMPONENT_PREFIX}{component_id}"


def metric_role(component_id: str, metric: str) -> str:
    return f"{METRIC_PREFIX}{component_id}.{metric}"


def parse_role(role: str) -> tuple[str, str | None, str | None]:
    """Split a role into ``(kind, component_id, metric)``.

    ``component:optical`` -> ``("component", "optical", None)``
    ``metric:optical.attainment`` -> ``("metric", "optical", "attainment")``
    ``entity_id`` -> ``("entity_id", None, None)``
    """
    if role.startswith(COMPONENT_PREFIX):
        return "component", role[len(COMPONENT_PREFIX):], None
    if role.startswith(METRIC_PREFIX):
        component_id, _, metric = role[len(METRIC_PREFIX):].rpartition(".")
        return "metric", component_id, metric
    return role, None, None


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedFile:
    """A ground-truth file as produced by the file parser.

    ``headers`` keeps the file's column order; each row maps header -> raw
    scalar (string, number, or None).
    """

    headers: tuple[str, ...]
    rows: tuple[dict[str, Scalar], ...]
    source_name: str | None = None
    sheet: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "headers", tuple(self.headers))
        object.__setattr__(self, "rows", tuple(self.rows))

    def sample(self, n: int = 5) -> list[dict[str, Scalar]]:
        return list(self.rows[:n])

    def column_values(self, column: str, limit: int | None = None) -> list[Scalar]:
        rows = self.rows if limit is None else self.rows[:limit]
        return [r.get(column) for r in rows]


@dataclass(frozen=True)
class CanonicalComponent:
    component_id: str
    component_name: str
    amount: float
    metrics: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class CanonicalResult:
    """One computed payout record, read-only ground truth from the calculation engine."""

    entity_id: str
    entity_name: str
    period_key: str
    total_amount: float
    components: tuple[CanonicalComponent, ...] = ()
    group_key: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "components", tuple(self.components))

    def component(self, component_id: str) -> CanonicalComponent | None:
        for c in self.components:
            if c.component_id == component_id:
                return c
        return None


@dataclass(frozen=True)
class KnownComponent:
    """A plan component the mapper may match columns against."""

    component_id: str
    component_name: str


def known_components_from(results: Iterable[CanonicalResult]) -> list[KnownComponent]:
    """Collect distinct components from canonical results, first-seen order."""
    seen: dict[str, KnownComponent] = {}
    for r in results:
        for c in r.components:
            if c.component_id not in seen:
                seen[c.component_id] = KnownComponent(c.component_id, c.component_name)
    return list(seen.values())


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Issue:
    """A non-fatal condition surfaced on the report.

    ``code`` is one of: classifier_unavailable, no_overlap, zero_denominator,
    layer_unavailable, duplicate_ids, blank_ids, unparseable_amount,
    derived_total, period_mismatch, multiple_periods, cancelled. Failed
    runs carry file_format, incomplete_mapping or error.
    """

    code: str
    message: str
    layer: str | None = None
    entity_id: str | None = None


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnMapping:
    source_column: str
    semantic_role: str
    confidence: float
    origin: MappingOrigin
    rationale: str = ""

    @property
    def is_mapped(self) -> bool:
        return self.semantic_role != UNMAPPED


@dataclass(frozen=True)
class MappingResult:
    """Column mappings for one file, in header order."""

    mappings: tuple[ColumnMapping, ...]
    classifier_used: bool = False
    issues: tuple[Issue, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "mappings", tuple(self.mappings))
        object.__setattr__(self, "issues", tuple(self.issues))

    def mapping_for(self, column: str) -> ColumnMapping | None:
        for m in self.mappings:
            if m.source_column == column:
                return m
        return None

    def column_for(self, role: str) -> str | None:
        """Return the source column mapped to a single-valued role."""
        for m in self.mappings:
            if m.semantic_role == role:
                return m.source_column
        return None

    def period_columns(self) -> list[str]:
        """Columns that together identify a row's period: ``period`` first, then ``year``."""
        return [c for c in (self.column_for(PERIOD), self.column_for(YEAR)) if c is not None]

    def component_columns(self) -> list[tuple[str, str]]:
        """Return ``(source_column, component_id)`` pairs in header order."""
        out: list[tuple[str, str]] = []
        for m in self.mappings:
            kind, component_id, _ = parse_role(m.semantic_role)
            if kind == "component" and component_id:
                out.append((m.source_column, component_id))
        return out

    def metric_columns(self) -> list[tuple[str, str, str]]:
        """Return ``(source_column, component_id, metric)`` triples in header order."""
        out: list[tuple[str, str, str]] = []
        for m in self.mappings:
            kind, component_id, metric = parse_role(m.semantic_role)
            if kind == "metric" and component_id and metric:
                out.append((m.source_column, component_id, metric))
        return out


# ---------------------------------------------------------------------------
# Depth assessment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LayerAssessment:
    layer: Layer
    available: bool
    reason: str


@dataclass(frozen=True)
class DataQuality:
    file_record_count: int
    canonical_record_count: int
    matchable_ids: int
    unmatched_file_ids: int
    unmatched_canonical_ids: int


@dataclass(frozen=True)
class PeriodCount:
    key: str
    label: str
    rows: int


@dataclass(frozen=True)
class PeriodDiscovery:
    """Distinct file periods and how they line up with the canonical periods.

    ``periods`` is chronological. ``matched`` and ``file_only`` hold file
    period keys; ``canonical_only`` holds canonical keys no file period
    covers. All three stay empty when no period column is mapped.
    """

    period_columns: tuple[str, ...] = ()
    periods: tuple[PeriodCount, ...] = ()
    unresolved_rows: int = 0
    canonical_periods: tuple[str, ...] = ()
    matched: tuple[str, ...] = ()
    file_only: tuple[str, ...] = ()
    canonical_only: tuple[str, ...] = ()

    def __post_init__(self):
        for name in (
            "period_columns",
            "periods",
            "canonical_periods",
            "matched",
            "file_only",
            "canonical_only",
        ):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @property
    def has_period_data(self) -> bool:
        return bool(self.period_columns)

    @property
    def rows_per_period(self) -> dict[str, int]:
        return {p.key: p.rows for p in self.periods}

    @property
    def spans_several_periods(self) -> bool:
        return len(self.periods) > 1 or len(self.canonical_periods) > 1


@dataclass(frozen=True)
class DepthAssessment:
    layers: tuple[LayerAssessment, ...]
    data_quality: DataQuality
    false_agreement_risk: Literal["low", "medium", "high"]
    recommendations: tuple[str, ...] = ()
    periods: PeriodDiscovery = field(default_factory=PeriodDiscovery)

    def __post_init__(self):
        object.__setattr__(self, "layers", tuple(self.layers))
        object.__setattr__(self, "recommendations", tuple(self.recommendations))

    def available_layers(self) -> list[Layer]:
        """Available layers in ascending order."""
        ordered = sorted(self.layers, key=lambda a: layer_index(a.layer))
        return [a.layer for a in ordered if a.available]

    @property
    def max_layer(self) -> Layer | None:
        available = self.available_layers()
        return available[-1] if available else None

    def assessment(self, layer: str) -> LayerAssessment | None:
        for a in self.layers:
            if a.layer == layer:
                return a
        return None


# ---------------------------------------------------------------------------
# Comparison results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComponentComparison:
    component_id: str
    component_name: str
    presence: Presence
    file_amount: float
    canonical_amount: float
    diff: float
    percent_diff: float | None
    classification: Classification
    metric: str | None = None


@dataclass(frozen=True)
class EmployeeComparison:
    entity_id: str
    entity_name: str
    membership: Membership
    file_total: float
    canonical_total: float
    diff: float
    percent_diff: float | None
    classification: Classification
    components: tuple[ComponentComparison, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "components", tuple(self.components))


@dataclass(frozen=True)
class GroupComparison:
    group_key: str
    file_total: float
    canonical_total: float
    diff: float
    percent_diff: float | None
    classification: Classification
    entity_count: int
    file_entity_count: int
    canonical_entity_count: int


@dataclass(frozen=True)
class ComponentRollup:
    """One component (or component metric) summed over the matched entities."""

    component_id: str
    component_name: str
    file_total: float
    canonical_total: float
    diff: float
    percent_diff: float | None
    classification: Classification
    entity_count: int
    exact_count: int
    metric: str | None = None


@dataclass(frozen=True)
class ComparisonSummary:
    """Layer-level totals and counts.

    Totals are entity totals, except at the component layer where they are
    the sums of the compared component amounts. Membership counts are None
    when no entity id column is mapped; the per-classification counts cover
    the layer's own comparisons for matched entities.
    """

    matched: int | None
    file_only: int | None
    vl_only: int | None
    file_total: float
    canonical_total: float
    diff: float
    percent_diff: float | None
    classification: Classification
    exact: int = 0
    within_tolerance: int = 0
    amber: int = 0
    red: int = 0


@dataclass(frozen=True)
class LayerResult:
    layer: Layer
    available: bool
    reason: str = ""
    summary: ComparisonSummary | None = None
    employees: tuple[EmployeeComparison, ...] = ()
    groups: tuple[GroupComparison, ...] = ()
    components: tuple[ComponentRollup, ...] = ()
    issues: tuple[Issue, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "employees", tuple(self.employees))
        object.__setattr__(self, "groups", tuple(self.groups))
        object.__setattr__(self, "components", tuple(self.components))
        object.__setattr__(self, "issues", tuple(self.issues))

    @classmethod
    def unavailable(cls, layer: Layer, reason: str) -> "LayerResult":
        return cls(
            layer=layer,
            available=False,
            reason=reason,
            issues=(Issue("layer_unavailable", reason, layer=layer),),
        )

    def employee(self, entity_id: str) -> EmployeeComparison | None:
        for e in self.employees:
            if e.entity_id == entity_id:
                return e
        return None

    @property
    def worst_classification(self) -> Classification | None:
        """Most severe classification observed at this layer's own grain."""
        if not self.available:
            return None
        if self.layer == "aggregate":
            return self.summary.classification if self.summary else None
        if self.layer == "grouping":
            return worst(g.classification for g in self.groups)
        if self.layer in ("component", "metric"):
            return worst(
                c.classification for e in self.employees for c in e.components
            )
        return worst(e.classification for e in self.employees)


@dataclass(frozen=True)
class FalseAgreementFlag:
    entity_id: str
    entity_name: str
    observed_layer: Layer
    disagreement_layer: Layer
    masked_impact: float
    entity_classification: Classification
    component_ids: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "component_ids", tuple(self.component_ids))


@dataclass(frozen=True)
class Finding:
    """A ranked, human-readable conclusion drawn from the computed layers."""

    severity: FindingSeverity
    pattern: str
    title: str
    detail: str
    impact: float
    entity_count: int
    layer: Layer | None = None
    component_id: str | None = None


@dataclass(frozen=True)
class ReconciliationReport:
    layers: tuple[LayerResult, ...]
    false_agreements: tuple[FalseAgreementFlag, ...]
    status: Status
    issues: tuple[Issue, ...] = ()
    mapping: MappingResult | None = None
    depth: DepthAssessment | None = None
    period_filter: str | None = None
    findings: tuple[Finding, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "layers", tuple(self.layers))
        object.__setattr__(self, "false_agreements", tuple(self.false_agreements))
        object.__setattr__(self, "issues", tuple(self.issues))
        object.__setattr__(self, "findings", tuple(self.findings))

    def layer(self, layer: str) -> LayerResult | None:
        for r in self.layers:
            if r.layer == layer:
                return r
        return None
