"""Column Mapper: classify raw file columns into semantic roles.

Two explicit branches:

1. ``_classify_with_ai`` asks the injected classifier about every header
   under one bounded timeout and returns a :class:`ClassifierOutcome`
   (suggestions, or the reason there are none). It never raises.
2. Every header without an AI suggestion at or above
   ``DETERMINISTIC_FALLBACK_THRESHOLD`` goes through the deterministic
   matcher: curated synonyms, then known-component name overlap, then
   value inference for the load-bearing roles.

Role uniqueness is enforced afterwards, so the result never carries two
``entity_id`` (or ``total_amount``, ``period``, ``year``, ``group``) columns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Sequence

from recon.classifier import ColumnClassifier, RoleSuggestion
from recon.errors import FileFormatError, IncompleteMappingError
from recon.model import (
    COMPONENT_PREFIX,
    ENTITY_ID,
    ENTITY_NAME,
    GROUP,
    PERIOD,
    YEAR,
    SINGLE_VALUED_ROLES,
    TOTAL_AMOUNT,
    UNMAPPED,
    ColumnMapping,
    Issue,
    KnownComponent,
    MappingResult,
    component_role,
    metric_role,
    parse_role,
)
from recon.normalize import compact, header_tokens, normalize_id, parse_amount
from recon.signals import ClassificationSignal, NullSignalSink, SignalSink

log = logging.getLogger(__name__)

DETERMINISTIC_FALLBACK_THRESHOLD = 0.6
SYNONYM_CONFIDENCE = 0.55
COMPONENT_CONFIDENCE = 0.45
INFERRED_CONFIDENCE = 0.4
DEFAULT_CLASSIFIER_TIMEOUT = 10.0

CLASSIFIER_SAMPLE_SIZE = 20
ID_OVERLAP_THRESHOLD = 0.3
NUMERIC_SHARE_THRESHOLD = 0.7
MIN_CONTAINED_SYNONYM = 4

# Compacted forms (see normalize.compact). Order inside a list is irrelevant;
# order of the dict is the tie-break when two roles match equally well.
ROLE_SYNONYMS: dict[str, tuple[str, ...]] = {
    ENTITY_ID: (
        "id",
        "employeeid",
        "employeeno",
        "employeenumber",
        "empid",
        "empno",
        "entityid",
        "officercode",
        "officerid",
        "repid",
        "repcode",
        "agentid",
        "payeeid",
        "externalid",
        "workerid",
        "staffid",
        "badge",
        "numempleado",
        "noempleado",
        "idempleado",
        "empleado",
        "matricula",
        "codigo",
    ),
    ENTITY_NAME: (
        "name",
        "fullname",
        "employeename",
        "empname",
        "entityname",
        "repname",
        "agentname",
        "payeename",
        "officername",
        "nombre",
        "nombreempleado",
        "nombrecompleto",
        "nome",
    ),
    TOTAL_AMOUNT: (
        "total",
        "totalamount",
        "totalpayout",
        "totalpay",
        "totalincentive",
        "totalcommission",
        "totalcompensation",
        "totalbonus",
        "grandtotal",
        "payout",
        "incentive",
        "amount",
        "totalpago",
        "pagototal",
        "montototal",
        "totalincentivo",
        "incentivototal",
    ),
    PERIOD: (
        "period",
        "periodkey",
        "payperiod",
        "month",
        "date",
        "paydate",
        "periodo",
        "mes",
        "fecha",
        "quarter",
    ),
    YEAR: (
        "year",
        "yr",
        "fiscalyear",
        "payyear",
        "año",
        "ano",
        "anio",
        "ejercicio",
    ),
    GROUP: (
        "store",
        "storeid",
        "storeno",
        "storenumber",
        "location",
        "locationid",
        "branch",
        "branchid",
        "team",
        "teamid",
        "region",
        "tienda",
        "notienda",
        "numtienda",
        "sucursal",
        "loja",
    ),
}

# Header token -> canonical metric name.
METRIC_KEYWORDS: dict[str, str] = {
    "attainment": "attainment",
    "achievement": "attainment",
    "cumplimiento": "attainment",
    "pct": "attainment",
    "percent": "attainment",
    "%": "attainment",
    "target": "target",
    "goal": "target",
    "quota": "target",
    "meta": "target",
    "objetivo": "target",
    "actual": "actual",
    "real": "actual",
    "volume": "actual",
}

# Tokens too generic to tie a column to one component.
_GENERIC_TOKENS = frozenset(
    {"sales", "amount", "total", "incentive", "bonus", "commission", "payout", "pago", "venta", "ventas"}
)

_METRIC_NAMES = tuple(dict.fromkeys(METRIC_KEYWORDS.values()))

_SYNONYM_INDEX: dict[str, str] = {
    syn: role for role, syns in ROLE_SYNONYMS.items() for syn in syns
}


@dataclass(frozen=True)
class ClassifierOutcome:
    """Result of the AI branch: suggestions per header, or a failure reason."""

    suggestions: dict[str, list[RoleSuggestion]] = field(default_factory=dict)
    failure: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, reason: str) -> "ClassifierOutcome":
        return cls(failure=reason)

    def best(self, header: str) -> RoleSuggestion | None:
        ranked = self.suggestions.get(header) or []
        return ranked[0] if ranked else None


def candidate_roles(known_components: Sequence[KnownComponent]) -> list[str]:
    """Roles offered to the classifier, in a stable order."""
    roles = list(SINGLE_VALUED_ROLES)
    for c in known_components:
        roles.append(component_role(c.component_id))
    for c in known_components:
        for metric in _METRIC_NAMES:
            roles.append(metric_role(c.component_id, metric))
    roles.append(UNMAPPED)
    return roles


def is_valid_role(role: str, known_components: Sequence[KnownComponent] | None = None) -> bool:
    if role == UNMAPPED or role in SINGLE_VALUED_ROLES:
        return True
    kind, component_id, metric = parse_role(role)
    if kind == "component":
        ok = bool(component_id)
    elif kind == "metric":
        ok = bool(component_id) and bool(metric)
    else:
        return False
    if ok and known_components is not None:
        return any(c.component_id == component_id for c in known_components)
    return ok


# ---------------------------------------------------------------------------
# AI branch
# ---------------------------------------------------------------------------


async def _classify_with_ai(
    classifier: ColumnClassifier | None,
    headers: Sequence[str],
    sample_rows: Sequence[dict[str, Any]],
    roles: Sequence[str],
    timeout: float,
) -> ClassifierOutcome:
    if classifier is None:
        return ClassifierOutcome.failed("no classifier configured")

    samples = list(sample_rows[:CLASSIFIER_SAMPLE_SIZE])

    async def classify_all() -> dict[str, list[RoleSuggestion]]:
        results = await asyncio.gather(
            *(
                classifier.classify(h, [r.get(h) for r in samples], list(roles))
                for h in headers
            )
        )
        return dict(zip(headers, results))

    try:
        suggestions = await asyncio.wait_for(classify_all(), timeout)
    except asyncio.TimeoutError:
        return ClassifierOutcome.failed(f"classifier timed out after {timeout:g}s")
    except asyncio.CancelledError:
        task = asyncio.current_task()
        if task is not None and task.cancelling():
            raise
        return ClassifierOutcome.failed("classifier call was cancelled")
    except Exception as e:
        return ClassifierOutcome.failed(f"classifier failed: {type(e).__name__}: {e}")
    return ClassifierOutcome(suggestions=suggestions)


def _mapping_from_suggestion(
    header: str, suggestion: RoleSuggestion | None, known_components: Sequence[KnownComponent]
) -> ColumnMapping | None:
    if suggestion is None or suggestion.confidence < DETERMINISTIC_FALLBACK_THRESHOLD:
        return None
    if not is_valid_role(suggestion.role, known_components):
        return None
    return ColumnMapping(
        source_column=header,
        semantic_role=suggestion.role,
        confidence=suggestion.confidence,
        origin="ai",
        rationale=suggestion.rationale or "AI classification",
    )


# ---------------------------------------------------------------------------
# Deterministic branch
# ---------------------------------------------------------------------------


def _synonym_role(header: str) -> tuple[str, str] | None:
    """Return ``(role, synonym)`` for an exact or contained synonym match."""
    key = compact(header)
    if not key:
        return None
    if key in _SYNONYM_INDEX:
        return _SYNONYM_INDEX[key], key

    best: tuple[int, int, str, str] | None = None
    order = {role: i for i, role in enumerate(ROLE_SYNONYMS)}
    for syn, role in _SYNONYM_INDEX.items():
        if len(syn) < MIN_CONTAINED_SYNONYM or syn not in key:
            continue
        rank = (-len(syn), order[role], role, syn)
        if best is None or rank < best:
            best = rank
    if best is None:
        return None
    return best[2], best[3]


def _metric_keyword(tokens: Sequence[str]) -> str | None:
    for t in tokens:
        if t in METRIC_KEYWORDS:
            return METRIC_KEYWORDS[t]
    return None


def _component_match(
    header: str, known_components: Sequence[KnownComponent]
) -> KnownComponent | None:
    """Best known component by normalized-substring overlap with the header."""
    tokens = [t for t in header_tokens(header) if t not in METRIC_KEYWORDS]
    key = "".join(compact(t) for t in tokens)
    if not key:
        return None

    best: tuple[int, int] | None = None
    best_component: KnownComponent | None = None
    for idx, c in enumerate(known_components):
        score = 0
        for candidate in (compact(c.component_name), compact(c.component_id)):
            if not candidate:
                continue
            if candidate in key:
                score = max(score, len(candidate) + 100)
            elif len(key) >= MIN_CONTAINED_SYNONYM and key in candidate:
                score = max(score, len(key) + 50)
        if not score:
            name_tokens = {
                compact(t) for t in header_tokens(c.component_name) + header_tokens(c.component_id)
            }
            shared = [
                t
                for t in tokens
                if len(t) >= MIN_CONTAINED_SYNONYM
                and t not in _GENERIC_TOKENS
                and compact(t) in name_tokens
            ]
            score = sum(len(t) for t in shared)
        if score and (best is None or (score, -idx) > best):
            best = (score, -idx)
            best_component = c
    return best_component


def deterministic_mapping(
    header: str, known_components: Sequence[KnownComponent]
) -> ColumnMapping:
    """Classify one header from its text alone. Pure and repeatable."""
    key = compact(header)
    exact_role = _SYNONYM_INDEX.get(key)
    if exact_role:
        return ColumnMapping(
            header, exact_role, SYNONYM_CONFIDENCE, "deterministic", f"header matches {exact_role} synonym {key!r}"
        )

    component = _component_match(header, known_components)
    if component is not None:
        metric = _metric_keyword(header_tokens(header))
        if metric:
            return ColumnMapping(
                header,
                metric_role(component.component_id, metric),
                COMPONENT_CONFIDENCE,
                "deterministic",
                f"header overlaps component {component.component_name!r} with metric keyword {metric!r}",
            )
        return ColumnMapping(
            header,
            component_role(component.component_id),
            COMPONENT_CONFIDENCE,
            "deterministic",
            f"header overlaps component {component.component_name!r}",
        )

    match = _synonym_role(header)
    if match:
        role, syn = match
        return ColumnMapping(
            header, role, SYNONYM_CONFIDENCE, "deterministic", f"header contains {role} synonym {syn!r}"
        )

    return ColumnMapping(header, UNMAPPED, 0.0, "deterministic", "no synonym or component match")


def enforce_unique_roles(
    mappings: Sequence[ColumnMapping], pinned: str | None = None
) -> list[ColumnMapping]:
    """Keep one column per single-valued role; demote the rest to unmapped.

    The highest-confidence claim wins (first in header order on ties) unless
    ``pinned`` names a column, which always wins its role.
    """
    winners: dict[str, ColumnMapping] = {}
    for m in mappings:
        if m.semantic_role not in SINGLE_VALUED_ROLES:
            continue
        current = winners.get(m.semantic_role)
        if current is None:
            winners[m.semantic_role] = m
        elif current.source_column == pinned:
            continue
        elif m.source_column == pinned or m.confidence > current.confidence:
            winners[m.semantic_role] = m

    out: list[ColumnMapping] = []
    for m in mappings:
        winner = winners.get(m.semantic_role)
        if winner is None or winner.source_column == m.source_column:
            out.append(m)
            continue
        out.append(
            replace(
                m,
                semantic_role=UNMAPPED,
                confidence=0.0,
                rationale=f"{m.semantic_role} already mapped to {winner.source_column!r}",
            )
        )
    return out


def _infer_entity_id(
    mappings: list[ColumnMapping],
    sample_rows: Sequence[dict[str, Any]],
    known_entity_ids: Iterable[Any],
) -> None:
    known = {normalize_id(k) for k in known_entity_ids}
    best: tuple[float, int] | None = None
    for idx, m in enumerate(mappings):
        if m.is_mapped:
            continue
        values = [r.get(m.source_column) for r in sample_rows]
        values = [v for v in values if v is not None and str(v).strip()]
        if not values:
            continue
        share = sum(1 for v in values if normalize_id(v) in known) / len(values)
        if share > ID_OVERLAP_THRESHOLD and (best is None or share > best[0]):
            best = (share, idx)
    if best is None:
        return
    share, idx = best
    mappings[idx] = ColumnMapping(
        mappings[idx].source_column,
        ENTITY_ID,
        INFERRED_CONFIDENCE,
        "deterministic",
        f"{share:.0%} of sample values are known entity ids",
    )


def _infer_total_amount(
    mappings: list[ColumnMapping], sample_rows: Sequence[dict[str, Any]]
) -> None:
    best: tuple[float, int] | None = None
    for idx, m in enumerate(mappings):
        if m.is_mapped:
            continue
        values = [r.get(m.source_column) for r in sample_rows]
        values = [v for v in values if v is not None and str(v).strip()]
        if not values:
            continue
        amounts: list[float] = []
        for v in values:
            try:
                amount = parse_amount(v)
            except ValueError:
                continue
            if amount is not None:
                amounts.append(amount)
        if len(amounts) / len(values) < NUMERIC_SHARE_THRESHOLD:
            continue
        mean = sum(amounts) / len(amounts)
        if best is None or mean > best[0]:
            best = (mean, idx)
    if best is None:
        return
    mean, idx = best
    mappings[idx] = ColumnMapping(
        mappings[idx].source_column,
        TOTAL_AMOUNT,
        INFERRED_CONFIDENCE,
        "deterministic",
        f"largest numeric column (mean {mean:,.2f})",
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _emit(signals: SignalSink, mapping: ColumnMapping, *, accepted: bool, source_name: str | None) -> None:
    signals.record(
        ClassificationSignal(
            column=mapping.source_column,
            chosen_role=mapping.semantic_role,
            confidence=mapping.confidence,
            origin=mapping.origin,
            accepted_by_human=accepted,
            source_name=source_name,
        )
    )


async def map_columns(
    headers: Sequence[str],
    sample_rows: Sequence[dict[str, Any]],
    known_components: Sequence[KnownComponent],
    classifier: ColumnClassifier | None = None,
    *,
    signals: SignalSink | None = None,
    timeout: float = DEFAULT_CLASSIFIER_TIMEOUT,
    known_entity_ids: Iterable[Any] | None = None,
    source_name: str | None = None,
) -> MappingResult:
    """Map every header to a semantic role.

    Returns one :class:`ColumnMapping` per header, in header order. Raises
    FileFormatError for an empty header list and IncompleteMappingError when
    neither an entity id nor a total amount column could be found.
    """
    headers = list(headers)
    if not headers:
        raise FileFormatError("File has no columns")
    sample_rows = list(sample_rows)
    known_components = list(known_components)
    signals = signals or NullSignalSink()
    issues: list[Issue] = []

    outcome = await _classify_with_ai(
        classifier, headers, sample_rows, candidate_roles(known_components), timeout
    )
    if classifier is not None and not outcome.ok:
        log.warning("Column classifier unavailable, using deterministic matching: %s", outcome.failure)
        issues.append(
            Issue(
                "classifier_unavailable",
                f"AI column classification unavailable ({outcome.failure}); deterministic matching used",
            )
        )

    mappings: list[ColumnMapping] = []
    for header in headers:
        mapping = _mapping_from_suggestion(header, outcome.best(header), known_components)
        if mapping is None:
            mapping = deterministic_mapping(header, known_components)
        mappings.append(mapping)

    mappings = enforce_unique_roles(mappings)

    mapped_roles = {m.semantic_role for m in mappings}
    if sample_rows:
        if ENTITY_ID not in mapped_roles and known_entity_ids is not None:
            _infer_entity_id(mappings, sample_rows, known_entity_ids)
        has_components = any(m.semantic_role.startswith(COMPONENT_PREFIX) for m in mappings)
        if TOTAL_AMOUNT not in mapped_roles and not has_components:
            _infer_total_amount(mappings, sample_rows)

    mapped_roles = {m.semantic_role for m in mappings}
    if ENTITY_ID not in mapped_roles and TOTAL_AMOUNT not in mapped_roles:
        raise IncompleteMappingError(
            f"No entity id or total amount column found among {headers!r}", headers
        )

    for m in mappings:
        if m.is_mapped:
            _emit(signals, m, accepted=False, source_name=source_name)

    result = MappingResult(mappings=mappings, classifier_used=outcome.ok, issues=issues)
    log.info(
        "Mapped %d/%d columns (%s)",
        sum(1 for m in mappings if m.is_mapped),
        len(mappings),
        "ai + deterministic" if outcome.ok else "deterministic",
    )
    return result


def override_mapping(
    result: MappingResult,
    column: str,
    role: str,
    *,
    signals: SignalSink | None = None,
    source_name: str | None = None,
    rationale: str = "set by reviewer",
) -> MappingResult:
    """Return a new MappingResult with ``column`` pinned to ``role``.

    Any other column holding the same single-valued role is demoted to
    unmapped. Emits a human-accepted classification signal.
    """
    if result.mapping_for(column) is None:
        raise KeyError(f"Unknown column: {column!r}")
    if not is_valid_role(role):
        raise ValueError(f"Invalid semantic role: {role!r}")

    override = ColumnMapping(column, role, 1.0, "manual_override", rationale)
    mappings = [override if m.source_column == column else m for m in result.mappings]
    mappings = enforce_unique_roles(mappings, pinned=column)
    _emit(signals or NullSignalSink(), override, accepted=True, source_name=source_name)
    log.info("Override: %r -> %s", column, role)
    return MappingResult(mappings=mappings, classifier_used=result.classifier_used, issues=result.issues)


def accept_mapping(
    result: MappingResult,
    column: str,
    *,
    signals: SignalSink | None = None,
    source_name: str | None = None,
) -> ColumnMapping:
    """Record that a reviewer accepted the suggested mapping for ``column`` unchanged."""
    mapping = result.mapping_for(column)
    if mapping is None:
        raise KeyError(f"Unknown column: {column!r}")
    _emit(signals or NullSignalSink(), mapping, accepted=True, source_name=source_name)
    return mapping
