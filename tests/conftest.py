"""Shared fixtures and helpers for the recon test suite."""

import duckdb
import pytest

from recon.model import (
    CanonicalComponent,
    CanonicalResult,
    ColumnMapping,
    KnownComponent,
    MappingResult,
    ParsedFile,
)


@pytest.fixture
def conn():
    """In-memory DuckDB connection for each test."""
    c = duckdb.connect(":memory:")
    yield c
    c.close()


def _parsed(rows: list[dict], headers: list[str] | None = None) -> ParsedFile:
    """ParsedFile from row dicts; headers default to the first row's keys."""
    if headers is None:
        headers = list(rows[0]) if rows else []
    return ParsedFile(headers=headers, rows=rows, source_name="test.csv")


def _result(
    entity_id: str,
    total: float,
    components: dict[str, float] | None = None,
    *,
    name: str | None = None,
    period: str = "2024-01",
    group: str | None = None,
    metrics: dict[str, dict[str, float]] | None = None,
) -> CanonicalResult:
    """CanonicalResult with components given as {component_id: amount}."""
    metrics = metrics or {}
    return CanonicalResult(
        entity_id=entity_id,
        entity_name=name or f"Name {entity_id}",
        period_key=period,
        total_amount=total,
        components=[
            CanonicalComponent(cid, cid.title(), amount, metrics.get(cid, {}))
            for cid, amount in (components or {}).items()
        ],
        group_key=group,
    )


def _mapping(roles: dict[str, str]) -> MappingResult:
    """MappingResult from {column: role}, all deterministic."""
    return MappingResult(
        mappings=[
            ColumnMapping(col, role, 0.55, "deterministic", "test")
            for col, role in roles.items()
        ]
    )


COMPONENTS = [
    KnownComponent("optical", "Optical Sales"),
    KnownComponent("insurance", "Insurance Sales"),
]
