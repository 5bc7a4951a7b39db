"""Load ground-truth files and canonical results for the CLI and tests.

Ground-truth files are read through DuckDB's readers with every column as
text (``all_varchar``), so leading zeros and the file's own formatting reach
the mapper untouched. JSON and Parquet keep their native types.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

import duckdb
import polars as pl

from recon.errors import FileFormatError
from recon.model import CanonicalComponent, CanonicalResult, ParsedFile

log = logging.getLogger(__name__)

# Type alias for record data accepted by parsed_file_from_records
TableData = Any  # pl.DataFrame | list[dict] | dict[str, list]

SUPPORTED_FILE_EXTENSIONS = {
    ".csv": "csv",
    ".tsv": "tsv",
    ".txt": "tsv",
    ".xlsx": "excel",
    ".json": "json",
    ".parquet": "parquet",
}

_QUERIES = {
    "csv": "SELECT * FROM read_csv(?, header = true, all_varchar = true)",
    "tsv": "SELECT * FROM read_csv(?, delim = '\t', header = true, all_varchar = true)",
    "json": "SELECT * FROM read_json_auto(?)",
    "parquet": "SELECT * FROM read_parquet(?)",
}


def _ensure_file_exists(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")


def file_format(path: Path) -> str:
    fmt = SUPPORTED_FILE_EXTENSIONS.get(path.suffix.lower())
    if fmt is None:
        supported = ", ".join(sorted(SUPPORTED_FILE_EXTENSIONS))
        raise FileFormatError(f"Unsupported file type {path.suffix!r} (expected one of {supported})")
    return fmt


def _excel_query(conn: duckdb.DuckDBPyConnection, sheet: str | None) -> tuple[str, list[Any]]:
    try:
        conn.execute("LOAD excel")
    except duckdb.Error as e:
        raise RuntimeError(f"Failed to load DuckDB excel extension: {e}") from e
    if sheet:
        return "SELECT * FROM read_xlsx(?, sheet = ?, header = true, all_varchar = true)", [sheet]
    return "SELECT * FROM read_xlsx(?, header = true, all_varchar = true)", []


def load_parsed_file(path: str | Path, sheet: str | None = None) -> ParsedFile:
    """Read a CSV/TSV/XLSX/JSON/Parquet file into a :class:`ParsedFile`.

    Raises FileFormatError when DuckDB cannot read the file or it has no columns.
    """
    path = Path(path)
    _ensure_file_exists(path)
    fmt = file_format(path)

    conn = duckdb.connect(":memory:")
    try:
        if fmt == "excel":
            query, extra = _excel_query(conn, sheet)
        else:
            query, extra = _QUERIES[fmt], []
        try:
            cursor = conn.execute(query, [str(path), *extra])
            headers = [d[0] for d in cursor.description]
            rows = [dict(zip(headers, values)) for values in cursor.fetchall()]
        except duckdb.Error as e:
            raise FileFormatError(f"Could not read {path.name}: {e}") from e
    finally:
        conn.close()

    if not headers:
        raise FileFormatError(f"{path.name} has no columns")
    log.info("Loaded %s: %d columns, %d rows", path.name, len(headers), len(rows))
    return ParsedFile(headers=headers, rows=rows, source_name=path.name, sheet=sheet)


def parsed_file_from_records(data: TableData, source_name: str | None = None) -> ParsedFile:
    """Build a ParsedFile from a DataFrame, list[dict] or dict[str, list].

    For list[dict], headers are the union of keys in first-seen order.
    """
    if isinstance(data, pl.DataFrame):
        return ParsedFile(headers=data.columns, rows=data.to_dicts(), source_name=source_name)
    if isinstance(data, dict):
        headers = list(data)
        rows = [dict(zip(headers, values)) for values in zip(*data.values())]
        return ParsedFile(headers=headers, rows=rows, source_name=source_name)
    if isinstance(data, list):
        headers = list(dict.fromkeys(k for row in data for k in row))
        rows = [{h: row.get(h) for h in headers} for row in data]
        return ParsedFile(headers=headers, rows=rows, source_name=source_name)
    raise TypeError(
        f"Unsupported data type: {type(data).__name__}. "
        f"Expected DataFrame, list[dict], or dict[str, list]."
    )


# ---------------------------------------------------------------------------
# Canonical results
# ---------------------------------------------------------------------------


def _field(record: dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in record and record[name] is not None:
            return record[name]
    return default


def _require(record: dict[str, Any], index: int, *names: str) -> Any:
    value = _field(record, *names)
    if value is None:
        raise FileFormatError(f"Canonical result #{index} is missing {names[0]!r}")
    return value


def canonical_results_from_records(records: Iterable[dict[str, Any]]) -> list[CanonicalResult]:
    """Build canonical results from snake_case or camelCase JSON records."""
    results: list[CanonicalResult] = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise FileFormatError(f"Canonical result #{index} is not an object")
        components = []
        for c in _field(record, "components", default=[]):
            component_id = str(_require(c, index, "component_id", "componentId"))
            components.append(
                CanonicalComponent(
                    component_id=component_id,
                    component_name=str(_field(c, "component_name", "componentName", default=component_id)),
                    amount=float(_field(c, "amount", default=0.0)),
                    metrics={k: float(v) for k, v in (_field(c, "metrics", default={}) or {}).items()},
                )
            )
        group_key = _field(record, "group_key", "groupKey")
        results.append(
            CanonicalResult(
                entity_id=str(_require(record, index, "entity_id", "entityId")),
                entity_name=str(_field(record, "entity_name", "entityName", default="")),
                period_key=str(_field(record, "period_key", "periodKey", default="")),
                total_amount=float(_require(record, index, "total_amount", "totalAmount")),
                components=components,
                group_key=str(group_key) if group_key is not None else None,
            )
        )
    return results


def load_canonical_results(path: str | Path) -> list[CanonicalResult]:
    """Read canonical results from a JSON list, or an object with a ``results`` list."""
    path = Path(path)
    _ensure_file_exists(path)
    try:
        parsed = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise FileFormatError(f"{path.name} is not valid JSON: {e}") from e
    if isinstance(parsed, dict):
        parsed = parsed.get("results")
    if not isinstance(parsed, list):
        raise FileFormatError(f"{path.name} must hold a list of canonical results")
    results = canonical_results_from_records(parsed)
    log.info("Loaded %d canonical results from %s", len(results), path.name)
    return results
