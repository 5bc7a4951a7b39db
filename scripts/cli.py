"""CLI entry point for the reconciliation engine.

Usage:
    # Show how the file's columns were classified
    recon map benchmark.xlsx --canonical results.json

    # Show which comparison layers the data supports
    recon depth benchmark.xlsx --canonical results.json

    # Full reconciliation, report files written to out/
    recon run benchmark.xlsx --canonical results.json --period 2024-01 --out out/
"""

import asyncio
import logging
import sys
import tomllib
from pathlib import Path
from typing import Any

import click
from dotenv import find_dotenv, load_dotenv

# Load .env by walking upward from the CWD.
_dotenv_path = find_dotenv(usecwd=True)
DOTENV_PATH = Path(_dotenv_path) if _dotenv_path else None
if _dotenv_path:
    load_dotenv(_dotenv_path)

from recon.api import (
    DEFAULT_MODEL,
    OPENROUTER_API_KEY_ENV,
    OpenRouterClient,
    has_openrouter_api_key,
)
from recon.classifier import OpenRouterColumnClassifier
from recon.depth import assess_depth, describe
from recon.errors import FileFormatError, IncompleteMappingError
from recon.ingest import load_canonical_results, load_parsed_file
from recon.mapper import DEFAULT_CLASSIFIER_TIMEOUT, map_columns
from recon.model import CanonicalResult, MappingResult, ParsedFile, known_components_from
from recon.orchestrator import MAPPER_SAMPLE_ROWS, failed_report, reconcile
from recon.report import format_report, write_report

log = logging.getLogger(__name__)

EXIT_CODES = {"ok": 0, "degraded": 1, "failed": 2}


def _configure_logging(quiet: bool) -> None:
    level = logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def _tool_config() -> dict[str, Any]:
    """Return [tool.recon] from ./pyproject.toml, or {}."""
    pyproject_path = Path.cwd() / "pyproject.toml"
    if not pyproject_path.exists():
        return {}
    try:
        data = tomllib.loads(pyproject_path.read_text())
    except OSError as e:
        raise click.ClickException(f"Failed to read {pyproject_path}: {e}")
    except tomllib.TOMLDecodeError as e:
        raise click.ClickException(f"Invalid TOML in {pyproject_path}: {e}")
    section = data.get("tool", {}).get("recon", {}) if isinstance(data, dict) else {}
    return section if isinstance(section, dict) else {}


def _use_classifier(no_ai: bool) -> bool:
    if no_ai:
        return False
    if has_openrouter_api_key():
        return True
    hint = f" (checked {DOTENV_PATH})" if DOTENV_PATH else ""
    log.info("%s not set%s; using deterministic column matching", OPENROUTER_API_KEY_ENV, hint)
    return False


def _load_inputs(
    file: Path, canonical: Path, sheet: str | None
) -> tuple[ParsedFile, list[CanonicalResult]]:
    try:
        parsed = load_parsed_file(file, sheet=sheet)
        results = load_canonical_results(canonical)
    except FileFormatError as e:
        raise click.ClickException(str(e))
    return parsed, results


async def _map(
    parsed: ParsedFile,
    results: list[CanonicalResult],
    use_ai: bool,
    model: str,
    timeout: float,
) -> MappingResult:
    components = known_components_from(results)
    kwargs = dict(
        timeout=timeout,
        known_entity_ids=[r.entity_id for r in results],
        source_name=parsed.source_name,
    )
    sample = parsed.sample(MAPPER_SAMPLE_ROWS)
    if use_ai:
        async with OpenRouterClient() as client:
            classifier = OpenRouterColumnClassifier(client, model=model)
            return await map_columns(parsed.headers, sample, components, classifier, **kwargs)
    return await map_columns(parsed.headers, sample, components, **kwargs)


def _print_mapping(mapping: MappingResult) -> None:
    width = max(len(m.source_column) for m in mapping.mappings)
    for m in mapping.mappings:
        click.echo(
            f"  {m.source_column:<{width}}  {m.semantic_role:<28} "
            f"{m.confidence:.2f}  {m.origin:<15} {m.rationale}"
        )
    for issue in mapping.issues:
        click.echo(f"  ! {issue.code}: {issue.message}")


@click.group()
def main():
    """Recon: multi-layer reconciliation of payouts against a ground-truth file."""


file_argument = click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
canonical_option = click.option(
    "--canonical",
    "-c",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Canonical results JSON",
)
sheet_option = click.option("--sheet", default=None, help="Worksheet name for .xlsx files")
no_ai_option = click.option("--no-ai", is_flag=True, help="Skip the AI column classifier")
model_option = click.option("--model", "-m", default=None, help=f"Classifier model (default: {DEFAULT_MODEL})")
timeout_option = click.option(
    "--timeout",
    type=float,
    default=None,
    help=f"Classifier timeout in seconds (default: {DEFAULT_CLASSIFIER_TIMEOUT:g})",
)
quiet_option = click.option("--quiet", "-q", is_flag=True, help="Suppress progress output")


def _settings(model: str | None, timeout: float | None) -> tuple[str, float]:
    config = _tool_config()
    model = model or str(config.get("model") or DEFAULT_MODEL)
    if timeout is None:
        timeout = float(config.get("classifier_timeout", DEFAULT_CLASSIFIER_TIMEOUT))
    return model, timeout


@main.command("map")
@file_argument
@canonical_option
@sheet_option
@no_ai_option
@model_option
@timeout_option
@quiet_option
def map_command(
    file: Path,
    canonical: Path,
    sheet: str | None,
    no_ai: bool,
    model: str | None,
    timeout: float | None,
    quiet: bool,
):
    """Classify the file's columns into semantic roles."""
    _configure_logging(quiet)
    model, timeout = _settings(model, timeout)
    parsed, results = _load_inputs(file, canonical, sheet)
    try:
        mapping = asyncio.run(_map(parsed, results, _use_classifier(no_ai), model, timeout))
    except (FileFormatError, IncompleteMappingError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Columns ({len(mapping.mappings)}):")
    _print_mapping(mapping)


@main.command()
@file_argument
@canonical_option
@sheet_option
@no_ai_option
@model_option
@timeout_option
@quiet_option
def depth(
    file: Path,
    canonical: Path,
    sheet: str | None,
    no_ai: bool,
    model: str | None,
    timeout: float | None,
    quiet: bool,
):
    """Show which comparison layers the file and canonical results support."""
    _configure_logging(quiet)
    model, timeout = _settings(model, timeout)
    parsed, results = _load_inputs(file, canonical, sheet)
    try:
        mapping = asyncio.run(_map(parsed, results, _use_classifier(no_ai), model, timeout))
    except (FileFormatError, IncompleteMappingError) as e:
        raise click.ClickException(str(e))
    assessment = assess_depth(mapping, parsed, results)

    click.echo("Layers:")
    for row in describe(assessment):
        mark = "yes" if row["available"] else "no "
        click.echo(f"  {row['layer']:<10} {mark}  {row['reason']}")
    q = assessment.data_quality
    click.echo("\nData quality:")
    click.echo(f"  file records:       {q.file_record_count}")
    click.echo(f"  canonical records:  {q.canonical_record_count}")
    click.echo(f"  matchable ids:      {q.matchable_ids}")
    click.echo(f"  unmatched (file):   {q.unmatched_file_ids}")
    click.echo(f"  unmatched (canon.): {q.unmatched_canonical_ids}")
    periods = assessment.periods
    if periods.has_period_data:
        click.echo(f"\nPeriods ({', '.join(periods.period_columns)}):")
        for p in periods.periods:
            click.echo(f"  {p.label:<20} {p.rows} row(s)")
        if periods.unresolved_rows:
            click.echo(f"  {'(unresolved)':<20} {periods.unresolved_rows} row(s)")
        click.echo(f"  matched:            {', '.join(periods.matched) or '-'}")
        click.echo(f"  file only:          {', '.join(periods.file_only) or '-'}")
        click.echo(f"  canonical only:     {', '.join(periods.canonical_only) or '-'}")
    click.echo(f"\nMax layer: {assessment.max_layer or '(none)'}")
    click.echo(f"False agreement risk: {assessment.false_agreement_risk}")
    click.echo("\nRecommendations:")
    for rec in assessment.recommendations:
        click.echo(f"  - {rec}")


@main.command()
@file_argument
@canonical_option
@sheet_option
@click.option("--period", "-p", default=None, help="Only compare rows in this period (e.g. 2024-01, Q1 2024)")
@click.option(
    "--out",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for report.json and CSV exports",
)
@no_ai_option
@model_option
@timeout_option
@quiet_option
def run(
    file: Path,
    canonical: Path,
    sheet: str | None,
    period: str | None,
    out: Path | None,
    no_ai: bool,
    model: str | None,
    timeout: float | None,
    quiet: bool,
):
    """Reconcile FILE against canonical results across every supported layer."""
    _configure_logging(quiet)
    model, timeout = _settings(model, timeout)
    use_ai = _use_classifier(no_ai)

    async def _run():
        parsed = load_parsed_file(file, sheet=sheet)
        results = load_canonical_results(canonical)
        if use_ai:
            async with OpenRouterClient() as client:
                classifier = OpenRouterColumnClassifier(client, model=model)
                return await reconcile(
                    parsed, results, classifier, period, classifier_timeout=timeout
                )
        return await reconcile(parsed, results, None, period, classifier_timeout=timeout)

    try:
        report = asyncio.run(_run())
    except (FileFormatError, IncompleteMappingError) as e:
        log.warning("Reconciliation failed: %s", e)
        report = failed_report(e, period_filter=period)

    click.echo(format_report(report))
    if out is not None:
        write_report(report, out)
        click.echo(f"\nReport written to {out}")
    sys.exit(EXIT_CODES[report.status])


if __name__ == "__main__":
    main()
