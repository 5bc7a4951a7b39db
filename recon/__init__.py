"""Recon: adaptive multi-layer reconciliation engine."""

from .classifier import ColumnClassifier, OpenRouterColumnClassifier, RoleSuggestion
from .compare import classify_delta, compare_at_layer
from .depth import assess_depth
from .errors import (
    FileFormatError,
    IncompleteMappingError,
    LayerUnavailableError,
    ReconError,
)
from .ingest import load_canonical_results, load_parsed_file, parsed_file_from_records
from .mapper import accept_mapping, map_columns, override_mapping
from .model import (
    CanonicalComponent,
    CanonicalResult,
    ColumnMapping,
    KnownComponent,
    MappingResult,
    ParsedFile,
    ReconciliationReport,
)
from .orchestrator import failed_report, reconcile, run_layers
from .report import format_report, report_to_dict, write_report
from .signals import ClassificationSignal, DuckDBSignalSink, MemorySignalSink

__all__ = [
    # Pipeline
    "reconcile",
    "run_layers",
    "failed_report",
    # Stages
    "map_columns",
    "override_mapping",
    "accept_mapping",
    "assess_depth",
    "compare_at_layer",
    "classify_delta",
    # Model
    "ParsedFile",
    "CanonicalResult",
    "CanonicalComponent",
    "KnownComponent",
    "ColumnMapping",
    "MappingResult",
    "ReconciliationReport",
    # Errors
    "ReconError",
    "FileFormatError",
    "IncompleteMappingError",
    "LayerUnavailableError",
    # Collaborators
    "ColumnClassifier",
    "OpenRouterColumnClassifier",
    "RoleSuggestion",
    "ClassificationSignal",
    "MemorySignalSink",
    "DuckDBSignalSink",
    # I/O
    "load_parsed_file",
    "load_canonical_results",
    "parsed_file_from_records",
    "report_to_dict",
    "write_report",
    "format_report",
]
