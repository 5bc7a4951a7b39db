"""Exception types for the reconciliation engine.

Only ``FileFormatError`` and ``IncompleteMappingError`` abort a run. Every
other condition is recorded as an :class:`recon.model.Issue` on the report.
``LayerUnavailableError`` is raised inside the comparison engine and is
always contained to the layer that raised it.
"""


class ReconError(Exception):
    """Base class for reconciliation errors."""


class FileFormatError(ReconError, ValueError):
    """Raised when the parsed file is empty or structurally unusable."""


class IncompleteMappingError(ReconError):
    """Raised when neither an entity id nor a total amount column was mapped."""

    def __init__(self, message: str, headers: list[str] | None = None):
        super().__init__(message)
        self.headers = list(headers or [])


class LayerUnavailableError(ReconError):
    """Raised when one comparison layer cannot be computed."""

    def __init__(self, layer: str, reason: str):
        super().__init__(f"{layer}: {reason}")
        self.layer = layer
        self.reason = reason
