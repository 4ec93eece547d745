from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for failures raised by the edit pipeline."""


class InputError(PipelineError):
    """The asset cannot be decoded: missing file, unsupported container or no audio track."""


class TransientAnalysisError(PipelineError):
    """A single window could not be analysed; recovered locally as a degraded window."""


class ResourceExhaustion(PipelineError):
    """Backpressure persisted beyond the configured stall budget."""


class CancellationError(PipelineError):
    """The run was cancelled; no composition plan is produced."""


class CompositionError(PipelineError):
    """Assembled segments violate the composition plan invariants."""


class ConfigurationError(ValueError):
    """A processing option is invalid."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Invalid configuration field '{field}': {message}")
        self.field = field
