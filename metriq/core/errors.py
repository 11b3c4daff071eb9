"""METRIQ — Pipeline Error Taxonomy.

Every failure the transformer pipeline can surface is one of these.
Route handlers map them to HTTP status codes; the orchestrator writes
their message into ``Metric.last_error``.
"""


class PipelineError(Exception):
    """Base for all pipeline failures."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(PipelineError):
    """Unknown template, metric, transformer or chart. Terminal."""

    code = "NOT_FOUND"


class FetchFailure(PipelineError):
    """Network, auth or source-API error while fetching raw data."""

    code = "FETCH_FAILED"

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class SynthesisFailure(PipelineError):
    """Oracle call failed, or generated code failed validation after one retry."""

    code = "SYNTHESIS_FAILED"


class ValidationFailure(PipelineError):
    """Generated code ran but returned a structurally invalid result."""

    code = "VALIDATION_FAILED"


class SandboxRuntimeFailure(PipelineError):
    """Generated code raised, timed out or crashed the sandbox process."""

    code = "SANDBOX_RUNTIME_ERROR"


class InvalidTransition(PipelineError):
    """Refresh status moved out of order for its pipeline type."""

    code = "INVALID_TRANSITION"
