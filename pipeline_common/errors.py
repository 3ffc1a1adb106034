"""
Error taxonomy for the pipeline engine.

Configuration errors are fatal for the whole run and surface before any job
is dispatched. Every other error is contained at job-instance granularity
and ends up as a JobResult status.
"""


class PipelineError(Exception):
    """Base class for all pipeline engine errors."""


class ConfigurationError(PipelineError):
    """Malformed document, template or matrix reference."""


class ProvisioningError(PipelineError):
    """The platform image or container for a job could not be acquired."""


class StepExecutionError(PipelineError):
    """A step's script could not be run to completion."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class JobTimeoutError(PipelineError):
    """A job instance exceeded its timeout."""


class CancellationError(PipelineError):
    """The run was canceled while a job instance was queued or in flight."""
