"""
Pipeline Common module.

This module contains the shared domain models, the error taxonomy and the
result sink interface used across the pipeline components (engine,
persistence, admin CLI).

The common module has no dependencies on other pipeline_* modules, making
it a pure domain layer that can be imported by any component.
"""

from .errors import (
    CancellationError,
    ConfigurationError,
    JobTimeoutError,
    PipelineError,
    ProvisioningError,
    StepExecutionError,
)
from .models import (
    ChangeContext,
    JobInstance,
    JobResult,
    JobTemplate,
    PipelineDocument,
    PlatformSpec,
    RunResult,
    StepResult,
    StepSpec,
    TriggerRule,
)
from .repository import ResultSink, RunRepository

__all__ = [
    "CancellationError",
    "ChangeContext",
    "ConfigurationError",
    "JobInstance",
    "JobResult",
    "JobTemplate",
    "JobTimeoutError",
    "PipelineDocument",
    "PipelineError",
    "PlatformSpec",
    "ProvisioningError",
    "ResultSink",
    "RunRepository",
    "RunResult",
    "StepExecutionError",
    "StepResult",
    "StepSpec",
    "TriggerRule",
]
