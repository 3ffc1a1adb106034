"""
Pipeline Engine module.

This module interprets pipeline documents: it evaluates the trigger for an
incoming change, expands job templates over their matrix, runs the
resulting job instances on a bounded pool of worker slots (each in its own
execution unit, steps strictly sequential with fail-fast), and aggregates
the results into one run verdict.
"""

from .coordinator import RunCoordinator, aggregate_status
from .document import load_document, parse_document
from .environment import build_step_env
from .executor import OutputBuffer, ScriptExecutor, SubprocessExecutor
from .matrix import expand, expand_all
from .provisioner import ExecutionUnit, LocalProvisioner, Provisioner
from .scheduler import JobScheduler
from .step_runner import StepRunner
from .trigger import evaluate

__all__ = [
    "ExecutionUnit",
    "JobScheduler",
    "LocalProvisioner",
    "OutputBuffer",
    "Provisioner",
    "RunCoordinator",
    "ScriptExecutor",
    "StepRunner",
    "SubprocessExecutor",
    "aggregate_status",
    "build_step_env",
    "evaluate",
    "expand",
    "expand_all",
    "load_document",
    "parse_document",
]
