"""
Run coordinator: evaluates the trigger, expands jobs, dispatches them and
aggregates their results into a single run verdict.

This is the only component that reports the final verdict of a run.
"""

import asyncio
import logging
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime

from pipeline_common.models import (
    ChangeContext,
    JobResult,
    PipelineDocument,
    RunResult,
    RunStatus,
)
from pipeline_common.repository import ResultSink

from .matrix import expand_all
from .scheduler import JobScheduler
from .trigger import evaluate

logger = logging.getLogger(__name__)


def aggregate_status(results: Iterable[JobResult]) -> RunStatus:
    """
    Fold job statuses into a run status.

    Any failed or timed out job fails the run; otherwise any canceled job
    cancels it; otherwise the run succeeded.
    """
    statuses = {result.status for result in results}
    if statuses & {"failed", "timed_out"}:
        return "failed"
    if "canceled" in statuses:
        return "canceled"
    return "success"


class RunCoordinator:
    """
    Runs a pipeline document for one change.

    The cancel event belongs to the coordinator, so cancel() also applies
    to runs started afterwards; use one coordinator per run.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        sink: ResultSink | None = None,
        run_variables: Mapping[str, str] | None = None,
    ):
        """
        Initialize the coordinator.

        Args:
            scheduler: Job scheduler with its concurrency bound
            sink: Optional receiver for job and run records
            run_variables: Process-wide variables, lowest precedence after
                the engine's own job variables
        """
        self.scheduler = scheduler
        self.sink = sink
        self.run_variables = dict(run_variables or {})
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        """Cancel the current run: in-flight jobs are torn down, queued ones never start."""
        logger.info("Run cancellation requested")
        self._cancel_event.set()

    async def run(
        self,
        document: PipelineDocument,
        change: ChangeContext,
        run_id: str | None = None,
    ) -> RunResult:
        """
        Run every job of the document if the change triggers it.

        Args:
            document: Trigger rule and job templates
            change: Branch and changed paths of the incoming change
            run_id: Optional run identifier (generated if omitted)

        Returns:
            The aggregated RunResult

        Raises:
            ConfigurationError: If the document cannot be expanded; no job
                is started in that case
        """
        run_id = run_id or str(uuid.uuid4())
        started_at = datetime.now(UTC)

        if not evaluate(change.branch, change.changed_paths, document.trigger):
            logger.info(f"Run {run_id} skipped: change on {change.branch} does not match trigger")
            await self._register(run_id, change.branch, started_at)
            result = RunResult(
                run_id=run_id,
                status="skipped",
                branch=change.branch,
                started_at=started_at,
                finished_at=datetime.now(UTC),
            )
            await self._complete(result)
            self._log_verdict(result)
            return result

        variables = {**self.run_variables, **document.variables}
        instances = expand_all(document.jobs, variables)
        logger.info(
            f"Run {run_id} on {change.branch}: dispatching {len(instances)} job(s) "
            f"with max concurrency {self.scheduler.max_concurrency}"
        )

        await self._register(run_id, change.branch, started_at)

        async def record(result: JobResult) -> None:
            logger.info(f"Job {result.job_id} finished: {result.status}")
            if self.sink is not None:
                await self.sink.record_job(run_id, result)

        job_results = await self.scheduler.schedule(
            instances, on_complete=record, cancel_event=self._cancel_event
        )

        result = RunResult(
            run_id=run_id,
            status=aggregate_status(job_results),
            job_results=tuple(job_results),
            branch=change.branch,
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )

        await self._complete(result)
        self._log_verdict(result)
        return result

    async def _register(self, run_id: str, branch: str, started_at: datetime) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.create_run(run_id, branch, started_at)
        except Exception as e:
            logger.error(f"Failed to register run {run_id}: {e}", exc_info=True)

    async def _complete(self, result: RunResult) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.complete_run(result)
        except Exception as e:
            logger.error(f"Failed to record run {result.run_id}: {e}", exc_info=True)

    def _log_verdict(self, result: RunResult) -> None:
        counts: dict[str, int] = {}
        for job in result.job_results:
            counts[job.status] = counts.get(job.status, 0) + 1
        summary = ", ".join(f"{n} {status}" for status, n in sorted(counts.items()))
        logger.info(f"Run {result.run_id} {result.status.upper()} ({summary or 'no jobs'})")
