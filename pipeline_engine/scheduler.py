"""
Job scheduler: runs job instances on a bounded pool of worker slots.

Each job instance moves through

    queued -> provisioning -> running -> {success, failed, timed_out, canceled}

and all four outcome states are terminal. Failures of any kind are
contained at job-instance granularity: the scheduler always returns one
JobResult per instance, with every declared step accounted for.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pipeline_common.errors import CancellationError, JobTimeoutError
from pipeline_common.models import (
    JobInstance,
    JobResult,
    JobState,
    JobStatus,
    StepResult,
)

from .executor import DEFAULT_OUTPUT_LIMIT, ScriptExecutor
from .provisioner import ExecutionUnit, Provisioner
from .step_runner import StepRunner

logger = logging.getLogger(__name__)

# Index of the synthetic step result describing a provisioning failure
PROVISIONING_STEP_INDEX = -1

OnComplete = Callable[[JobResult], Awaitable[None]]


@dataclass
class _JobRecord:
    """Mutable bookkeeping for one instance while it is owned by a worker."""

    instance: JobInstance
    state: JobState = "queued"
    steps: list[StepResult] = field(default_factory=list)
    started_at: datetime | None = None

    def transition(self, state: JobState) -> None:
        logger.info(f"Job {self.instance.id}: {self.state} -> {state}")
        self.state = state

    def to_result(self, status: JobStatus) -> JobResult:
        recorded = {step.index for step in self.steps}
        steps = list(self.steps)
        # Anything never reached (e.g. preempted during provisioning)
        for index, spec in enumerate(self.instance.steps):
            if index not in recorded:
                steps.append(
                    StepResult(index=index, display_name=spec.display_name, status="skipped")
                )
        return JobResult(
            job_id=self.instance.id,
            status=status,
            step_results=tuple(steps),
            template_name=self.instance.template_name,
            variant=self.instance.variant,
            started_at=self.started_at,
            finished_at=datetime.now(UTC),
        )


class JobScheduler:
    """
    Dispatches job instances to at most `max_concurrency` worker slots.

    Instances are started in FIFO order. A slot is held for the whole
    lifetime of a job, including teardown.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        executor: ScriptExecutor,
        max_concurrency: int = 2,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        teardown_grace: float = 10.0,
    ):
        """
        Initialize the scheduler.

        Args:
            provisioner: Acquires/releases execution units
            executor: Runs step scripts inside execution units
            max_concurrency: Number of worker slots
            output_limit: Characters of output kept per step
            teardown_grace: Seconds allowed for releasing a unit
        """
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self.provisioner = provisioner
        self.max_concurrency = max_concurrency
        self.teardown_grace = teardown_grace
        self.step_runner = StepRunner(executor, output_limit=output_limit)

    async def schedule(
        self,
        instances: Iterable[JobInstance],
        on_complete: OnComplete | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[JobResult]:
        """
        Run every instance and wait until all of them resolve.

        Args:
            instances: Job instances in dispatch order
            on_complete: Awaited with each JobResult as it is produced
            cancel_event: When set, in-flight jobs are preempted and queued
                jobs are never started; both are reported as canceled

        Returns:
            One JobResult per instance, in dispatch order
        """
        instances = list(instances)
        if cancel_event is None:
            cancel_event = asyncio.Event()

        queue: asyncio.Queue[JobInstance] = asyncio.Queue()
        for instance in instances:
            queue.put_nowait(instance)

        results: dict[str, JobResult] = {}

        async def worker(slot: int) -> None:
            while True:
                try:
                    instance = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                if cancel_event.is_set():
                    result = self._never_started(instance)
                else:
                    logger.debug(f"Slot {slot} picked up job {instance.id}")
                    result = await self._run_instance(instance, cancel_event)

                results[instance.id] = result
                await self._notify(on_complete, result)

        slots = min(self.max_concurrency, len(instances))
        await asyncio.gather(*(worker(slot) for slot in range(slots)))

        return [results[instance.id] for instance in instances]

    async def _run_instance(
        self, instance: JobInstance, cancel_event: asyncio.Event
    ) -> JobResult:
        """Run one instance under its timeout; never raises except on task cancellation."""
        record = _JobRecord(instance, started_at=datetime.now(UTC))
        body = asyncio.create_task(self._provision_and_run(record, cancel_event))

        try:
            status = await self._supervise(body, instance, cancel_event)
        except JobTimeoutError as e:
            logger.warning(str(e))
            await self._preempt(body)
            status = "timed_out"
        except CancellationError as e:
            logger.warning(str(e))
            await self._preempt(body)
            status = "canceled"
        except asyncio.CancelledError:
            await self._preempt(body)
            raise
        except Exception as e:
            logger.error(f"Job {instance.id} failed unexpectedly: {e}", exc_info=True)
            await self._preempt(body)
            status = "failed"

        record.transition(status)
        return record.to_result(status)

    async def _supervise(
        self, body: asyncio.Task, instance: JobInstance, cancel_event: asyncio.Event
    ) -> JobStatus:
        """
        Wait for the job body, its timeout or run cancellation, whichever first.

        Raises:
            JobTimeoutError: If the job exceeded its timeout
            CancellationError: If the run was canceled
        """
        cancel_wait = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {body, cancel_wait},
                timeout=instance.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()

        if body in done:
            return body.result()
        if cancel_wait in done:
            raise CancellationError(f"Job {instance.id} canceled while in flight")
        raise JobTimeoutError(
            f"Job {instance.id} exceeded its timeout of {instance.timeout_seconds}s"
        )

    async def _provision_and_run(
        self, record: _JobRecord, cancel_event: asyncio.Event
    ) -> JobStatus:
        instance = record.instance
        record.transition("provisioning")

        try:
            unit = await self.provisioner.acquire(instance)
        except Exception as e:
            logger.error(f"Job {instance.id} provisioning failed: {e}")
            record.steps.append(
                StepResult(
                    index=PROVISIONING_STEP_INDEX,
                    display_name=f"Provision {instance.platform.container_image or instance.platform.pool_image}",
                    status="failed",
                    output=f"{e}\n",
                )
            )
            return "failed"

        try:
            record.transition("running")
            succeeded = await self.step_runner.run_steps(
                unit, instance.steps, instance.env, record.steps, cancel_event
            )
            return "success" if succeeded else "failed"
        finally:
            await self._release(unit)

    async def _release(self, unit: ExecutionUnit) -> None:
        """Tear down a unit within the grace period; failures are logged."""
        try:
            await asyncio.wait_for(
                self.provisioner.release(unit), timeout=self.teardown_grace
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Teardown of job {unit.job_id} exceeded {self.teardown_grace}s grace period"
            )
        except Exception as e:
            logger.error(f"Teardown of job {unit.job_id} failed: {e}", exc_info=True)

    async def _preempt(self, body: asyncio.Task) -> None:
        """Cancel the job body and wait for its teardown to finish."""
        if not body.done():
            body.cancel()
        # Kill + release; bounded by release's own grace period
        done, _ = await asyncio.wait({body}, timeout=self.teardown_grace + 1.0)
        if not done:
            logger.error("Job teardown did not finish in time; abandoning it")
            return
        if not body.cancelled() and body.exception() is not None:
            exc = body.exception()
            if not isinstance(exc, CancellationError):
                logger.error(f"Job body failed during preemption: {exc}")

    def _never_started(self, instance: JobInstance) -> JobResult:
        logger.info(f"Job {instance.id}: queued -> canceled (never started)")
        return _JobRecord(instance).to_result("canceled")

    async def _notify(self, on_complete: OnComplete | None, result: JobResult) -> None:
        if on_complete is None:
            return
        try:
            await on_complete(result)
        except Exception as e:
            logger.error(
                f"Completion callback failed for job {result.job_id}: {e}", exc_info=True
            )
