"""
Sequential step execution within one job instance.
"""

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence

from pipeline_common.errors import CancellationError, StepExecutionError
from pipeline_common.models import StepResult, StepSpec

from .environment import build_step_env
from .executor import DEFAULT_OUTPUT_LIMIT, OutputBuffer, ScriptExecutor
from .provisioner import ExecutionUnit

logger = logging.getLogger(__name__)


def skipped_results(steps: Sequence[StepSpec], start: int) -> list[StepResult]:
    """Records for steps[start:] that were never attempted."""
    return [
        StepResult(index=index, display_name=step.display_name, status="skipped")
        for index, step in enumerate(steps)
        if index >= start
    ]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class StepRunner:
    """
    Runs a job's steps in order with fail-fast semantics.

    Results are appended to a caller-owned list so that the record of a job
    survives preemption: when the running task is cancelled mid-step, the
    step in progress is recorded as "interrupted" with its partial output
    and every remaining step as "skipped" before the cancellation
    propagates.
    """

    def __init__(self, executor: ScriptExecutor, output_limit: int = DEFAULT_OUTPUT_LIMIT):
        self.executor = executor
        self.output_limit = output_limit

    async def run_steps(
        self,
        unit: ExecutionUnit,
        steps: Sequence[StepSpec],
        job_env: Mapping[str, str],
        results: list[StepResult],
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        """
        Run every step sequentially inside one execution unit.

        Args:
            unit: Execution unit owned by the job
            steps: Steps in declared order
            job_env: Resolved job environment (never mutated)
            results: List receiving one StepResult per declared step
            cancel_event: Checked before each step is started

        Returns:
            True if every step exited with 0

        Raises:
            CancellationError: If the cancel event was set between steps
        """
        base_env = {**unit.env, **job_env}

        for index, step in enumerate(steps):
            if cancel_event is not None and cancel_event.is_set():
                results.extend(skipped_results(steps, index))
                raise CancellationError(
                    f"Job {unit.job_id} canceled before step '{step.display_name}'"
                )

            logger.info(f"[{unit.job_id}] ▶ {step.display_name}")
            result = await self._run_step(unit, index, step, base_env, steps, results)
            results.append(result)

            if result.status != "success":
                logger.info(
                    f"[{unit.job_id}] ✗ {step.display_name} (exit={result.exit_code})"
                )
                results.extend(skipped_results(steps, index + 1))
                return False

        return True

    async def _run_step(
        self,
        unit: ExecutionUnit,
        index: int,
        step: StepSpec,
        base_env: Mapping[str, str],
        steps: Sequence[StepSpec],
        results: list[StepResult],
    ) -> StepResult:
        env = build_step_env(base_env, step)
        output = OutputBuffer(self.output_limit)
        started = time.monotonic()

        try:
            exit_code = await self.executor.execute(unit, step.script, env, output)
        except StepExecutionError as e:
            output.write(f"{e}\n")
            return StepResult(
                index=index,
                display_name=step.display_name,
                status="failed",
                exit_code=e.exit_code,
                duration_ms=_elapsed_ms(started),
                output=output.text,
                truncated=output.truncated,
            )
        except asyncio.CancelledError:
            results.append(
                StepResult(
                    index=index,
                    display_name=step.display_name,
                    status="interrupted",
                    duration_ms=_elapsed_ms(started),
                    output=output.text,
                    truncated=output.truncated,
                )
            )
            results.extend(skipped_results(steps, index + 1))
            raise
        except Exception as e:
            logger.error(
                f"[{unit.job_id}] Executor failed during '{step.display_name}': {e}",
                exc_info=True,
            )
            output.write(f"{e}\n")
            return StepResult(
                index=index,
                display_name=step.display_name,
                status="failed",
                duration_ms=_elapsed_ms(started),
                output=output.text,
                truncated=output.truncated,
            )

        return StepResult(
            index=index,
            display_name=step.display_name,
            status="success" if exit_code == 0 else "failed",
            exit_code=exit_code,
            duration_ms=_elapsed_ms(started),
            output=output.text,
            truncated=output.truncated,
        )
