"""
Script execution for job steps.

The engine never interprets script bodies; it hands them to a ScriptExecutor
together with the step environment and collects the exit code and output.
Output is bounded: only the tail up to the configured limit is kept.
"""

import asyncio
import codecs
import logging
import os
import signal
from abc import ABC, abstractmethod
from collections.abc import Mapping

from pipeline_common.errors import StepExecutionError

from .provisioner import ExecutionUnit

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_LIMIT = 64 * 1024
SHELL = "/bin/sh"
READ_CHUNK_SIZE = 4096


class OutputBuffer:
    """Keeps the last `limit` characters written to it."""

    def __init__(self, limit: int = DEFAULT_OUTPUT_LIMIT):
        self.limit = limit
        self.truncated = False
        self._text = ""

    def write(self, data: str) -> None:
        self._text += data
        if len(self._text) > self.limit:
            self._text = self._text[-self.limit :] if self.limit > 0 else ""
            self.truncated = True

    @property
    def text(self) -> str:
        return self._text


class ScriptExecutor(ABC):
    """Runs a script body inside an execution unit."""

    @abstractmethod
    async def execute(
        self,
        unit: ExecutionUnit,
        script: str,
        env: Mapping[str, str],
        output: OutputBuffer,
    ) -> int:
        """
        Execute a script and wait for it to exit.

        Args:
            unit: Execution unit acquired for the job
            script: Opaque script body
            env: Complete environment for the script
            output: Buffer receiving combined stdout/stderr

        Returns:
            The script's exit code

        Raises:
            StepExecutionError: If the script could not be launched

        Cancelling the awaiting task kills the script.
        """
        pass


def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill the process and everything it spawned."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def run_process(
    argv: list[str],
    output: OutputBuffer,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> int:
    """
    Run a command, streaming its combined output into `output`.

    The command runs in its own process group so that a cancelled step can
    take its children down with it.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=dict(env) if env is not None else None,
            cwd=cwd,
            start_new_session=True,
        )
    except OSError as e:
        raise StepExecutionError(f"Failed to launch {argv[0]}: {e}", exit_code=127) from e

    # Assert stdout is available (we specified PIPE)
    assert process.stdout is not None, (
        "stdout should be available when PIPE is specified"
    )

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            output.write(decoder.decode(chunk))
        output.write(decoder.decode(b"", final=True))
        return await process.wait()
    except asyncio.CancelledError:
        # Timeout or cancellation: the script must not outlive the step
        _kill(process)
        await process.wait()
        raise


class SubprocessExecutor(ScriptExecutor):
    """Runs scripts with the host shell inside the unit's work directory."""

    def __init__(self, shell: str = SHELL):
        self.shell = shell

    async def execute(
        self,
        unit: ExecutionUnit,
        script: str,
        env: Mapping[str, str],
        output: OutputBuffer,
    ) -> int:
        return await run_process(
            [self.shell, "-c", script], output, env=env, cwd=unit.workdir
        )
