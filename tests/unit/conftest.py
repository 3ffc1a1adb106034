"""
Shared fakes for engine tests.

The fake executor interprets a tiny script language instead of spawning
processes: commands separated by ";", each one of
    echo TEXT   - write TEXT and a newline to the output
    sleep S     - sleep S seconds
    exit N      - stop with exit code N
`$NAME` references in arguments are substituted from the step environment.
"""

import asyncio
from pathlib import Path
from string import Template

import pytest

from pipeline_common.errors import ProvisioningError
from pipeline_common.models import JobInstance, JobTemplate, PlatformSpec, StepSpec
from pipeline_engine.executor import ScriptExecutor
from pipeline_engine.provisioner import ExecutionUnit, Provisioner


class FakeExecutor(ScriptExecutor):
    """Records every execution and tracks how many run at once."""

    def __init__(self):
        self.calls: list[tuple[str, str, dict[str, str]]] = []
        self.running = 0
        self.max_running = 0

    async def execute(self, unit, script, env, output):
        self.calls.append((unit.job_id, script, dict(env)))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            for command in script.split(";"):
                verb, _, arg = command.strip().partition(" ")
                arg = Template(arg).safe_substitute(env)
                if verb == "echo":
                    output.write(arg + "\n")
                elif verb == "sleep":
                    await asyncio.sleep(float(arg))
                elif verb == "exit":
                    return int(arg)
            return 0
        finally:
            self.running -= 1


class FakeProvisioner(Provisioner):
    """Hands out in-memory units; images listed in fail_images cannot be acquired."""

    def __init__(self, fail_images=(), acquire_delay: float = 0.0):
        self.fail_images = set(fail_images)
        self.acquire_delay = acquire_delay
        self.acquired: list[str] = []
        self.released: list[str] = []

    async def acquire(self, instance):
        if self.acquire_delay:
            await asyncio.sleep(self.acquire_delay)
        image = instance.platform.container_image or instance.platform.pool_image
        if image in self.fail_images:
            raise ProvisioningError(f"image {image} unavailable")
        self.acquired.append(instance.id)
        return ExecutionUnit(
            job_id=instance.id,
            platform=instance.platform,
            workdir="/work",
            temp_dir=Path("/nonexistent/pipeline-fake"),
            env={"PIPELINE_TEMP_DIR": "/tmp/fake"},
        )

    async def release(self, unit):
        self.released.append(unit.job_id)


def build_template(
    name: str,
    *scripts: str,
    matrix=None,
    timeout: float = 30.0,
    container_image: str | None = None,
    variables=None,
) -> JobTemplate:
    return JobTemplate(
        name=name,
        platform=PlatformSpec(pool_image="ubuntu-latest", container_image=container_image),
        steps=tuple(
            StepSpec(display_name=f"step {i + 1}", script=script)
            for i, script in enumerate(scripts)
        ),
        timeout_seconds=timeout,
        variables=dict(variables or {}),
        matrix=dict(matrix or {}),
    )


def build_instance(
    job_id: str, *scripts: str, timeout: float = 30.0, image: str = "ubuntu-latest"
) -> JobInstance:
    return JobInstance(
        id=job_id,
        template_name=job_id,
        variant=None,
        timeout_seconds=timeout,
        platform=PlatformSpec(pool_image=image),
        env={"PIPELINE_JOB_ID": job_id},
        steps=tuple(
            StepSpec(display_name=f"step {i + 1}", script=script)
            for i, script in enumerate(scripts)
        ),
    )


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def fake_provisioner():
    return FakeProvisioner()


@pytest.fixture
def make_template():
    """Factory for job templates whose steps are fake-executor scripts."""
    return build_template


@pytest.fixture
def make_instance():
    """Factory for resolved job instances whose steps are fake-executor scripts."""
    return build_instance


@pytest.fixture
def unit():
    return ExecutionUnit(
        job_id="job",
        platform=PlatformSpec(pool_image="ubuntu-latest"),
        workdir="/work",
        temp_dir=Path("/nonexistent/pipeline-fake"),
        env={"PIPELINE_TEMP_DIR": "/tmp/fake"},
    )
