"""
Container manager for Docker-based job execution.

This module provides an abstraction over Docker operations for running job
instances in containers: one long-lived container per job instance, with
every step executed through `docker exec` and the container force-removed
when the job is released.
"""

import asyncio
import logging
import shutil
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path

from pipeline_common.errors import ProvisioningError, StepExecutionError
from pipeline_common.models import JobInstance

from .executor import OutputBuffer, ScriptExecutor, run_process
from .provisioner import TEMP_DIR_VAR, ExecutionUnit, Provisioner, make_temp_dir

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"
CONTAINER_TEMP_DIR = "/pipeline/tmp"

# Pool images a Docker host stands in for unless configured otherwise
LINUX_POOL_IMAGES = ("default", "ubuntu-latest")


class ContainerManager:
    """
    Manages Docker containers for pipeline job execution.

    This class provides high-level operations for creating, starting,
    executing commands in, and cleaning up job containers.
    """

    def __init__(self, container_name_prefix: str = "pipeline_", docker: str = "docker"):
        """
        Initialize the container manager.

        Args:
            container_name_prefix: Prefix for container names.
                                  Containers are named as "{prefix}{uuid}".
            docker: Docker CLI executable
        """
        self.container_name_prefix = container_name_prefix
        self.docker = docker

    def new_container_name(self) -> str:
        """Get a fresh, prefixed container name."""
        return f"{self.container_name_prefix}{uuid.uuid4()}"

    async def create_container(
        self,
        name: str,
        image: str,
        volumes: Mapping[str, str],
        workdir: str = CONTAINER_WORKSPACE,
    ) -> str:
        """
        Create a Docker container that idles until steps are executed in it.

        Args:
            name: Container name
            image: Image to create the container from (pulled if missing)
            volumes: Host path -> container path bind mounts
            workdir: Working directory inside the container

        Returns:
            Container ID

        Raises:
            RuntimeError: If container creation fails
        """
        args = [self.docker, "create", "--name", name, "-w", workdir]
        for host_path, container_path in volumes.items():
            args.extend(["-v", f"{host_path}:{container_path}"])
        args.extend([image, "sleep", "infinity"])

        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise RuntimeError(f"Failed to create container: {stderr.decode()}")

        return stdout.decode().strip()

    async def start_container(self, container_id: str) -> None:
        """
        Start a created container.

        Args:
            container_id: Docker container ID or name

        Raises:
            RuntimeError: If container start fails
        """
        process = await asyncio.create_subprocess_exec(
            self.docker,
            "start",
            container_id,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        _, stderr = await process.communicate()

        if process.returncode != 0:
            raise RuntimeError(f"Failed to start container: {stderr.decode()}")

    def exec_args(
        self, container_id: str, script: str, env: Mapping[str, str], workdir: str
    ) -> list[str]:
        """Build the `docker exec` command line for one script."""
        args = [self.docker, "exec", "-w", workdir]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.extend([container_id, "/bin/sh", "-c", script])
        return args

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        """
        Remove a container.

        Args:
            container_id: Docker container ID or name
            force: If True, force removal even if running

        Raises:
            RuntimeError: If removal fails
        """
        args = [self.docker, "rm"]
        if force:
            args.append("--force")
        args.append(container_id)

        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        _, stderr = await process.communicate()

        if process.returncode != 0:
            # Ignore "already removed" errors
            error = stderr.decode()
            if "No such container" not in error:
                raise RuntimeError(f"Failed to remove container: {error}")

    async def cleanup_container(self, container_id: str) -> None:
        """
        Force-remove a container, logging instead of raising on failure.

        Args:
            container_id: Docker container ID or name
        """
        try:
            await self.remove_container(container_id, force=True)
        except Exception as e:
            logger.error(f"Failed to clean up container {container_id}: {e}")


class DockerProvisioner(Provisioner):
    """
    Provides one container per job instance.

    The workspace is mounted at /workspace and the unit's temp directory at
    /pipeline/tmp. Jobs without a container image use the default image.
    Jobs whose pool image the host does not stand in for are refused.
    """

    def __init__(
        self,
        workspace: str | Path = ".",
        default_image: str = "python:3.12-slim",
        container_manager: ContainerManager | None = None,
        pool_images: Iterable[str] | None = LINUX_POOL_IMAGES,
    ):
        """
        Initialize the Docker provisioner.

        Args:
            workspace: Directory mounted at /workspace
            default_image: Image for jobs without a container image
            container_manager: Docker CLI wrapper
            pool_images: Pool images this host stands in for; None accepts any
        """
        self.workspace = Path(workspace).resolve()
        self.default_image = default_image
        self.container_manager = container_manager or ContainerManager()
        self.pool_images = frozenset(pool_images) if pool_images is not None else None

    async def acquire(self, instance: JobInstance) -> ExecutionUnit:
        pool_image = instance.platform.pool_image
        if self.pool_images is not None and pool_image not in self.pool_images:
            raise ProvisioningError(
                f"Pool image {pool_image} is not available on this Docker host"
            )

        image = instance.platform.container_image or self.default_image
        temp_dir = make_temp_dir(instance.id)
        name = self.container_manager.new_container_name()

        try:
            container_id = await self.container_manager.create_container(
                name,
                image,
                volumes={
                    str(self.workspace): CONTAINER_WORKSPACE,
                    str(temp_dir): CONTAINER_TEMP_DIR,
                },
            )
            await self.container_manager.start_container(container_id)
        except RuntimeError as e:
            await self._discard(name, temp_dir)
            raise ProvisioningError(
                f"Unable to provision {image} for job {instance.id}: {e}"
            ) from e
        except asyncio.CancelledError:
            # Timed out or canceled while provisioning
            await self._discard(name, temp_dir)
            raise

        logger.info(f"Job {instance.id} running in container {name} ({image})")
        return ExecutionUnit(
            job_id=instance.id,
            platform=instance.platform,
            workdir=CONTAINER_WORKSPACE,
            temp_dir=temp_dir,
            env={TEMP_DIR_VAR: CONTAINER_TEMP_DIR},
            container_id=container_id,
        )

    async def release(self, unit: ExecutionUnit) -> None:
        if unit.container_id:
            await self.container_manager.cleanup_container(unit.container_id)
        shutil.rmtree(unit.temp_dir, ignore_errors=True)

    async def _discard(self, name: str, temp_dir: Path) -> None:
        await self.container_manager.cleanup_container(name)
        shutil.rmtree(temp_dir, ignore_errors=True)


class DockerExecutor(ScriptExecutor):
    """Runs scripts inside the unit's container with `docker exec`."""

    def __init__(self, container_manager: ContainerManager | None = None):
        self.container_manager = container_manager or ContainerManager()

    async def execute(
        self,
        unit: ExecutionUnit,
        script: str,
        env: Mapping[str, str],
        output: OutputBuffer,
    ) -> int:
        if not unit.container_id:
            raise StepExecutionError(f"Job {unit.job_id} has no container")
        args = self.container_manager.exec_args(
            unit.container_id, script, env, unit.workdir
        )
        # A killed `docker exec` client leaves the process in the container;
        # release() force-removes the container, which ends it.
        return await run_process(args, output)
