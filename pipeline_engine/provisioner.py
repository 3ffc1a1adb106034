"""
Execution units and the provisioners that hand them out.

An execution unit is the isolated context one job instance runs in: a
private temp directory plus, for container platforms, a container. It is
owned by the worker running the job and released exactly once.
"""

import logging
import re
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from pipeline_common.errors import ProvisioningError
from pipeline_common.models import JobInstance, PlatformSpec

logger = logging.getLogger(__name__)

TEMP_DIR_VAR = "PIPELINE_TEMP_DIR"


@dataclass
class ExecutionUnit:
    """The runtime context acquired for one job instance."""

    job_id: str
    platform: PlatformSpec
    workdir: str  # where steps run, as seen by the script
    temp_dir: Path  # host path, removed on release
    env: dict[str, str] = field(default_factory=dict)  # unit-provided variables
    container_id: str | None = None


def make_temp_dir(job_id: str) -> Path:
    """Create a private temp directory named after the job."""
    safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", job_id)
    return Path(tempfile.mkdtemp(prefix=f"pipeline_job_{safe_id}_"))


class Provisioner(ABC):
    """Acquires and releases execution units for job instances."""

    @abstractmethod
    async def acquire(self, instance: JobInstance) -> ExecutionUnit:
        """
        Acquire an execution unit matching the instance's platform.

        Raises:
            ProvisioningError: If the platform cannot be provided
        """
        pass

    @abstractmethod
    async def release(self, unit: ExecutionUnit) -> None:
        """Tear down an execution unit and everything it owns."""
        pass


class LocalProvisioner(Provisioner):
    """
    Runs jobs directly on the host.

    Each unit gets its own temp directory; steps run in the shared
    workspace. Container platforms cannot be provided.
    """

    def __init__(
        self, workspace: str | Path = ".", pool_images: Iterable[str] | None = None
    ):
        """
        Initialize the local provisioner.

        Args:
            workspace: Directory steps run in (usually the checkout)
            pool_images: Pool images this host stands in for; None accepts any
        """
        self.workspace = Path(workspace).resolve()
        self.pool_images = frozenset(pool_images) if pool_images is not None else None

    async def acquire(self, instance: JobInstance) -> ExecutionUnit:
        platform = instance.platform
        if platform.container_image:
            raise ProvisioningError(
                f"Local host cannot run container image {platform.container_image}"
            )
        if self.pool_images is not None and platform.pool_image not in self.pool_images:
            raise ProvisioningError(
                f"Pool image {platform.pool_image} is not available on this host"
            )
        if not self.workspace.is_dir():
            raise ProvisioningError(f"Workspace not found: {self.workspace}")

        temp_dir = make_temp_dir(instance.id)
        logger.debug(f"Acquired local unit for job {instance.id} ({temp_dir})")
        return ExecutionUnit(
            job_id=instance.id,
            platform=platform,
            workdir=str(self.workspace),
            temp_dir=temp_dir,
            env={TEMP_DIR_VAR: str(temp_dir)},
        )

    async def release(self, unit: ExecutionUnit) -> None:
        shutil.rmtree(unit.temp_dir, ignore_errors=True)
        logger.debug(f"Released local unit for job {unit.job_id}")
