"""
Data models for pipeline documents and execution results.

These are plain immutable value records shared by the engine, the
persistence layer and the admin CLI, independent of how they are stored.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

PathPolicy = Literal["shallow", "recursive"]
StepStatus = Literal["success", "failed", "skipped", "interrupted"]
JobState = Literal[
    "queued", "provisioning", "running", "success", "failed", "timed_out", "canceled"
]
JobStatus = Literal["success", "failed", "timed_out", "canceled"]
RunStatus = Literal["success", "failed", "canceled", "skipped"]


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class TriggerRule:
    """
    Decides whether a change starts a run.

    A change matches iff its branch is included and at least one changed
    path escapes every exclude pattern.
    """

    included_branches: frozenset[str]
    excluded_paths: tuple[str, ...] = ()
    path_policy: PathPolicy = "shallow"


@dataclass(frozen=True)
class PlatformSpec:
    """Where a job runs: a pool image and an optional container image."""

    pool_image: str
    container_image: str | None = None  # may contain $name placeholders


@dataclass(frozen=True)
class StepSpec:
    """One script step of a job."""

    display_name: str
    script: str
    env_overrides: dict[str, str] = field(default_factory=dict)
    additive: frozenset[str] = frozenset()  # overrides prepended, not replaced


@dataclass(frozen=True)
class JobTemplate:
    """
    A job declaration before matrix expansion.

    An empty matrix means a single implicit variant.
    """

    name: str
    platform: PlatformSpec
    steps: tuple[StepSpec, ...]
    timeout_seconds: float = 3600.0
    variables: dict[str, str] = field(default_factory=dict)
    matrix: dict[str, dict[str, str]] = field(default_factory=dict)


@dataclass(frozen=True)
class JobInstance:
    """A fully resolved job template for one matrix variant."""

    id: str
    template_name: str
    variant: str | None
    timeout_seconds: float
    platform: PlatformSpec
    env: dict[str, str]
    steps: tuple[StepSpec, ...]


@dataclass(frozen=True)
class PipelineDocument:
    """A trigger rule plus the job templates it guards."""

    trigger: TriggerRule
    jobs: tuple[JobTemplate, ...]
    variables: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ChangeContext:
    """The change a run is requested for, supplied by version control."""

    branch: str
    changed_paths: frozenset[str] = frozenset()


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step. Skipped steps carry no exit code."""

    index: int
    display_name: str
    status: StepStatus
    exit_code: int | None = None
    duration_ms: int = 0
    output: str = ""
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert step result to dictionary format (for JSON serialization)."""
        return {
            "index": self.index,
            "display_name": self.display_name,
            "status": self.status,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "output": self.output,
            "truncated": self.truncated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        """Create step result from dictionary format."""
        return cls(
            index=data["index"],
            display_name=data["display_name"],
            status=data["status"],
            exit_code=data.get("exit_code"),
            duration_ms=data.get("duration_ms", 0),
            output=data.get("output", ""),
            truncated=bool(data.get("truncated", False)),
        )


@dataclass(frozen=True)
class JobResult:
    """
    Outcome of one job instance.

    step_results always lists every declared step in order, including the
    ones that were skipped or never attempted.
    """

    job_id: str
    status: JobStatus
    step_results: tuple[StepResult, ...] = ()
    template_name: str | None = None
    variant: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert job result to dictionary format (for JSON serialization)."""
        return {
            "job_id": self.job_id,
            "status": self.status,
            "template_name": self.template_name,
            "variant": self.variant,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "steps": [step.to_dict() for step in self.step_results],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobResult":
        """Create job result from dictionary format."""
        return cls(
            job_id=data["job_id"],
            status=data["status"],
            step_results=tuple(
                StepResult.from_dict(step) for step in data.get("steps", [])
            ),
            template_name=data.get("template_name"),
            variant=data.get("variant"),
            started_at=_parse_time(data.get("started_at")),
            finished_at=_parse_time(data.get("finished_at")),
        )


@dataclass(frozen=True)
class RunResult:
    """Aggregate verdict over every job instance of a run."""

    run_id: str
    status: RunStatus
    job_results: tuple[JobResult, ...] = ()
    branch: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert run result to dictionary format (for JSON serialization)."""
        return {
            "run_id": self.run_id,
            "status": self.status,
            "branch": self.branch,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "jobs": [job.to_dict() for job in self.job_results],
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert run to summary format (without jobs, for listings)."""
        return {
            "run_id": self.run_id,
            "status": self.status,
            "branch": self.branch,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "job_count": len(self.job_results),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunResult":
        """Create run result from dictionary format."""
        return cls(
            run_id=data["run_id"],
            status=data["status"],
            job_results=tuple(JobResult.from_dict(job) for job in data.get("jobs", [])),
            branch=data.get("branch"),
            started_at=_parse_time(data.get("started_at")),
            finished_at=_parse_time(data.get("finished_at")),
        )
