"""
Abstract result sink and run history interface.

The engine only needs the sink half (create_run, record_job, complete_run).
The query half is used by the admin CLI. Implementations handle their own
connection management.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import JobResult, RunResult


class ResultSink(ABC):
    """Receives job and run records as a run progresses."""

    @abstractmethod
    async def create_run(
        self, run_id: str, branch: str | None, started_at: datetime
    ) -> None:
        """
        Register a run before any job is dispatched.

        Args:
            run_id: Unique run identifier
            branch: Branch the run was triggered for
            started_at: When the run started
        """
        pass

    @abstractmethod
    async def record_job(self, run_id: str, result: JobResult) -> None:
        """
        Record the terminal result of one job instance.

        Args:
            run_id: Run the job belongs to
            result: Job result including every step result
        """
        pass

    @abstractmethod
    async def complete_run(self, result: RunResult) -> None:
        """
        Record the final verdict of a run.

        Args:
            result: Aggregated run result
        """
        pass


class RunRepository(ResultSink):
    """Result sink that can also be queried for run history."""

    @abstractmethod
    async def get_run(self, run_id: str) -> RunResult | None:
        """
        Retrieve a run with all its jobs and steps.

        Returns:
            RunResult if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_runs(self, limit: int | None = None) -> list[RunResult]:
        """
        List runs, newest first, without their jobs.

        Args:
            limit: Maximum number of runs to return
        """
        pass

    @abstractmethod
    async def delete_run(self, run_id: str) -> bool:
        """
        Delete a run and everything recorded under it.

        Returns:
            True if the run existed
        """
        pass
