"""
Unit tests for pipeline_common.models.

Tests the result records to ensure proper serialization and
deserialization.
"""

from datetime import UTC, datetime

from pipeline_common.models import JobResult, RunResult, StepResult

STARTED = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
FINISHED = datetime(2024, 5, 1, 12, 3, 30, tzinfo=UTC)


def make_job(status="success"):
    return JobResult(
        job_id="Linux.arch",
        status=status,
        step_results=(
            StepResult(index=0, display_name="cargo check", status="success", exit_code=0, duration_ms=1200, output="ok\n"),
            StepResult(index=1, display_name="cargo test", status="skipped"),
        ),
        template_name="Linux",
        variant="arch",
        started_at=STARTED,
        finished_at=FINISHED,
    )


class TestStepResult:
    """Test suite for StepResult class."""

    def test_to_dict(self):
        step = StepResult(index=2, display_name="fmt", status="failed", exit_code=1, truncated=True)

        assert step.to_dict() == {
            "index": 2,
            "display_name": "fmt",
            "status": "failed",
            "exit_code": 1,
            "duration_ms": 0,
            "output": "",
            "truncated": True,
        }

    def test_from_dict_defaults(self):
        step = StepResult.from_dict({"index": 0, "display_name": "x", "status": "skipped"})

        assert step.exit_code is None
        assert step.output == ""
        assert step.truncated is False


class TestJobResult:
    """Test suite for JobResult class."""

    def test_to_dict(self):
        data = make_job().to_dict()

        assert data["job_id"] == "Linux.arch"
        assert data["variant"] == "arch"
        assert data["started_at"] == "2024-05-01T12:00:00+00:00"
        assert [s["status"] for s in data["steps"]] == ["success", "skipped"]

    def test_from_dict_restores_record(self):
        job = make_job()

        assert JobResult.from_dict(job.to_dict()) == job

    def test_missing_timestamps(self):
        job = JobResult(job_id="Darwin", status="canceled")

        data = job.to_dict()

        assert data["started_at"] is None
        assert JobResult.from_dict(data).finished_at is None


class TestRunResult:
    """Test suite for RunResult class."""

    def test_to_dict_includes_jobs(self):
        run = RunResult(
            run_id="r1",
            status="failed",
            job_results=(make_job("failed"),),
            branch="master",
            started_at=STARTED,
            finished_at=FINISHED,
        )

        data = run.to_dict()

        assert data["run_id"] == "r1"
        assert data["jobs"][0]["status"] == "failed"
        assert RunResult.from_dict(data) == run

    def test_summary_omits_jobs(self):
        run = RunResult(run_id="r1", status="success", job_results=(make_job(), make_job()))

        summary = run.to_summary_dict()

        assert "jobs" not in summary
        assert summary["job_count"] == 2

