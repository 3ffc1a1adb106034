"""
Unit tests for the repository layer.

Tests the SQLite implementation of the run history to ensure proper run,
job and step persistence and retrieval.
"""

import os
import tempfile
from datetime import UTC, datetime, timedelta

import pytest

from pipeline_common.models import JobResult, RunResult, StepResult
from pipeline_persistence.sqlite_repository import SQLiteRunRepository

STARTED = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteRunRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


def make_job(job_id="Linux.arch", status="failed"):
    return JobResult(
        job_id=job_id,
        status=status,
        step_results=(
            StepResult(index=0, display_name="check", status="success", exit_code=0, output="ok\n"),
            StepResult(index=1, display_name="test", status="failed", exit_code=101, truncated=True),
            StepResult(index=2, display_name="doc", status="skipped"),
        ),
        template_name="Linux",
        variant="arch",
        started_at=STARTED,
        finished_at=STARTED + timedelta(minutes=3),
    )


@pytest.mark.asyncio
async def test_create_and_get_run(temp_db):
    """Test registering a run and retrieving it before completion."""
    repo = temp_db

    await repo.create_run("run-1", "master", STARTED)

    retrieved = await repo.get_run("run-1")

    assert retrieved is not None
    assert retrieved.status == "running"
    assert retrieved.branch == "master"
    assert retrieved.started_at == STARTED
    assert retrieved.finished_at is None
    assert retrieved.job_results == ()


@pytest.mark.asyncio
async def test_get_nonexistent_run(temp_db):
    assert await temp_db.get_run("missing") is None


@pytest.mark.asyncio
async def test_record_job_with_steps(temp_db):
    """Test that jobs keep their steps in declared order."""
    repo = temp_db
    await repo.create_run("run-1", "master", STARTED)

    await repo.record_job("run-1", make_job())

    run = await repo.get_run("run-1")
    assert len(run.job_results) == 1
    assert run.job_results[0] == make_job()


@pytest.mark.asyncio
async def test_jobs_keep_completion_order(temp_db):
    repo = temp_db
    await repo.create_run("run-1", "master", STARTED)

    for job_id in ["Linux.debian11", "Darwin", "Linux.arch"]:
        await repo.record_job("run-1", make_job(job_id))

    run = await repo.get_run("run-1")
    assert [j.job_id for j in run.job_results] == ["Linux.debian11", "Darwin", "Linux.arch"]


@pytest.mark.asyncio
async def test_record_job_twice_replaces_steps(temp_db):
    repo = temp_db
    await repo.create_run("run-1", "master", STARTED)

    await repo.record_job("run-1", make_job(status="failed"))
    await repo.record_job(
        "run-1",
        JobResult(
            job_id="Linux.arch",
            status="success",
            step_results=(StepResult(index=0, display_name="check", status="success", exit_code=0),),
        ),
    )

    run = await repo.get_run("run-1")
    assert len(run.job_results) == 1
    assert run.job_results[0].status == "success"
    assert len(run.job_results[0].step_results) == 1


@pytest.mark.asyncio
async def test_complete_run(temp_db):
    repo = temp_db
    await repo.create_run("run-1", "master", STARTED)
    await repo.record_job("run-1", make_job())
    finished = STARTED + timedelta(minutes=5)

    await repo.complete_run(
        RunResult(run_id="run-1", status="failed", branch="master", started_at=STARTED, finished_at=finished)
    )

    run = await repo.get_run("run-1")
    assert run.status == "failed"
    assert run.finished_at == finished
    assert len(run.job_results) == 1


@pytest.mark.asyncio
async def test_complete_unregistered_run(temp_db):
    """A run that was never registered is inserted on completion."""
    repo = temp_db

    await repo.complete_run(
        RunResult(run_id="run-2", status="skipped", branch="develop", started_at=STARTED, finished_at=STARTED)
    )

    run = await repo.get_run("run-2")
    assert run.status == "skipped"
    assert run.branch == "develop"


@pytest.mark.asyncio
async def test_list_runs_newest_first(temp_db):
    repo = temp_db
    for i in range(3):
        await repo.create_run(f"run-{i}", "master", STARTED + timedelta(hours=i))
    await repo.record_job("run-2", make_job())

    runs = await repo.list_runs()

    assert [r.run_id for r in runs] == ["run-2", "run-1", "run-0"]
    # Listings do not load step output
    assert runs[0].job_results[0].step_results == ()

    limited = await repo.list_runs(limit=2)
    assert [r.run_id for r in limited] == ["run-2", "run-1"]


@pytest.mark.asyncio
async def test_delete_run_cascades(temp_db):
    repo = temp_db
    await repo.create_run("run-1", "master", STARTED)
    await repo.record_job("run-1", make_job())

    assert await repo.delete_run("run-1") is True
    assert await repo.get_run("run-1") is None
    assert await repo.delete_run("run-1") is False

    conn = await repo._get_connection()
    cursor = await conn.execute("SELECT COUNT(*) FROM steps")
    assert (await cursor.fetchone())[0] == 0
