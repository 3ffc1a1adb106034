"""
SQLite implementation of the run repository.

Uses aiosqlite for async operations. Can be easily replaced with
PostgreSQL/MySQL implementations of the same interface.
"""

from datetime import datetime

import aiosqlite

from pipeline_common.models import JobResult, RunResult, StepResult
from pipeline_common.repository import RunRepository


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRunRepository(RunRepository):
    """
    SQLite-based run history.

    Uses a single database file with three tables:
    - runs: One row per run with its verdict
    - jobs: One row per job instance, foreign key to runs
    - steps: One row per step result, foreign key to jobs
    """

    def __init__(self, db_path: str = "pipeline_runs.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """Create database tables if they don't exist."""
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                branch TEXT,
                started_at TEXT,
                finished_at TEXT
            )
        """)

        # position keeps jobs in dispatch order
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                run_id TEXT NOT NULL,
                job_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                status TEXT NOT NULL,
                template_name TEXT,
                variant TEXT,
                started_at TEXT,
                finished_at TEXT,
                PRIMARY KEY (run_id, job_id),
                FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS steps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                job_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                display_name TEXT NOT NULL,
                status TEXT NOT NULL,
                exit_code INTEGER,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                output TEXT NOT NULL DEFAULT '',
                truncated INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (run_id, job_id) REFERENCES jobs(run_id, job_id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_steps_run_job
            ON steps(run_id, job_id)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def create_run(
        self, run_id: str, branch: str | None, started_at: datetime
    ) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "INSERT INTO runs (id, status, branch, started_at) VALUES (?, ?, ?, ?)",
            (run_id, "running", branch, started_at.isoformat()),
        )
        await conn.commit()

    async def record_job(self, run_id: str, result: JobResult) -> None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM jobs WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        position = row[0] if row else 0

        # Re-recording a job replaces its steps
        await conn.execute(
            "DELETE FROM jobs WHERE run_id = ? AND job_id = ?", (run_id, result.job_id)
        )
        await conn.execute(
            """
            INSERT INTO jobs (run_id, job_id, position, status, template_name, variant, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                result.job_id,
                position,
                result.status,
                result.template_name,
                result.variant,
                _iso(result.started_at),
                _iso(result.finished_at),
            ),
        )
        await conn.executemany(
            """
            INSERT INTO steps (run_id, job_id, step_index, display_name, status, exit_code, duration_ms, output, truncated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    run_id,
                    result.job_id,
                    step.index,
                    step.display_name,
                    step.status,
                    step.exit_code,
                    step.duration_ms,
                    step.output,
                    1 if step.truncated else 0,
                )
                for step in result.step_results
            ],
        )
        await conn.commit()

    async def complete_run(self, result: RunResult) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO runs (id, status, branch, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET status = excluded.status, finished_at = excluded.finished_at
            """,
            (
                result.run_id,
                result.status,
                result.branch,
                _iso(result.started_at),
                _iso(result.finished_at),
            ),
        )
        await conn.commit()

    async def get_run(self, run_id: str) -> RunResult | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, status, branch, started_at, finished_at FROM runs WHERE id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        return await self._build_run(row, with_steps=True)

    async def list_runs(self, limit: int | None = None) -> list[RunResult]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, status, branch, started_at, finished_at
            FROM runs
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (limit if limit is not None else -1,),
        )
        rows = await cursor.fetchall()

        # Don't load step output for listings
        return [await self._build_run(row, with_steps=False) for row in rows]

    async def delete_run(self, run_id: str) -> bool:
        conn = await self._get_connection()

        cursor = await conn.execute("DELETE FROM runs WHERE id = ?", (run_id,))
        await conn.commit()
        return cursor.rowcount > 0

    async def _build_run(self, row: tuple, with_steps: bool) -> RunResult:
        run_id, status, branch, started_at, finished_at = row
        jobs = await self._get_jobs(run_id, with_steps)
        return RunResult(
            run_id=run_id,
            status=status,
            job_results=tuple(jobs),
            branch=branch,
            started_at=_parse(started_at),
            finished_at=_parse(finished_at),
        )

    async def _get_jobs(self, run_id: str, with_steps: bool) -> list[JobResult]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT job_id, status, template_name, variant, started_at, finished_at
            FROM jobs
            WHERE run_id = ?
            ORDER BY position
            """,
            (run_id,),
        )
        rows = await cursor.fetchall()

        jobs = []
        for job_id, status, template_name, variant, started_at, finished_at in rows:
            steps = await self._get_steps(run_id, job_id) if with_steps else []
            jobs.append(
                JobResult(
                    job_id=job_id,
                    status=status,
                    step_results=tuple(steps),
                    template_name=template_name,
                    variant=variant,
                    started_at=_parse(started_at),
                    finished_at=_parse(finished_at),
                )
            )
        return jobs

    async def _get_steps(self, run_id: str, job_id: str) -> list[StepResult]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT step_index, display_name, status, exit_code, duration_ms, output, truncated
            FROM steps
            WHERE run_id = ? AND job_id = ?
            ORDER BY id
            """,
            (run_id, job_id),
        )
        rows = await cursor.fetchall()

        return [
            StepResult(
                index=index,
                display_name=display_name,
                status=status,
                exit_code=exit_code,
                duration_ms=duration_ms,
                output=output,
                truncated=bool(truncated),
            )
            for index, display_name, status, exit_code, duration_ms, output, truncated in rows
        ]
