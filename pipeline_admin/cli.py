"""
Admin CLI for inspecting recorded pipeline runs.

Provides commands to list, show and delete runs kept in the run history
database written by `pipeline-run --db-path`.
"""

import asyncio
import json
import os
import sys
from datetime import datetime
from pathlib import Path

import click

from pipeline_common.models import RunResult
from pipeline_persistence.sqlite_repository import SQLiteRunRepository

STATUS_MARKS = {
    "success": "✓",
    "failed": "✗",
    "timed_out": "⏱",
    "canceled": "⊘",
    "skipped": "⏭",
    "interrupted": "!",
}


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("PIPELINE_DB_PATH", str(Path.home() / ".pipeline" / "runs.db"))


def get_repository() -> SQLiteRunRepository:
    """Get the repository instance."""
    db_path = get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return SQLiteRunRepository(db_path)


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def format_time(value: datetime | None) -> str:
    """Format a timestamp to human-readable format."""
    if value is None:
        return "N/A"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def format_status(status: str) -> str:
    return f"{STATUS_MARKS.get(status, '-')} {status}"


@click.group()
def cli():
    """Pipeline Admin - Inspect recorded pipeline runs."""
    pass


@cli.group()
def runs():
    """Manage recorded runs."""
    pass


@runs.command("list")
@click.option("--limit", type=int, default=None, help="Show at most this many runs")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def runs_list(limit: int | None, json_output: bool):
    """List recorded runs, newest first."""

    async def list_runs() -> list[RunResult]:
        repo = get_repository()
        await repo.initialize()
        try:
            return await repo.list_runs(limit=limit)
        finally:
            await repo.close()

    results = run_async(list_runs())

    if json_output:
        click.echo(json.dumps([r.to_summary_dict() for r in results], indent=2))
        return

    if not results:
        click.echo("No runs found.")
        return

    click.echo(f"{'RUN ID':<38} {'STATUS':<14} {'BRANCH':<20} {'STARTED':<20} {'JOBS':<5}")
    click.echo("-" * 100)
    for r in results:
        click.echo(
            f"{r.run_id:<38} {format_status(r.status):<14} {(r.branch or '-'):<20} "
            f"{format_time(r.started_at):<20} {len(r.job_results):<5}"
        )


@runs.command("show")
@click.argument("run_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--output", "show_output", is_flag=True, help="Include captured step output")
def runs_show(run_id: str, json_output: bool, show_output: bool):
    """Show one run with its jobs and steps."""

    async def get_run() -> RunResult | None:
        repo = get_repository()
        await repo.initialize()
        try:
            return await repo.get_run(run_id)
        finally:
            await repo.close()

    result = run_async(get_run())
    if result is None:
        click.echo(f"Error: Run {run_id} not found", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.echo(f"Run:      {result.run_id}")
    click.echo(f"Status:   {format_status(result.status)}")
    click.echo(f"Branch:   {result.branch or '-'}")
    click.echo(f"Started:  {format_time(result.started_at)}")
    click.echo(f"Finished: {format_time(result.finished_at)}")

    for job in result.job_results:
        click.echo("")
        click.echo(f"  {job.job_id}  {format_status(job.status)}")
        for step in job.step_results:
            exit_code = "-" if step.exit_code is None else str(step.exit_code)
            click.echo(
                f"    {format_status(step.status):<14} exit={exit_code:<4} "
                f"{step.duration_ms:>7}ms  {step.display_name}"
            )
            if show_output and step.output:
                if step.truncated:
                    click.echo("      ... (output truncated)")
                for line in step.output.rstrip("\n").splitlines():
                    click.echo(f"      {line}")


@runs.command("delete")
@click.argument("run_id")
@click.option("--yes", is_flag=True, help="Skip confirmation")
def runs_delete(run_id: str, yes: bool):
    """Delete a run and all its job and step records."""
    if not yes:
        click.confirm(f"Delete run {run_id}?", abort=True)

    async def delete() -> bool:
        repo = get_repository()
        await repo.initialize()
        try:
            return await repo.delete_run(run_id)
        finally:
            await repo.close()

    if not run_async(delete()):
        click.echo(f"Error: Run {run_id} not found", err=True)
        sys.exit(1)

    click.echo(f"✓ Run {run_id} deleted")


if __name__ == "__main__":
    cli()
