"""
Command-line entrypoint for running a pipeline document.

Usage:
    python -m pipeline_engine DOCUMENT [OPTIONS]
    pipeline-run DOCUMENT [OPTIONS]  (after pip install)

Environment Variables:
    PIPELINE_BRANCH: Branch of the change (default: none, required)
    PIPELINE_MAX_CONCURRENCY: Number of parallel job slots (default: 2)
    PIPELINE_PROVISIONER: "local" or "docker" (default: local)
    PIPELINE_OUTPUT_LIMIT: Characters of output kept per step (default: 65536)
    PIPELINE_TEARDOWN_GRACE: Seconds allowed to tear a job down (default: 10.0)
    PIPELINE_DB_PATH: SQLite run history database (default: no history)
    PIPELINE_CONTAINER_PREFIX: Container name prefix (default: pipeline_)
    PIPELINE_DEFAULT_IMAGE: Image for container jobs without one (default: python:3.12-slim)
    PIPELINE_WORKSPACE: Directory steps run in (default: current directory)
    PIPELINE_POOL_IMAGES: Comma-separated pool images this host stands in for
        (default: any for local; default,ubuntu-latest for docker)
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys

from pipeline_common.errors import ConfigurationError
from pipeline_common.models import ChangeContext, RunResult
from pipeline_persistence.sqlite_repository import SQLiteRunRepository

from .container_manager import (
    LINUX_POOL_IMAGES,
    ContainerManager,
    DockerExecutor,
    DockerProvisioner,
)
from .coordinator import RunCoordinator
from .document import load_document
from .executor import DEFAULT_OUTPUT_LIMIT, ScriptExecutor, SubprocessExecutor
from .provisioner import LocalProvisioner, Provisioner
from .scheduler import JobScheduler

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CANCELED = 130

# Host variables visible to every local job unless the document overrides them
INHERITED_HOST_VARIABLES = ("PATH", "HOME", "LANG")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Pipeline Engine - run a pipeline document for one change",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Note: Command-line arguments override environment variables.

Examples:
  # Run for a change on master touching two files
  pipeline-run pipeline.yml --branch master --changed-path src/a.c --changed-path docs/b.md

  # Run container jobs with Docker, three at a time
  pipeline-run pipeline.yml --branch master --provisioner docker --max-concurrency 3

  # Keep run history and print the result as JSON
  pipeline-run pipeline.yml --branch master --db-path runs.db --json
        """,
    )

    parser.add_argument("document", help="Path to the pipeline document (YAML)")
    parser.add_argument(
        "--branch",
        type=str,
        default=None,
        help="Branch of the change (default: PIPELINE_BRANCH env)",
    )
    parser.add_argument(
        "--changed-path",
        dest="changed_paths",
        action="append",
        default=[],
        help="Path changed by the change; repeat for several (none: always trigger)",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Parallel job slots (default: PIPELINE_MAX_CONCURRENCY env or 2)",
    )
    parser.add_argument(
        "--provisioner",
        choices=["local", "docker"],
        default=None,
        help="Where jobs run (default: PIPELINE_PROVISIONER env or local)",
    )
    parser.add_argument(
        "--output-limit",
        type=int,
        default=None,
        help="Characters of output kept per step (default: PIPELINE_OUTPUT_LIMIT env or 65536)",
    )
    parser.add_argument(
        "--teardown-grace",
        type=float,
        default=None,
        help="Seconds allowed to tear a job down (default: PIPELINE_TEARDOWN_GRACE env or 10.0)",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="SQLite database for run history (default: PIPELINE_DB_PATH env, none if unset)",
    )
    parser.add_argument(
        "--container-prefix",
        type=str,
        default=None,
        help="Container name prefix (default: PIPELINE_CONTAINER_PREFIX env or pipeline_)",
    )
    parser.add_argument(
        "--default-image",
        type=str,
        default=None,
        help="Image for container jobs without one (default: PIPELINE_DEFAULT_IMAGE env or python:3.12-slim)",
    )
    parser.add_argument(
        "--workspace",
        type=str,
        default=None,
        help="Directory steps run in (default: PIPELINE_WORKSPACE env or current directory)",
    )
    parser.add_argument(
        "--pool-image",
        dest="pool_images",
        action="append",
        default=None,
        help="Pool image this host stands in for; repeat for several (default: PIPELINE_POOL_IMAGES env)",
    )
    parser.add_argument(
        "--json",
        dest="json_mode",
        action="store_true",
        help="Print the run result as JSON",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def _positive_number(cli_value, env_name: str, default, cast):
    """Resolve a positive number from CLI, then environment, then default."""
    if cli_value is not None:
        if cli_value <= 0:
            logger.warning(f"Invalid value {cli_value} for {env_name}, using default {default}")
            return default
        return cli_value

    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {env_name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {env_name}={value}, using default {default}")
        return default
    return value


def get_max_concurrency(args: argparse.Namespace) -> int:
    return _positive_number(args.max_concurrency, "PIPELINE_MAX_CONCURRENCY", 2, int)


def get_output_limit(args: argparse.Namespace) -> int:
    return _positive_number(
        args.output_limit, "PIPELINE_OUTPUT_LIMIT", DEFAULT_OUTPUT_LIMIT, int
    )


def get_teardown_grace(args: argparse.Namespace) -> float:
    return _positive_number(args.teardown_grace, "PIPELINE_TEARDOWN_GRACE", 10.0, float)


def get_branch(args: argparse.Namespace) -> str | None:
    return args.branch or os.environ.get("PIPELINE_BRANCH")


def get_provisioner_kind(args: argparse.Namespace) -> str:
    kind = args.provisioner or os.environ.get("PIPELINE_PROVISIONER", "local")
    if kind not in ("local", "docker"):
        logger.warning(f"Invalid PIPELINE_PROVISIONER={kind}, using local")
        return "local"
    return kind


def get_database_path(args: argparse.Namespace) -> str | None:
    if args.db_path:
        return args.db_path
    return os.environ.get("PIPELINE_DB_PATH")


def get_container_prefix(args: argparse.Namespace) -> str:
    if args.container_prefix is not None:
        return args.container_prefix
    return os.environ.get("PIPELINE_CONTAINER_PREFIX", "pipeline_")


def get_default_image(args: argparse.Namespace) -> str:
    if args.default_image is not None:
        return args.default_image
    return os.environ.get("PIPELINE_DEFAULT_IMAGE", "python:3.12-slim")


def get_workspace(args: argparse.Namespace) -> str:
    return args.workspace or os.environ.get("PIPELINE_WORKSPACE") or os.getcwd()


def get_pool_images(args: argparse.Namespace) -> list[str] | None:
    if args.pool_images:
        return args.pool_images
    raw = os.environ.get("PIPELINE_POOL_IMAGES")
    if not raw:
        return None
    return [image.strip() for image in raw.split(",") if image.strip()] or None


def get_run_variables(provisioner_kind: str) -> dict[str, str]:
    """
    Host variables jobs inherit at the lowest precedence.

    Container jobs inherit nothing so that the image's own PATH and HOME
    stay in effect.
    """
    if provisioner_kind != "local":
        return {}
    return {
        name: os.environ[name] for name in INHERITED_HOST_VARIABLES if name in os.environ
    }


def create_backend(args: argparse.Namespace) -> tuple[Provisioner, ScriptExecutor]:
    """Build the provisioner/executor pair selected by configuration."""
    workspace = get_workspace(args)
    pool_images = get_pool_images(args)
    if get_provisioner_kind(args) == "docker":
        container_manager = ContainerManager(container_name_prefix=get_container_prefix(args))
        provisioner = DockerProvisioner(
            workspace=workspace,
            default_image=get_default_image(args),
            container_manager=container_manager,
            pool_images=pool_images if pool_images is not None else LINUX_POOL_IMAGES,
        )
        return provisioner, DockerExecutor(container_manager)
    return LocalProvisioner(workspace=workspace, pool_images=pool_images), SubprocessExecutor()


def exit_code_for(result: RunResult) -> int:
    if result.status in ("success", "skipped"):
        return EXIT_SUCCESS
    if result.status == "canceled":
        return EXIT_CANCELED
    return EXIT_FAILED


def print_result(result: RunResult, json_mode: bool) -> None:
    """Print a run result for humans or as JSON."""
    if json_mode:
        print(json.dumps(result.to_dict(), indent=2))
        return

    print(f"Run {result.run_id}: {result.status.upper()}")
    for job in result.job_results:
        print(f"  {job.job_id:<40} {job.status}")
        for step in job.step_results:
            exit_code = "-" if step.exit_code is None else step.exit_code
            print(f"    {step.status:<12} {exit_code!s:>4}  {step.display_name}")


async def run_pipeline(args: argparse.Namespace) -> RunResult:
    """
    Load the document, wire up the engine and run it.

    SIGINT/SIGTERM cancel the run; jobs are torn down before this returns.
    """
    branch = get_branch(args)
    if not branch:
        raise ConfigurationError("No branch given (use --branch or PIPELINE_BRANCH)")

    document = load_document(args.document)
    provisioner, executor = create_backend(args)
    scheduler = JobScheduler(
        provisioner,
        executor,
        max_concurrency=get_max_concurrency(args),
        output_limit=get_output_limit(args),
        teardown_grace=get_teardown_grace(args),
    )

    repository = None
    db_path = get_database_path(args)
    if db_path:
        repository = SQLiteRunRepository(db_path)
        await repository.initialize()
        logger.info(f"Recording run history in {db_path}")

    coordinator = RunCoordinator(
        scheduler, sink=repository, run_variables=get_run_variables(get_provisioner_kind(args))
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, coordinator.cancel)

    try:
        change = ChangeContext(branch=branch, changed_paths=frozenset(args.changed_paths))
        return await coordinator.run(document, change)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        if repository is not None:
            await repository.close()


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint.

    Returns:
        Exit code (0 success or skipped, 1 failed, 2 configuration error,
        130 canceled)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        result = asyncio.run(run_pipeline(args))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIGURATION_ERROR
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return EXIT_FAILED

    print_result(result, args.json_mode)
    return exit_code_for(result)


if __name__ == "__main__":
    sys.exit(main())
