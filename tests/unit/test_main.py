"""
Unit tests for the pipeline-run entrypoint.

Configuration getters are tested in isolation; main() is exercised end to
end with the local provisioner and the host shell.
"""

import json
import textwrap

import pytest

from pipeline_common.models import RunResult
from pipeline_engine.container_manager import LINUX_POOL_IMAGES
from pipeline_engine.__main__ import (
    EXIT_CANCELED,
    EXIT_CONFIGURATION_ERROR,
    EXIT_FAILED,
    EXIT_SUCCESS,
    exit_code_for,
    create_backend,
    get_branch,
    get_max_concurrency,
    get_pool_images,
    get_provisioner_kind,
    get_run_variables,
    get_teardown_grace,
    main,
    parse_args,
)

CONFIG_VARS = [
    "PIPELINE_BRANCH",
    "PIPELINE_MAX_CONCURRENCY",
    "PIPELINE_PROVISIONER",
    "PIPELINE_OUTPUT_LIMIT",
    "PIPELINE_TEARDOWN_GRACE",
    "PIPELINE_DB_PATH",
    "PIPELINE_WORKSPACE",
    "PIPELINE_POOL_IMAGES",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in CONFIG_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_document(tmp_path):
    def write(body: str):
        path = tmp_path / "pipeline.yml"
        path.write_text(textwrap.dedent(body))
        return path

    return write


class TestConfiguration:
    """Test suite for CLI/environment configuration resolution."""

    def test_defaults(self):
        args = parse_args(["pipeline.yml"])

        assert get_max_concurrency(args) == 2
        assert get_teardown_grace(args) == 10.0
        assert get_provisioner_kind(args) == "local"
        assert get_branch(args) is None

    def test_environment_fallback(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_MAX_CONCURRENCY", "4")
        monkeypatch.setenv("PIPELINE_BRANCH", "master")
        monkeypatch.setenv("PIPELINE_PROVISIONER", "docker")

        args = parse_args(["pipeline.yml"])

        assert get_max_concurrency(args) == 4
        assert get_branch(args) == "master"
        assert get_provisioner_kind(args) == "docker"

    def test_cli_overrides_environment(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_MAX_CONCURRENCY", "4")

        args = parse_args(["pipeline.yml", "--max-concurrency", "1"])

        assert get_max_concurrency(args) == 1

    @pytest.mark.parametrize("raw", ["zero", "0", "-3"])
    def test_invalid_concurrency_uses_default(self, monkeypatch, raw):
        monkeypatch.setenv("PIPELINE_MAX_CONCURRENCY", raw)

        assert get_max_concurrency(parse_args(["pipeline.yml"])) == 2

    def test_invalid_provisioner_uses_local(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_PROVISIONER", "kubernetes")

        assert get_provisioner_kind(parse_args(["pipeline.yml"])) == "local"

    def test_pool_images(self, monkeypatch):
        assert get_pool_images(parse_args(["pipeline.yml"])) is None

        monkeypatch.setenv("PIPELINE_POOL_IMAGES", "ubuntu-latest, fedora-latest,")
        assert get_pool_images(parse_args(["pipeline.yml"])) == ["ubuntu-latest", "fedora-latest"]

        args = parse_args(["pipeline.yml", "--pool-image", "macOS-latest"])
        assert get_pool_images(args) == ["macOS-latest"]

    def test_backend_pool_images(self, tmp_path):
        docker, _ = create_backend(
            parse_args(["pipeline.yml", "--provisioner", "docker", "--workspace", str(tmp_path)])
        )
        local, _ = create_backend(parse_args(["pipeline.yml", "--workspace", str(tmp_path)]))
        configured, _ = create_backend(
            parse_args(["pipeline.yml", "--workspace", str(tmp_path), "--pool-image", "default"])
        )

        assert docker.pool_images == frozenset(LINUX_POOL_IMAGES)
        assert local.pool_images is None
        assert configured.pool_images == frozenset({"default"})

    def test_host_variables_only_reach_local_jobs(self, monkeypatch):
        monkeypatch.setenv("PATH", "/host/only/bin")

        assert get_run_variables("docker") == {}
        assert get_run_variables("local")["PATH"] == "/host/only/bin"


@pytest.mark.parametrize(
    "status,code",
    [
        ("success", EXIT_SUCCESS),
        ("skipped", EXIT_SUCCESS),
        ("failed", EXIT_FAILED),
        ("canceled", EXIT_CANCELED),
    ],
)
def test_exit_code_for(status, code):
    assert exit_code_for(RunResult(run_id="r", status=status)) == code


class TestMain:
    """Test suite for main() running real scripts on the host."""

    def test_successful_run(self, write_document, tmp_path, capsys):
        document = write_document(
            """
            trigger:
              branches: [master]
            jobs:
              - name: build
                matrix:
                  a: {GREETING: hello}
                  b: {GREETING: bonjour}
                steps:
                  - script: echo "$GREETING from $PIPELINE_JOB_ID"
            """
        )

        code = main([str(document), "--branch", "master", "--workspace", str(tmp_path), "--json"])

        assert code == EXIT_SUCCESS
        result = json.loads(capsys.readouterr().out)
        assert result["status"] == "success"
        outputs = [job["steps"][0]["output"] for job in result["jobs"]]
        assert outputs == ["hello from build.a\n", "bonjour from build.b\n"]

    def test_failed_run(self, write_document, tmp_path, capsys):
        document = write_document(
            """
            trigger:
              branches: [master]
            jobs:
              - name: build
                steps:
                  - script: exit 4
                  - script: echo never
            """
        )

        code = main([str(document), "--branch", "master", "--workspace", str(tmp_path)])

        assert code == EXIT_FAILED
        out = capsys.readouterr().out
        assert "FAILED" in out
        assert "skipped" in out

    def test_skipped_run(self, write_document, tmp_path):
        document = write_document(
            """
            trigger:
              branches: [master]
              exclude_paths: ["docs/*"]
            jobs:
              - name: build
                steps:
                  - script: exit 1
            """
        )

        code = main(
            [
                str(document),
                "--branch",
                "master",
                "--changed-path",
                "docs/readme.md",
                "--workspace",
                str(tmp_path),
            ]
        )

        assert code == EXIT_SUCCESS

    def test_missing_branch(self, write_document):
        document = write_document(
            """
            trigger:
              branches: [master]
            jobs:
              - name: build
                steps:
                  - script: "true"
            """
        )

        assert main([str(document)]) == EXIT_CONFIGURATION_ERROR

    def test_invalid_document(self, write_document):
        document = write_document("jobs: []\n")

        assert main([str(document), "--branch", "master"]) == EXIT_CONFIGURATION_ERROR

    def test_run_history_is_recorded(self, write_document, tmp_path):
        document = write_document(
            """
            trigger:
              branches: [master]
            jobs:
              - name: build
                steps:
                  - script: "true"
            """
        )
        db_path = tmp_path / "runs.db"

        code = main(
            [str(document), "--branch", "master", "--workspace", str(tmp_path), "--db-path", str(db_path)]
        )

        assert code == EXIT_SUCCESS
        assert db_path.exists()

    def test_unavailable_pool_image_fails_the_job(self, write_document, tmp_path, capsys):
        document = write_document(
            """
            trigger:
              branches: [master]
            jobs:
              - name: Darwin
                pool_image: macOS-latest
                steps:
                  - script: echo never
            """
        )

        code = main(
            [
                str(document),
                "--branch",
                "master",
                "--workspace",
                str(tmp_path),
                "--pool-image",
                "ubuntu-latest",
                "--json",
            ]
        )

        assert code == EXIT_FAILED
        result = json.loads(capsys.readouterr().out)
        job = result["jobs"][0]
        assert job["status"] == "failed"
        assert "macOS-latest" in job["steps"][0]["output"]
        assert job["steps"][-1]["status"] == "skipped"
