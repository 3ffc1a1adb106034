"""
Pipeline document loading.

Documents use the engine's own neutral YAML schema:

    trigger:
      branches: [master]
      exclude_paths: ["docs/*"]
      path_policy: shallow          # or: recursive
    variables: {KEY: value}
    jobs:
      - name: Linux
        timeout_minutes: 120
        pool_image: ubuntu-latest
        container_image: ${containerImage}
        variables: {}
        matrix:
          arch: {containerImage: example/image:arch}
        steps:
          - display_name: check
            script: ./scripts/check.sh
            env: {CARGO_HOME: /tmp/cargo}
            additive: [PATH]

Any violation of the schema raises ConfigurationError.
"""

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from pipeline_common.errors import ConfigurationError
from pipeline_common.models import (
    JobTemplate,
    PipelineDocument,
    PlatformSpec,
    StepSpec,
    TriggerRule,
)

DEFAULT_TIMEOUT_MINUTES = 60
PATH_POLICIES = ("shallow", "recursive")


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{where} must be a mapping, got {type(value).__name__}")
    return value


def _string_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, list):
        raise ConfigurationError(f"{where} must be a list of strings")
    for item in value:
        if not isinstance(item, str):
            raise ConfigurationError(f"{where} must be a list of strings")
    return list(value)


def _variables(value: Any, where: str) -> dict[str, str]:
    variables = {}
    for key, item in _mapping(value, where).items():
        if isinstance(item, (Mapping, list)) or item is None:
            raise ConfigurationError(f"{where}.{key} must be a scalar value")
        if isinstance(item, bool):
            item = "true" if item else "false"
        variables[str(key)] = str(item)
    return variables


def _required_str(data: Mapping[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{where}.{key} is required and must be a string")
    return value


def parse_trigger(data: Any) -> TriggerRule:
    data = _mapping(data, "trigger")
    branches = _string_list(data.get("branches"), "trigger.branches")
    if not branches:
        raise ConfigurationError("trigger.branches must name at least one branch")

    policy = data.get("path_policy", "shallow")
    if policy not in PATH_POLICIES:
        raise ConfigurationError(
            f"trigger.path_policy must be one of {', '.join(PATH_POLICIES)}, got {policy!r}"
        )

    return TriggerRule(
        included_branches=frozenset(branches),
        excluded_paths=tuple(_string_list(data.get("exclude_paths"), "trigger.exclude_paths")),
        path_policy=policy,
    )


def parse_step(data: Any, where: str) -> StepSpec:
    data = _mapping(data, where)
    script = _required_str(data, "script", where)
    if not script.strip():
        raise ConfigurationError(f"{where}.script must not be blank")
    additive = _string_list(data.get("additive"), f"{where}.additive")
    env = _variables(data.get("env"), f"{where}.env")

    display_name = data.get("display_name")
    if display_name is not None and (not isinstance(display_name, str) or not display_name):
        raise ConfigurationError(f"{where}.display_name must be a non-empty string")

    unknown = set(additive) - set(env)
    if unknown:
        raise ConfigurationError(
            f"{where}.additive names variables without an override: {sorted(unknown)}"
        )

    return StepSpec(
        display_name=display_name or script.strip().splitlines()[0],
        script=script,
        env_overrides=env,
        additive=frozenset(additive),
    )


def parse_job(data: Any, index: int) -> JobTemplate:
    where = f"jobs[{index}]"
    data = _mapping(data, where)
    name = _required_str(data, "name", where)
    where = f"job {name}"

    timeout = data.get("timeout_minutes", DEFAULT_TIMEOUT_MINUTES)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigurationError(f"{where}.timeout_minutes must be a positive number")

    container_image = data.get("container_image")
    if container_image is not None and not isinstance(container_image, str):
        raise ConfigurationError(f"{where}.container_image must be a string")

    matrix = {
        str(variant): _variables(bindings, f"{where}.matrix.{variant}")
        for variant, bindings in _mapping(data.get("matrix"), f"{where}.matrix").items()
    }

    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigurationError(f"{where}.steps must be a non-empty list")

    return JobTemplate(
        name=name,
        platform=PlatformSpec(
            pool_image=data.get("pool_image") or "default",
            container_image=container_image,
        ),
        steps=tuple(
            parse_step(step, f"{where}.steps[{i}]") for i, step in enumerate(raw_steps)
        ),
        timeout_seconds=float(timeout) * 60,
        variables=_variables(data.get("variables"), f"{where}.variables"),
        matrix=matrix,
    )


def parse_document(data: Any) -> PipelineDocument:
    """Build a PipelineDocument from already-decoded YAML/JSON data."""
    data = _mapping(data, "document")
    raw_jobs = data.get("jobs")
    if not isinstance(raw_jobs, list) or not raw_jobs:
        raise ConfigurationError("document.jobs must be a non-empty list")

    jobs = tuple(parse_job(job, i) for i, job in enumerate(raw_jobs))
    names = [job.name for job in jobs]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate job names: {duplicates}")

    return PipelineDocument(
        trigger=parse_trigger(data.get("trigger")),
        jobs=jobs,
        variables=_variables(data.get("variables"), "variables"),
    )


def load_document(path: str | Path) -> PipelineDocument:
    """
    Load a pipeline document from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, or
            does not follow the document schema
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Pipeline document not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    return parse_document(payload)
