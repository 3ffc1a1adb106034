"""
Matrix expansion: turns job templates into concrete job instances.
"""

from collections.abc import Iterable, Mapping
from dataclasses import replace
from string import Template

from pipeline_common.errors import ConfigurationError
from pipeline_common.models import JobInstance, JobTemplate

JOB_ID_VAR = "PIPELINE_JOB_ID"
JOB_NAME_VAR = "PIPELINE_JOB_NAME"
VARIANT_VAR = "PIPELINE_VARIANT"


def _instance_id(template: JobTemplate, variant: str | None) -> str:
    return template.name if variant is None else f"{template.name}.{variant}"


def resolve_container_image(
    image: str | None, bindings: Mapping[str, str], job_id: str
) -> str | None:
    """
    Substitute $name / ${name} placeholders in a container image.

    Only the matrix entry's own bindings are consulted.

    Raises:
        ConfigurationError: If a placeholder is malformed or unbound
    """
    if image is None:
        return None
    try:
        return Template(image).substitute(bindings)
    except KeyError as e:
        raise ConfigurationError(
            f"Job {job_id}: container image {image!r} references undefined "
            f"matrix variable {e.args[0]!r}"
        ) from e
    except ValueError as e:
        raise ConfigurationError(
            f"Job {job_id}: malformed placeholder in container image {image!r}: {e}"
        ) from e


def expand(
    template: JobTemplate, run_variables: Mapping[str, str] | None = None
) -> list[JobInstance]:
    """
    Expand a template into one instance per matrix variant.

    Variants keep their declared order. An empty matrix yields exactly one
    instance. Environment precedence, highest last: engine job variables,
    run variables, template variables, matrix entry variables.
    """
    variants: list[tuple[str | None, Mapping[str, str]]]
    if template.matrix:
        variants = list(template.matrix.items())
    else:
        variants = [(None, {})]

    instances = []
    for variant, bindings in variants:
        job_id = _instance_id(template, variant)

        env: dict[str, str] = {
            JOB_ID_VAR: job_id,
            JOB_NAME_VAR: template.name,
            VARIANT_VAR: variant or "",
        }
        env.update(run_variables or {})
        env.update(template.variables)
        env.update(bindings)

        platform = replace(
            template.platform,
            container_image=resolve_container_image(
                template.platform.container_image, bindings, job_id
            ),
        )

        instances.append(
            JobInstance(
                id=job_id,
                template_name=template.name,
                variant=variant,
                timeout_seconds=template.timeout_seconds,
                platform=platform,
                env=env,
                steps=tuple(template.steps),
            )
        )

    return instances


def expand_all(
    templates: Iterable[JobTemplate], run_variables: Mapping[str, str] | None = None
) -> list[JobInstance]:
    """
    Expand every template and flatten the instances into one dispatch list.

    Raises:
        ConfigurationError: If any template fails to expand or two
            instances end up with the same id
    """
    instances: list[JobInstance] = []
    seen: set[str] = set()

    for template in templates:
        for instance in expand(template, run_variables):
            if instance.id in seen:
                raise ConfigurationError(f"Duplicate job instance id: {instance.id}")
            seen.add(instance.id)
            instances.append(instance)

    return instances
