"""Per-step environment construction."""

from collections.abc import Mapping

from pipeline_common.models import StepSpec

# Steps run under a POSIX shell on the host or inside a container
PATH_LIST_SEPARATOR = ":"


def build_step_env(job_env: Mapping[str, str], step: StepSpec) -> dict[str, str]:
    """
    Build the isolated environment snapshot for one step.

    The job environment is copied, never mutated. Overrides replace the
    inherited value unless the variable is declared additive, in which case
    the override is prepended to it.
    """
    env = dict(job_env)
    for name, value in step.env_overrides.items():
        inherited = env.get(name)
        if name in step.additive and inherited:
            env[name] = f"{value}{PATH_LIST_SEPARATOR}{inherited}"
        else:
            env[name] = value
    return env
