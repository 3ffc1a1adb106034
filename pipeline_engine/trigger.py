"""
Trigger evaluation: decides whether a change should start a run.

Path patterns use shell-glob semantics applied per path segment, so `*`,
`?` and `[...]` never cross a `/`. Two policies are supported:

- "shallow": `docs/*` matches the immediate children of `docs/` only.
  A `**` segment matches zero or more segments when recursion is wanted.
- "recursive": additionally, a pattern that matches a directory prefix of
  a path excludes everything beneath that directory.
"""

from collections.abc import Iterable
from fnmatch import fnmatchcase

from pipeline_common.models import PathPolicy, TriggerRule

BRANCH_REF_PREFIX = "refs/heads/"


def normalize_branch(branch: str) -> str:
    """Strip a leading refs/heads/ so full refs and short names compare equal."""
    if branch.startswith(BRANCH_REF_PREFIX):
        return branch[len(BRANCH_REF_PREFIX) :]
    return branch


def _split(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part and part != "."]


def _match_segments(path_parts: list[str], pattern_parts: list[str]) -> bool:
    if not pattern_parts:
        return not path_parts

    head, rest = pattern_parts[0], pattern_parts[1:]
    if head == "**":
        return any(
            _match_segments(path_parts[i:], rest) for i in range(len(path_parts) + 1)
        )
    if not path_parts:
        return False
    return fnmatchcase(path_parts[0], head) and _match_segments(path_parts[1:], rest)


def path_matches(path: str, pattern: str, policy: PathPolicy = "shallow") -> bool:
    """
    Check a changed path against one exclude pattern.

    Args:
        path: Repository-relative path using forward slashes
        pattern: Glob pattern
        policy: "shallow" or "recursive" directory semantics

    Returns:
        True if the pattern matches the path under the given policy
    """
    path_parts = _split(path)
    pattern_parts = _split(pattern)

    if _match_segments(path_parts, pattern_parts):
        return True
    if policy == "recursive":
        # A matching ancestor directory excludes its whole subtree
        return any(
            _match_segments(path_parts[:depth], pattern_parts)
            for depth in range(1, len(path_parts))
        )
    return False


def is_excluded(path: str, rule: TriggerRule) -> bool:
    return any(path_matches(path, p, rule.path_policy) for p in rule.excluded_paths)


def evaluate(branch: str, changed_paths: Iterable[str], rule: TriggerRule) -> bool:
    """
    Decide whether a change triggers a run.

    An empty change set (unknown diff) triggers. Otherwise the run starts
    only if at least one changed path matches none of the exclude patterns.
    """
    included = {normalize_branch(b) for b in rule.included_branches}
    if normalize_branch(branch) not in included:
        return False

    paths = list(changed_paths)
    if not paths:
        return True

    return any(not is_excluded(path, rule) for path in paths)
