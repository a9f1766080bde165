# delivery/container/util.py
"""
Helpers shared by the Docker and Kubernetes container runners.
"""

import os
import shutil
from typing import Dict, List

from ..fulfillment.progress import ProgressLog
from ..goals.models import Goal
from ..logging import StructuredLogger

NAME_PREFIX = "sdm-"


def goal_env_vars(goal: Goal) -> List[Dict[str, str]]:
    """
    Identity environment variables for a container goal.

    Variables with empty values are dropped.
    """
    env = [
        {"name": "ATOMIST_SLUG", "value": goal.repo.slug},
        {"name": "ATOMIST_OWNER", "value": goal.repo.owner},
        {"name": "ATOMIST_REPO", "value": goal.repo.name},
        {"name": "ATOMIST_SHA", "value": goal.sha},
        {"name": "ATOMIST_BRANCH", "value": goal.branch},
        {"name": "ATOMIST_VERSION", "value": goal.push.version or ""},
        {"name": "ATOMIST_GOAL_SET_ID", "value": goal.goal_set_id},
        {"name": "ATOMIST_GOAL", "value": goal.unique_name},
    ]
    return [e for e in env if e["value"]]


def goal_short_name(goal: Goal) -> str:
    """Lower-cased unique name without its location suffix."""
    return goal.unique_name.split("#")[0].lower()


def name_suffix(goal: Goal) -> str:
    return f"-{goal.goal_set_id[:7]}-{goal_short_name(goal)}"


def container_name(goal: Goal, container: str) -> str:
    return f"{NAME_PREFIX}{container}{name_suffix(goal)}"


def network_name(goal: Goal, unique: str) -> str:
    return f"{NAME_PREFIX}network-{unique}{name_suffix(goal)}"


def _kind(path: str) -> str:
    if os.path.islink(path):
        return "link"
    return "dir" if os.path.isdir(path) else "file"


def _remove(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.unlink(path)


def _remove_stale(src: str, dest: str, missing: bool) -> None:
    """
    Remove entries of `dest` that do not match `src`.

    With missing=False only entries the copy cannot overwrite (a different
    kind in `src`, or symlinks) are removed; with missing=True only entries
    absent from `src`.
    """
    with os.scandir(dest) as entries:
        stale = list(entries)
    for entry in stale:
        counterpart = os.path.join(src, entry.name)
        if not os.path.lexists(counterpart):
            if missing:
                _remove(entry.path)
            continue
        kind = _kind(entry.path)
        if kind != _kind(counterpart) or kind == "link":
            if not missing:
                _remove(entry.path)
        elif kind == "dir":
            _remove_stale(counterpart, entry.path, missing)


def copy_project(src: str, dest: str) -> None:
    """
    Make `dest` an exact copy of `src`.

    Files are copied over `dest` first; entries deleted in `src` are removed
    from `dest` only once the copy succeeded, so a failed copy never leaves
    `dest` empty. `dest` itself is never replaced (it may be a mount point).

    Raises:
        OSError: Copying failed
    """
    os.makedirs(dest, exist_ok=True)
    _remove_stale(src, dest, missing=False)
    shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    _remove_stale(src, dest, missing=True)


def log_and_write(
    logger: StructuredLogger,
    level: int,
    event: str,
    message: str,
    progress_log: ProgressLog,
    **kwargs,
) -> None:
    """Record a message as a structured log event and in the goal progress log."""
    logger.log(level, event, detail=message, **kwargs)
    progress_log.write(message)
