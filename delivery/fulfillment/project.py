# delivery/fulfillment/project.py
"""
Project loading.

A project loader provides the working copy a goal executes against for
the duration of a `with` block.
"""

import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Iterator, List, Optional

from ..errors import DeliveryError
from ..goals.models import Goal
from ..logging import get_logger

logger = get_logger(__name__)


class ProjectLoader:
    """Base project loader. load() returns a context manager yielding the project path."""

    def load(self, goal: Goal):
        raise NotImplementedError


class LocalProjectLoader(ProjectLoader):
    """
    Serves projects from a local directory.

    With per_repo=True each repository lives under <root>/<owner>/<name>.
    """

    def __init__(self, root: str, per_repo: bool = False):
        self.root = root
        self.per_repo = per_repo

    @contextmanager
    def load(self, goal: Goal) -> Iterator[str]:
        path = self.root
        if self.per_repo:
            path = os.path.join(self.root, goal.repo.owner, goal.repo.name)
        os.makedirs(path, exist_ok=True)
        yield path


class GitProjectLoader(ProjectLoader):
    """
    Clones the goal's repository at its sha into a temporary directory.

    Args:
        url_template: Clone URL, formatted with owner, name and provider_id
        clone_root: Parent directory for clones (system temp dir by default)
        git_binary: git executable
    """

    def __init__(
        self,
        url_template: str = "https://github.com/{owner}/{name}.git",
        clone_root: Optional[str] = None,
        git_binary: str = "git",
    ):
        self.url_template = url_template
        self.clone_root = clone_root
        self.git_binary = git_binary

    def _git(self, args: List[str]) -> None:
        try:
            subprocess.run(
                [self.git_binary] + args,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            raise DeliveryError(f"git {args[0]} failed: {e.stderr.strip()}") from e
        except OSError as e:
            raise DeliveryError(f"git {args[0]} failed: {e}") from e

    @contextmanager
    def load(self, goal: Goal) -> Iterator[str]:
        repo = goal.repo
        url = self.url_template.format(owner=repo.owner, name=repo.name, provider_id=repo.provider_id)
        path = tempfile.mkdtemp(prefix=f"{repo.name}-", dir=self.clone_root)
        try:
            logger.info("project_clone", repo=repo.slug, sha=goal.sha, path=path)
            self._git(["clone", "--quiet", url, path])
            self._git(["-C", path, "checkout", "--quiet", goal.sha])
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)
