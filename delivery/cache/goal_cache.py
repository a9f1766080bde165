# delivery/cache/goal_cache.py
"""
Goal caches.

A goal cache stores files produced by one goal execution so a later goal
of the same commit can restore them into its own project copy. Entries
are keyed by commit sha and classifier.
"""

import os
import re
import tarfile
import tempfile
from typing import List, Optional

from ..errors import NoCacheEntry
from ..fulfillment.context import GoalInvocation
from ..logging import get_logger
from ..settings import settings

logger = get_logger(__name__)

DEFAULT_CLASSIFIER = "default"


def sanitize_classifier(classifier: str) -> str:
    """
    Make a classifier usable as a single path segment.

    Every character outside [-.0-9A-Za-z_+] becomes "_" and leading dots
    are dropped so the result is never hidden.
    """
    return re.sub(r"^\.+", "", re.sub(r"[^-.0-9A-Za-z_+]", "_", classifier))


class GoalCache:
    """Cache interface used by the cache project listeners."""

    def put(self, invocation: GoalInvocation, project_dir: str, files: List[str],
            classifier: Optional[str] = None) -> None:
        raise NotImplementedError

    def retrieve(self, invocation: GoalInvocation, project_dir: str, classifier: Optional[str] = None) -> None:
        """
        Raises:
            NoCacheEntry: Nothing is cached for the classifier
        """
        raise NotImplementedError

    def remove(self, invocation: GoalInvocation, classifier: Optional[str] = None) -> None:
        raise NotImplementedError


class NoOpGoalCache(GoalCache):
    """Cache that stores nothing and always misses."""

    def put(self, invocation: GoalInvocation, project_dir: str, files: List[str],
            classifier: Optional[str] = None) -> None:
        logger.debug("cache_put_noop", goal=invocation.unique_name, classifier=classifier)

    def retrieve(self, invocation: GoalInvocation, project_dir: str, classifier: Optional[str] = None) -> None:
        raise NoCacheEntry("No cache entry")

    def remove(self, invocation: GoalInvocation, classifier: Optional[str] = None) -> None:
        logger.debug("cache_remove_noop", goal=invocation.unique_name, classifier=classifier)


class FileSystemGoalCache(GoalCache):
    """
    Cache keeping one tar.gz archive per commit and classifier on disk.

    Layout: <path>/<sanitized classifier>/<sha>-cache.tar.gz

    Args:
        path: Cache root directory
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.cache_path

    def archive_path(self, invocation: GoalInvocation, classifier: Optional[str] = None) -> str:
        directory = sanitize_classifier(classifier or DEFAULT_CLASSIFIER) or DEFAULT_CLASSIFIER
        return os.path.join(self.path, directory, f"{invocation.goal.sha}-cache.tar.gz")

    def put(self, invocation: GoalInvocation, project_dir: str, files: List[str],
            classifier: Optional[str] = None) -> None:
        archive = self.archive_path(invocation, classifier)
        os.makedirs(os.path.dirname(archive), exist_ok=True)

        fd, partial = tempfile.mkstemp(prefix=".cache-", suffix=".tar.gz", dir=os.path.dirname(archive))
        os.close(fd)
        try:
            with tarfile.open(partial, "w:gz") as tar:
                for name in files:
                    source = os.path.join(project_dir, name)
                    if not os.path.exists(source):
                        logger.warning("cache_file_missing", goal=invocation.unique_name, file=name)
                        continue
                    tar.add(source, arcname=name)
            # Readers only ever see complete archives
            os.replace(partial, archive)
        except Exception:
            if os.path.exists(partial):
                os.unlink(partial)
            raise

        logger.info("cache_put", goal=invocation.unique_name, classifier=classifier, files=len(files),
                    archive=archive)
        invocation.progress_log.write(f"Cached {len(files)} file(s) as '{classifier or DEFAULT_CLASSIFIER}'")

    def retrieve(self, invocation: GoalInvocation, project_dir: str, classifier: Optional[str] = None) -> None:
        archive = self.archive_path(invocation, classifier)
        if not os.path.exists(archive):
            raise NoCacheEntry("No cache entry")

        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(project_dir, filter="data")

        logger.info("cache_restored", goal=invocation.unique_name, classifier=classifier, archive=archive)
        invocation.progress_log.write(f"Restored cache '{classifier or DEFAULT_CLASSIFIER}'")

    def remove(self, invocation: GoalInvocation, classifier: Optional[str] = None) -> None:
        archive = self.archive_path(invocation, classifier)
        if os.path.exists(archive):
            os.unlink(archive)
            logger.info("cache_removed", goal=invocation.unique_name, classifier=classifier)
