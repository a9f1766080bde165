# delivery/cache/listeners.py
"""
Project listeners storing and restoring goal cache entries.

cache_restore runs before a goal executes, cache_put and cache_remove
after it succeeded. All of them do nothing unless caching is enabled in
the invocation settings; cache_restore then invokes its cache-miss
fallbacks instead.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .goal_cache import GoalCache
from ..errors import NoCacheEntry
from ..fulfillment.context import GoalInvocation
from ..fulfillment.dispatcher import ProjectListenerEvent, ProjectListenerRegistration
from ..logging import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """
    Files to cache under a classifier.

    Either glob patterns (relative to the project) or a whole directory.
    """
    classifier: str
    glob_patterns: List[str] = field(default_factory=list)
    directory: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CacheEntry":
        pattern = d.get("pattern") or {}
        globs = pattern.get("globPattern") or []
        return cls(
            classifier=d["classifier"],
            glob_patterns=[globs] if isinstance(globs, str) else list(globs),
            directory=pattern.get("directory"),
        )


def glob_files(project_dir: str, patterns: Iterable[str]) -> List[str]:
    """Relative paths of project files matching any of the patterns."""
    root = Path(project_dir)
    matches = set()
    for pattern in patterns:
        for path in root.glob(pattern):
            if path.is_file():
                matches.add(path.relative_to(root).as_posix())
    return sorted(matches)


def _run_fallbacks(
    fallbacks: Sequence[ProjectListenerRegistration],
    project_dir: str,
    invocation: GoalInvocation,
    event: ProjectListenerEvent,
) -> None:
    for fallback in fallbacks:
        if event in fallback.events:
            logger.debug("cache_miss_fallback", goal=invocation.unique_name, listener=fallback.name)
            fallback.listener(project_dir, invocation, event)


def cache_put(
    entries: Sequence[CacheEntry],
    cache: GoalCache,
    classifiers: Optional[Sequence[str]] = None,
) -> ProjectListenerRegistration:
    """Listener caching the files of every entry (or only of `classifiers`) after execution."""
    selected = [e for e in entries if not classifiers or e.classifier in classifiers]

    def listener(project_dir: str, invocation: GoalInvocation, event: ProjectListenerEvent) -> None:
        if not invocation.settings.cache_enabled:
            return
        for entry in selected:
            files = glob_files(project_dir, entry.glob_patterns)
            if entry.directory:
                files.append(entry.directory)
            if files:
                cache.put(invocation, project_dir, files, entry.classifier)

    return ProjectListenerRegistration(
        name=f"caching {', '.join(e.classifier for e in selected)}",
        listener=listener,
        events=(ProjectListenerEvent.AFTER,),
    )


def cache_restore(
    classifiers: Sequence[str],
    cache: GoalCache,
    on_cache_miss: Sequence[ProjectListenerRegistration] = (),
) -> ProjectListenerRegistration:
    """Listener restoring cache entries before execution, running fallbacks on a miss."""

    def listener(project_dir: str, invocation: GoalInvocation, event: ProjectListenerEvent) -> None:
        if not invocation.settings.cache_enabled:
            _run_fallbacks(on_cache_miss, project_dir, invocation, event)
            return
        for classifier in classifiers:
            try:
                cache.retrieve(invocation, project_dir, classifier)
            except NoCacheEntry:
                logger.info("cache_miss", goal=invocation.unique_name, classifier=classifier)
                _run_fallbacks(on_cache_miss, project_dir, invocation, event)

    return ProjectListenerRegistration(
        name=f"restoring {', '.join(classifiers)}",
        listener=listener,
        events=(ProjectListenerEvent.BEFORE,),
    )


def cache_remove(classifiers: Sequence[str], cache: GoalCache) -> ProjectListenerRegistration:
    """Listener removing cache entries after execution."""

    def listener(project_dir: str, invocation: GoalInvocation, event: ProjectListenerEvent) -> None:
        if not invocation.settings.cache_enabled:
            return
        for classifier in classifiers:
            cache.remove(invocation, classifier)

    return ProjectListenerRegistration(
        name=f"removing {', '.join(classifiers)}",
        listener=listener,
        events=(ProjectListenerEvent.AFTER,),
    )
