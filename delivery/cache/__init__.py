# Cache module - goal caches and cache project listeners
from .goal_cache import DEFAULT_CLASSIFIER, FileSystemGoalCache, GoalCache, NoOpGoalCache, sanitize_classifier
from .listeners import CacheEntry, cache_put, cache_remove, cache_restore, glob_files

__all__ = [
    "DEFAULT_CLASSIFIER",
    "FileSystemGoalCache",
    "GoalCache",
    "NoOpGoalCache",
    "sanitize_classifier",
    "CacheEntry",
    "cache_put",
    "cache_remove",
    "cache_restore",
    "glob_files",
]
