# ============================================================================
# memserve/cache/__init__.py
# In-memory mirror of the served directory tree
# ============================================================================
#
# KEY MODULES:
# - entry.py:      CacheEntry, one file's content plus its modification time
# - rwlock.py:     shared/exclusive lock guarding the mapping
# - file_cache.py: FileCache, the path -> entry mapping
# - ignore.py:     IgnoreFilter, regex match on relative paths
# - scanner.py:    walk_tree + Reconciler, brings the cache in line with disk
# - refresher.py:  RefreshLoop, reruns the reconciler on a fixed interval
#
# ============================================================================
from memserve.cache.entry import CacheEntry
from memserve.cache.file_cache import FileCache
from memserve.cache.ignore import IgnoreFilter
from memserve.cache.scanner import ReconcileStrategy, Reconciler, ScanReport, read_entry, walk_tree
from memserve.cache.refresher import RefreshLoop

__all__ = [
    "CacheEntry",
    "FileCache",
    "IgnoreFilter",
    "ReconcileStrategy",
    "Reconciler",
    "ScanReport",
    "read_entry",
    "walk_tree",
    "RefreshLoop",
]
