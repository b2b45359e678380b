"""In-memory mirror of the served tree, keyed by relative path.

Readers go through ``lookup`` under the shared lock. The only mutation entry
points are ``commit_reconcile`` (incremental strategy) and ``replace``
(snapshot strategy); both apply their whole change under a single exclusive
hold, so a lookup sees either the previous scan's state or the new one.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional

from memserve.cache.entry import CacheEntry
from memserve.cache.rwlock import ReadWriteLock


class FileCache:
    """Path -> CacheEntry mapping guarded by a read/write lock."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = ReadWriteLock()

    def lookup(self, path: str) -> Optional[CacheEntry]:
        """Return the entry for ``path`` or None if it is not cached."""
        with self._lock.read_locked():
            return self._entries.get(path)

    def begin_reconcile(self) -> Dict[str, CacheEntry]:
        """Copy of the current mapping for a reconcile to diff against.

        Entries are immutable, so a shallow copy is a consistent baseline.
        """
        with self._lock.read_locked():
            return dict(self._entries)

    def commit_reconcile(
        self,
        upserts: Mapping[str, CacheEntry],
        removals: Iterable[str],
    ) -> int:
        """Apply a reconcile delta: all upserts, then all removals.

        Returns the number of keys actually removed.
        """
        removals = list(removals)
        removed = 0
        with self._lock.write_locked():
            self._entries.update(upserts)
            for path in removals:
                if self._entries.pop(path, None) is not None:
                    removed += 1
        return removed

    def replace(self, entries: Mapping[str, CacheEntry]) -> None:
        """Swap in ``entries`` as the entire cache."""
        fresh = dict(entries)
        with self._lock.write_locked():
            self._entries = fresh

    def clear(self) -> None:
        self.replace({})

    def keys(self) -> List[str]:
        with self._lock.read_locked():
            return sorted(self._entries)

    def total_bytes(self) -> int:
        with self._lock.read_locked():
            return sum(entry.size for entry in self._entries.values())

    def __contains__(self, path: object) -> bool:
        with self._lock.read_locked():
            return path in self._entries

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)
