from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CacheEntry:
    """One file's materialized state.

    ``content`` and ``mtime_ns`` always come from the same read of the file
    (see ``scanner.read_entry``) and never change after construction.
    """
    content: bytes
    mtime_ns: int

    @property
    def mtime(self) -> float:
        return self.mtime_ns / 1e9

    @property
    def size(self) -> int:
        return len(self.content)

    def __repr__(self) -> str:
        return f"CacheEntry(size={self.size}, mtime_ns={self.mtime_ns})"
