"""
Scanner / Reconciler (memserve/cache/scanner.py)

PURPOSE:
Brings the FileCache in line with the directory tree on disk: picks up new
files, re-reads modified ones, and drops the ones that disappeared.

STRATEGIES:
- incremental: a file whose on-disk mtime equals the cached mtime is reused
  without touching its content; everything else is read. The delta is
  committed in one exclusive pass after the walk.
- snapshot: every file is read and the resulting mapping replaces the cache
  wholesale.

FAILURES:
- Listing a directory fails -> the whole reconcile is aborted with a
  MemserveError and the cache is left exactly as it was.
- Reading one file fails -> that file keeps its previous entry (if any) for
  this cycle. A file that vanished mid-walk is treated as deleted.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from memserve.cache.entry import CacheEntry
from memserve.cache.file_cache import FileCache
from memserve.cache.ignore import IgnoreFilter
from memserve.errors import ErrorCode, FileChangedDuringRead, MemserveError, handle_error

logger = logging.getLogger(__name__)

Reader = Callable[[str], CacheEntry]


class ReconcileStrategy(str, Enum):
    INCREMENTAL = "incremental"
    SNAPSHOT = "snapshot"


@dataclass
class ScanReport:
    """Outcome of one reconcile."""
    strategy: ReconcileStrategy
    seen: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    reused: int = 0
    skipped: int = 0
    duration: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)

    def __str__(self) -> str:
        return (
            f"{self.seen} files ({self.added} added, {self.updated} updated, "
            f"{self.removed} removed, {self.reused} reused, {self.skipped} skipped) "
            f"in {self.duration * 1000:.1f}ms [{self.strategy.value}]"
        )


def walk_tree(
    root: Union[str, Path],
    ignore: Optional[IgnoreFilter] = None,
) -> Iterator[Tuple[str, str, os.stat_result]]:
    """Yield ``(rel_path, abs_path, stat)`` for every regular file under ``root``.

    Relative paths use forward slashes and never start with a separator.
    Directories are descended into but not yielded; symlinked directories are
    not followed. An ignored directory hides everything below it.

    Raises:
        MemserveError: SCAN_ROOT_UNREADABLE / SCAN_WALK_FAILED when a
            directory cannot be listed. Raised lazily, during iteration.
    """
    root = os.fspath(root)
    stack: List[Tuple[str, str]] = [("", root)]

    while stack:
        rel_dir, abs_dir = stack.pop()
        try:
            with os.scandir(abs_dir) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            code = ErrorCode.SCAN_ROOT_UNREADABLE if not rel_dir else ErrorCode.SCAN_WALK_FAILED
            raise MemserveError(
                code,
                f"Cannot list directory {abs_dir}: {e.strerror or e}",
                details={"path": rel_dir or root, "errno": e.errno},
            ) from e

        subdirs: List[Tuple[str, str]] = []
        for entry in entries:
            rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
            if ignore is not None and ignore.matches(rel_path):
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append((rel_path, entry.path))
                    continue
                if not entry.is_file():
                    # Sockets, fifos, dangling links and links to directories.
                    continue
                st = entry.stat()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"[Scanner] Cannot stat {rel_path}: {e}")
                continue
            yield rel_path, entry.path, st

        stack.extend(reversed(subdirs))


def read_entry(abs_path: str) -> CacheEntry:
    """Read one file into a CacheEntry.

    The modification time comes from the open descriptor, checked before and
    after the read, so content and mtime always describe the same version.

    Raises:
        OSError: the file cannot be opened or read.
        FileChangedDuringRead: the file was modified while being read.
    """
    with open(abs_path, "rb") as f:
        before = os.fstat(f.fileno())
        if not stat.S_ISREG(before.st_mode):
            raise IsADirectoryError(f"Not a regular file: {abs_path}")
        content = f.read()
        after = os.fstat(f.fileno())

    if before.st_mtime_ns != after.st_mtime_ns or len(content) != after.st_size:
        raise FileChangedDuringRead(abs_path)
    return CacheEntry(content=content, mtime_ns=before.st_mtime_ns)


class Reconciler:
    """Single-writer driver that reconciles a FileCache against a directory."""

    def __init__(
        self,
        root: Union[str, Path],
        cache: FileCache,
        ignore: Optional[IgnoreFilter] = None,
        strategy: ReconcileStrategy = ReconcileStrategy.INCREMENTAL,
        reader: Reader = read_entry,
    ):
        self.root = Path(root)
        self.cache = cache
        self.ignore = ignore
        self.strategy = ReconcileStrategy(strategy)
        self._reader = reader
        self._mutex = threading.Lock()
        self.last_report: Optional[ScanReport] = None

    def reconcile(self) -> ScanReport:
        """Run one full scan and commit the result.

        Blocks while another reconcile is in progress; at most one runs at a
        time. Raises MemserveError on a directory walk failure, in which case
        the cache is unchanged.
        """
        with self._mutex:
            start = time.monotonic()
            report = self._run()
            report.duration = time.monotonic() - start
            self.last_report = report

        if report.changed or report.skipped:
            logger.info(f"[Scanner] Reconciled {self.root}: {report}")
        else:
            logger.debug(f"[Scanner] No changes under {self.root}: {report}")
        return report

    def _run(self) -> ScanReport:
        reuse = self.strategy is ReconcileStrategy.INCREMENTAL
        report = ScanReport(strategy=self.strategy)
        previous = self.cache.begin_reconcile()

        fresh: Dict[str, CacheEntry] = {}
        kept: Dict[str, CacheEntry] = {}

        for rel_path, abs_path, st in walk_tree(self.root, self.ignore):
            cached = previous.get(rel_path)
            if reuse and cached is not None and cached.mtime_ns == st.st_mtime_ns:
                kept[rel_path] = cached
                report.reused += 1
                continue

            try:
                entry = self._reader(abs_path)
            except FileNotFoundError:
                logger.debug(f"[Scanner] {rel_path} vanished during scan")
                continue
            except (OSError, FileChangedDuringRead) as e:
                logger.warning(f"[Scanner] Skipping {rel_path} this cycle: {handle_error(e, context=rel_path)}")
                report.skipped += 1
                if cached is not None:
                    kept[rel_path] = cached
                continue

            fresh[rel_path] = entry
            if cached is None:
                report.added += 1
            elif cached != entry:
                report.updated += 1

        removals = [path for path in previous if path not in fresh and path not in kept]
        report.seen = len(fresh) + len(kept)

        if reuse:
            report.removed = self.cache.commit_reconcile(fresh, removals)
        else:
            kept.update(fresh)
            self.cache.replace(kept)
            report.removed = len(removals)
        return report
