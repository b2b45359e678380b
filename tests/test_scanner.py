"""
Scanner / Reconciler tests

Covers tree walking, the incremental and snapshot strategies, ignore rules
and the failure policy (walk errors abort, per-file errors stay local).
"""

import os

import pytest

from conftest import T1, T2, write_file
from memserve.cache import FileCache, IgnoreFilter, ReconcileStrategy, Reconciler, read_entry, walk_tree
from memserve.errors import ErrorCode, FileChangedDuringRead, MemserveError

STRATEGIES = [ReconcileStrategy.INCREMENTAL, ReconcileStrategy.SNAPSHOT]


class CountingReader:
    """read_entry wrapper that records which files were read."""

    def __init__(self):
        self.reads = []

    def __call__(self, abs_path):
        self.reads.append(os.path.basename(abs_path))
        return read_entry(abs_path)


def _fail_listing(monkeypatch, failing_dir):
    real_scandir = os.scandir

    def scandir(path):
        if os.fspath(path) == os.fspath(failing_dir):
            raise PermissionError(13, "Permission denied", os.fspath(path))
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", scandir)


# --- walk_tree ---

def test_walk_yields_relative_forward_slash_paths(served_dir):
    write_file(served_dir, "a.txt", "a")
    write_file(served_dir, "css/site.css", "body{}")
    write_file(served_dir, "img/icons/x.svg", "<svg/>")
    (served_dir / "empty").mkdir()

    paths = [rel for rel, _, _ in walk_tree(served_dir)]

    assert sorted(paths) == ["a.txt", "css/site.css", "img/icons/x.svg"]
    assert all(not p.startswith("/") for p in paths)


def test_walk_reports_disk_mtime(served_dir):
    write_file(served_dir, "a.txt", "a", mtime=T2)
    [(rel, abs_path, st)] = list(walk_tree(served_dir))
    assert rel == "a.txt"
    assert abs_path == os.path.join(str(served_dir), "a.txt")
    assert st.st_mtime_ns == T2 * 1_000_000_000


def test_walk_prunes_ignored_directories(served_dir):
    write_file(served_dir, ".git/config", "x")
    write_file(served_dir, "build/out.bin", b"\x00")
    write_file(served_dir, "src/main.txt", "main")

    paths = [rel for rel, _, _ in walk_tree(served_dir, IgnoreFilter(r"^(\.git|build)(/|$)"))]
    assert paths == ["src/main.txt"]


def test_walk_does_not_follow_directory_symlinks(served_dir, tmp_path):
    outside = tmp_path / "outside"
    write_file(outside, "secret.txt", "s")
    write_file(served_dir, "real.txt", "r")
    os.symlink(outside, served_dir / "link")

    paths = [rel for rel, _, _ in walk_tree(served_dir)]
    assert paths == ["real.txt"]


def test_walk_missing_root_raises(tmp_path):
    with pytest.raises(MemserveError) as exc:
        list(walk_tree(tmp_path / "nope"))
    assert exc.value.code is ErrorCode.SCAN_ROOT_UNREADABLE


def test_walk_unlistable_subdirectory_raises(served_dir, monkeypatch):
    write_file(served_dir, "ok.txt", "ok")
    write_file(served_dir, "locked/inner.txt", "x")
    _fail_listing(monkeypatch, served_dir / "locked")

    with pytest.raises(MemserveError) as exc:
        list(walk_tree(served_dir))
    assert exc.value.code is ErrorCode.SCAN_WALK_FAILED
    assert exc.value.details["path"] == "locked"


# --- read_entry ---

def test_read_entry_pairs_content_with_mtime(served_dir):
    path = write_file(served_dir, "a.txt", "hello", mtime=T1)
    entry = read_entry(str(path))
    assert entry.content == b"hello"
    assert entry.mtime_ns == T1 * 1_000_000_000
    assert entry.size == 5


def test_read_entry_rejects_directories(served_dir):
    (served_dir / "d").mkdir()
    with pytest.raises(OSError):
        read_entry(str(served_dir / "d"))


# --- reconcile ---

@pytest.mark.parametrize("strategy", STRATEGIES)
def test_add_modify_delete_scenario(served_dir, strategy):
    cache = FileCache()
    reconciler = Reconciler(served_dir, cache, strategy=strategy)

    write_file(served_dir, "a.txt", "hello", mtime=T1)
    reconciler.reconcile()
    entry = cache.lookup("a.txt")
    assert (entry.content, entry.mtime_ns) == (b"hello", T1 * 1_000_000_000)

    write_file(served_dir, "a.txt", "world", mtime=T2)
    report = reconciler.reconcile()
    entry = cache.lookup("a.txt")
    assert (entry.content, entry.mtime_ns) == (b"world", T2 * 1_000_000_000)
    assert report.updated == 1

    (served_dir / "a.txt").unlink()
    report = reconciler.reconcile()
    assert cache.lookup("a.txt") is None
    assert report.removed == 1
    assert len(cache) == 0


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_cache_matches_disk_after_scan(served_dir, strategy):
    files = {
        "index.html": "<h1>hi</h1>",
        "js/app.js": "console.log(1)",
        "data/blob.bin": bytes(range(256)),
    }
    for rel, content in files.items():
        write_file(served_dir, rel, content)

    cache = FileCache()
    Reconciler(served_dir, cache, strategy=strategy).reconcile()

    assert cache.keys() == sorted(files)
    for rel in files:
        on_disk = (served_dir / rel).read_bytes()
        entry = cache.lookup(rel)
        assert entry.content == on_disk
        assert entry.mtime_ns == (served_dir / rel).stat().st_mtime_ns


def test_ignore_pattern_hides_dotfiles(served_dir):
    write_file(served_dir, ".hidden", "h")
    write_file(served_dir, "visible.txt", "v")

    cache = FileCache()
    Reconciler(served_dir, cache, ignore=IgnoreFilter(r"^\.")).reconcile()

    assert cache.lookup(".hidden") is None
    assert cache.lookup("visible.txt").content == b"v"


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_newly_ignored_file_is_purged(served_dir, strategy):
    write_file(served_dir, "notes.tmp", "t")
    write_file(served_dir, "keep.txt", "k")
    cache = FileCache()
    Reconciler(served_dir, cache, strategy=strategy).reconcile()
    assert "notes.tmp" in cache

    Reconciler(served_dir, cache, ignore=IgnoreFilter(r"\.tmp$"), strategy=strategy).reconcile()

    assert "notes.tmp" not in cache
    assert "keep.txt" in cache


def test_incremental_does_not_reread_unchanged_files(served_dir):
    write_file(served_dir, "a.txt", "a")
    write_file(served_dir, "b.txt", "b")
    reader = CountingReader()
    cache = FileCache()
    reconciler = Reconciler(served_dir, cache, reader=reader)

    reconciler.reconcile()
    assert sorted(reader.reads) == ["a.txt", "b.txt"]

    reader.reads.clear()
    write_file(served_dir, "b.txt", "B", mtime=T2)
    report = reconciler.reconcile()

    assert reader.reads == ["b.txt"]
    assert report.reused == 1
    assert cache.lookup("b.txt").content == b"B"


def test_snapshot_rereads_every_file(served_dir):
    write_file(served_dir, "a.txt", "a")
    write_file(served_dir, "b.txt", "b")
    reader = CountingReader()
    reconciler = Reconciler(served_dir, FileCache(), strategy=ReconcileStrategy.SNAPSHOT, reader=reader)

    reconciler.reconcile()
    reconciler.reconcile()

    assert sorted(reader.reads) == ["a.txt", "a.txt", "b.txt", "b.txt"]


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_reconcile_is_idempotent(served_dir, strategy):
    write_file(served_dir, "a.txt", "a")
    write_file(served_dir, "sub/b.txt", "b")
    cache = FileCache()
    reconciler = Reconciler(served_dir, cache, strategy=strategy)

    reconciler.reconcile()
    first = cache.begin_reconcile()
    report = reconciler.reconcile()

    assert cache.begin_reconcile() == first
    assert not report.changed


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_walk_failure_leaves_cache_untouched(served_dir, monkeypatch, strategy):
    write_file(served_dir, "a.txt", "a")
    write_file(served_dir, "sub/b.txt", "b")
    cache = FileCache()
    reconciler = Reconciler(served_dir, cache, strategy=strategy)
    reconciler.reconcile()
    before = cache.begin_reconcile()

    write_file(served_dir, "a.txt", "changed", mtime=T2)
    write_file(served_dir, "new.txt", "n")
    _fail_listing(monkeypatch, served_dir / "sub")

    with pytest.raises(MemserveError) as exc:
        reconciler.reconcile()

    assert exc.value.code is ErrorCode.SCAN_WALK_FAILED
    assert cache.begin_reconcile() == before


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_unreadable_file_keeps_previous_entry(served_dir, strategy, caplog):
    write_file(served_dir, "a.txt", "old", mtime=T1)
    write_file(served_dir, "b.txt", "b", mtime=T1)
    cache = FileCache()
    Reconciler(served_dir, cache, strategy=strategy).reconcile()

    def flaky_reader(abs_path):
        if abs_path.endswith("a.txt"):
            raise PermissionError(13, "Permission denied", abs_path)
        return read_entry(abs_path)

    write_file(served_dir, "a.txt", "new", mtime=T2)
    write_file(served_dir, "b.txt", "b2", mtime=T2)
    report = Reconciler(served_dir, cache, strategy=strategy, reader=flaky_reader).reconcile()

    assert report.skipped == 1
    assert cache.lookup("a.txt").content == b"old"
    assert cache.lookup("b.txt").content == b"b2"
    warnings = [r.getMessage() for r in caplog.records if r.levelname == "WARNING"]
    assert any(f"Skipping a.txt this cycle: [{ErrorCode.FILE_READ_FAILED.value}] a.txt:" in m for m in warnings)


def test_file_changed_during_read_is_skipped(served_dir):
    write_file(served_dir, "a.txt", "a")

    def racing_reader(abs_path):
        raise FileChangedDuringRead(abs_path)

    cache = FileCache()
    report = Reconciler(served_dir, cache, reader=racing_reader).reconcile()

    assert report.skipped == 1
    assert cache.lookup("a.txt") is None


def test_file_vanishing_mid_scan_is_dropped(served_dir):
    write_file(served_dir, "a.txt", "a")
    write_file(served_dir, "b.txt", "b")
    cache = FileCache()
    Reconciler(served_dir, cache).reconcile()

    def vanishing_reader(abs_path):
        os.unlink(abs_path)
        raise FileNotFoundError(2, "No such file or directory", abs_path)

    write_file(served_dir, "b.txt", "b2", mtime=T2)
    Reconciler(served_dir, cache, reader=vanishing_reader).reconcile()

    assert cache.lookup("b.txt") is None
    assert cache.lookup("a.txt").content == b"a"


def test_report_counts(served_dir):
    write_file(served_dir, "a.txt", "a")
    write_file(served_dir, "b.txt", "b")
    cache = FileCache()
    reconciler = Reconciler(served_dir, cache)
    report = reconciler.reconcile()
    assert (report.seen, report.added) == (2, 2)

    write_file(served_dir, "c.txt", "c")
    (served_dir / "a.txt").unlink()
    report = reconciler.reconcile()

    assert (report.seen, report.added, report.removed, report.reused) == (2, 1, 1, 1)
    assert reconciler.last_report is report
    assert "1 added" in str(report)
