"""
Concurrent lookups during reconciles.

Every file version N is written with content "<name>:N" and an mtime of
BASE + N seconds, so any torn entry (content of one version, mtime of
another) is detectable from the entry alone.
"""

import threading

import pytest

from conftest import write_file
from memserve.cache import FileCache, ReconcileStrategy, Reconciler, read_entry

BASE = 1_600_000_000
NAMES = [f"f{i}.txt" for i in range(12)] + ["deep/nested/g.txt"]
TOGGLED = "sometimes.txt"
VERSIONS = 25


def _write_version(root, version):
    for name in NAMES:
        write_file(root, name, f"{name}:{version}", mtime=BASE + version)
    toggled = root / TOGGLED
    if version % 2:
        write_file(root, TOGGLED, f"{TOGGLED}:{version}", mtime=BASE + version)
    elif toggled.exists():
        toggled.unlink()


def _version_of(name, entry):
    content_name, _, content_version = entry.content.decode().rpartition(":")
    assert content_name == name
    mtime_version = entry.mtime_ns // 1_000_000_000 - BASE
    assert int(content_version) == mtime_version, f"torn entry for {name}: {entry!r}"
    return mtime_version


@pytest.mark.parametrize("strategy", [ReconcileStrategy.INCREMENTAL, ReconcileStrategy.SNAPSHOT])
def test_lookups_never_observe_torn_or_foreign_entries(served_dir, strategy):
    cache = FileCache()
    reconciler = Reconciler(served_dir, cache, strategy=strategy)
    _write_version(served_dir, 0)
    reconciler.reconcile()

    done = threading.Event()
    errors = []
    lookups = [0]

    def reader():
        try:
            while not done.is_set():
                for name in NAMES + [TOGGLED, "never-existed.txt"]:
                    entry = cache.lookup(name)
                    if name == "never-existed.txt":
                        assert entry is None
                    elif name in NAMES:
                        assert entry is not None
                        _version_of(name, entry)
                    elif entry is not None:
                        _version_of(name, entry)
                    lookups[0] += 1

                # A whole-cache view always belongs to one completed scan.
                view = cache.begin_reconcile()
                versions = {_version_of(name, view[name]) for name in NAMES}
                assert len(versions) == 1
                (version,) = versions
                assert (TOGGLED in view) == bool(version % 2)
        except AssertionError as e:
            errors.append(e)
            done.set()

    readers = [threading.Thread(target=reader) for _ in range(6)]
    for t in readers:
        t.start()

    try:
        for version in range(1, VERSIONS + 1):
            if done.is_set():
                break
            _write_version(served_dir, version)
            reconciler.reconcile()
    finally:
        done.set()
        for t in readers:
            t.join(timeout=10)

    assert not errors, errors[0]
    assert lookups[0] > 0
    final = cache.lookup(NAMES[0])
    assert _version_of(NAMES[0], final) == VERSIONS


def test_concurrent_reconciles_are_serialized(served_dir):
    cache = FileCache()
    active = [0]
    peak = [0]
    guard = threading.Lock()

    def tracking_reader(abs_path):
        with guard:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        try:
            return read_entry(abs_path)
        finally:
            with guard:
                active[0] -= 1

    for i in range(20):
        write_file(served_dir, f"{i}.txt", str(i))

    reconciler = Reconciler(served_dir, cache, strategy=ReconcileStrategy.SNAPSHOT, reader=tracking_reader)
    threads = [threading.Thread(target=reconciler.reconcile) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert peak[0] == 1
    assert len(cache) == 20
