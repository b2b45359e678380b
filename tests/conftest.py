"""Pytest configuration for memserve."""
import os
from pathlib import Path

import pytest

import memserve.config


# Fixed, distinct modification times (seconds) used across the suite.
T1 = 1_700_000_000
T2 = 1_700_000_600


def write_file(root: Path, rel: str, content, mtime: int = T1) -> Path:
    """Create ``root/rel`` with ``content`` and an exact modification time."""
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode() if isinstance(content, str) else content
    path.write_bytes(data)
    ns = mtime * 1_000_000_000
    os.utime(path, ns=(ns, ns))
    return path


@pytest.fixture(autouse=True)
def _reset_config(monkeypatch):
    monkeypatch.setattr(memserve.config, "_config", None)
    for name in list(os.environ):
        if name.startswith("MEMSERVE_"):
            monkeypatch.delenv(name)


@pytest.fixture
def served_dir(tmp_path):
    root = tmp_path / "www"
    root.mkdir()
    return root
