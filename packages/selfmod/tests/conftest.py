"""
Pytest fixtures for selfmod tests.

Every test gets its own temporary workspace with two roots:
- mods/: staging, snapshots, history, feature metadata
- src/:  the live source tree being modified
"""

import os
import tempfile
from pathlib import Path

import pytest

from selfmod import SelfModConfig, SelfModService


@pytest.fixture
def temp_workspace():
    """Create temporary workspace for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_workspace):
    """Config rooted in the temp workspace, fast lock polling."""
    return SelfModConfig(
        mods_root=temp_workspace / "mods",
        max_workers=4,
        lock_timeout_seconds=5.0,
        lock_poll_seconds=0.02
    )


@pytest.fixture
def source_root(temp_workspace):
    root = temp_workspace / "src"
    root.mkdir()
    return root


@pytest.fixture
def service(config, source_root):
    svc = SelfModService(config, source_root)
    svc.start_feature("feat", "Test feature", conversation_id="conv-1")
    return svc


def tree_state(root: Path):
    """(files -> bytes, directories) for everything under root."""
    files = {}
    dirs = set()
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            dirs.add(Path(dirpath, name).relative_to(root).as_posix())
        for name in filenames:
            path = Path(dirpath, name)
            files[path.relative_to(root).as_posix()] = path.read_bytes()
    return files, dirs


def leftover_artifacts(root: Path):
    """Temp/backup files left behind by an apply attempt."""
    return [
        str(p) for p in root.rglob("*")
        if ".tmp." in p.name or ".bak." in p.name
    ]


@pytest.fixture
def read_tree():
    return tree_state


@pytest.fixture
def find_artifacts():
    return leftover_artifacts
