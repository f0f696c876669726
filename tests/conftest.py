# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the gitserve test suite.

This module provides foundational fixtures used across all test modules:
- Temporary stores and workspace directories
- An instance factory with sensible defaults
- A process-group id that is guaranteed not to exist
- A real git repository for checkout tests

All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from gitserve.core.models import Instance, InstanceStatus
from gitserve.core.store import InstanceStore

# Above the largest pid_max Linux allows (2**22), so no such group exists.
DEAD_PGID = 4_999_999


# =============================================================================
# Store and Instance Fixtures
# =============================================================================


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    """Directory holding the persisted instance document."""
    return tmp_path / "store"


@pytest.fixture
def store(store_dir: Path) -> InstanceStore:
    """A fresh, empty InstanceStore backed by a temp directory."""
    return InstanceStore(store_dir)


@pytest.fixture
def workspaces_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def make_workspace(workspaces_root: Path) -> Callable[[str], Path]:
    """Create ``<root>/<id>/<project>`` with a file inside, like a checkout."""

    def _make(project: str = "myproj", workspace_id: str | None = None) -> Path:
        workspace_id = workspace_id or f"ws-{len(list(workspaces_root.iterdir()))}"
        path = workspaces_root / workspace_id / project
        path.mkdir(parents=True)
        (path / "README.md").write_text("# checkout\n")
        return path

    return _make


@pytest.fixture
def make_instance(tmp_path: Path) -> Callable[..., Instance]:
    """Factory for Instance records.

    Example:
        def test_something(make_instance):
            inst = make_instance("i1", status=InstanceStatus.RUNNING, pid=555)
    """

    def _make(
        instance_id: str = "i1",
        status: InstanceStatus = InstanceStatus.CREATED,
        pid: int = 0,
        path: str | Path | None = None,
        stop_time: datetime | None = None,
        start_time: datetime | None = None,
        name: str | None = None,
        **kwargs: Any,
    ) -> Instance:
        return Instance(
            id=instance_id,
            name=name or f"main-{instance_id[:8]}",
            pid=pid,
            path=str(path if path is not None else tmp_path / instance_id),
            status=status,
            start_time=start_time,
            stop_time=stop_time,
            **kwargs,
        )

    return _make


@pytest.fixture
def dead_pgid() -> int:
    """A process-group id that cannot exist."""
    return DEAD_PGID


# =============================================================================
# Repository Fixtures
# =============================================================================


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary repository with actual git initialization.

    WARNING: Runs actual git commands. Has a ``main`` branch and a
    ``feature`` branch that adds ``feature.txt``.
    """
    repo = tmp_path / "myproj"
    repo.mkdir()
    (repo / "README.md").write_text("# Test Project\n")

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)

    try:
        git("init", "--initial-branch=main")
        git("config", "user.email", "test@example.com")
        git("config", "user.name", "Test User")
        git("add", ".")
        git("commit", "-m", "Initial commit")
        git("checkout", "-b", "feature")
        (repo / "feature.txt").write_text("feature\n")
        git("add", ".")
        git("commit", "-m", "Add feature")
        git("checkout", "main")
    except (subprocess.CalledProcessError, FileNotFoundError):
        pytest.skip("Git not available")
    return repo
