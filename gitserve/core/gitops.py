"""Repository validation and checkout into a workspace."""

import logging
import subprocess
from pathlib import Path

from gitserve.core.errors import WorkspaceError

logger = logging.getLogger(__name__)


class GitRepository:
    """Thin wrapper over the ``git`` binary.

    Clones are local and usually quick, but can hang on corrupted repos or
    busy filesystems, hence the timeout.
    """

    def __init__(self, timeout: float = 120):
        self.timeout = timeout

    def _git(self, args: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise WorkspaceError(f"git {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise WorkspaceError("git binary not found in PATH") from e

    def validate(self, repo_path: Path | str) -> Path:
        """Ensure ``repo_path`` is a git repository; return its absolute path."""
        path = Path(repo_path).absolute()
        if not path.is_dir():
            raise WorkspaceError(f"Repository path does not exist: {path}")
        result = self._git(["rev-parse", "--git-dir"], cwd=path)
        if result.returncode != 0:
            raise WorkspaceError(f"Not a git repository: {path}")
        return path

    def prepare(self, repo_path: Path | str, ref: str | None, dest: Path) -> None:
        """Clone ``repo_path`` into ``dest`` and check out ``ref``.

        With no ``ref`` the clone's default branch is left checked out.
        """
        logger.info(f"Cloning {repo_path} into {dest}")
        result = self._git(["clone", "--quiet", str(repo_path), str(dest)])
        if result.returncode != 0:
            raise WorkspaceError(
                f"failed to clone repository {repo_path}: {result.stderr.strip()}"
            )

        if not ref:
            return
        logger.info(f"Checking out {ref}")
        result = self._git(["checkout", "--quiet", ref], cwd=dest)
        if result.returncode != 0:
            raise WorkspaceError(f"failed to checkout '{ref}': {result.stderr.strip()}")
