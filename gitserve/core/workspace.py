"""Workspace directories for instances.

Each instance gets ``<base>/<workspace id>/<project>``; the last path
component is the repository's directory name so bulk operations can filter
by project.
"""

import logging
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

from gitserve.core.errors import WorkspaceError

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """An allocated workspace directory."""

    id: str
    path: Path


def _sanitize_project_name(name: str) -> str:
    """Sanitize a project name for use as a directory name.

    Prevents path traversal attacks.
    """
    # Replace path separators and null bytes
    sanitized = re.sub(r"[/\\\x00]", "-", name)
    # Remove leading dots (hidden files / parent traversal)
    sanitized = sanitized.lstrip(".")
    # Only allow alphanumeric, dash, underscore, dot
    sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "-", sanitized)
    sanitized = sanitized[:64]
    return sanitized or "workspace"


class WorkspaceManager:
    """Allocates and removes instance workspaces under one base directory."""

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir).absolute()

    def create(self, project: str) -> Workspace:
        """Allocate an empty directory for a checkout of ``project``.

        The returned path does not exist yet; ``git clone`` creates it.
        """
        workspace_id = str(uuid.uuid4())
        parent = self.base_dir / workspace_id
        try:
            parent.mkdir(parents=True, mode=0o755)
        except OSError as e:
            raise WorkspaceError(f"failed to create workspace directory {parent}: {e}") from e

        path = parent / _sanitize_project_name(project)
        logger.debug(f"Allocated workspace {workspace_id} at {path}")
        return Workspace(id=workspace_id, path=path)

    def cleanup(self, workspace: Workspace) -> None:
        self.remove_path(str(workspace.path))

    def remove_path(self, path: str) -> None:
        """Remove a workspace checkout and its id directory if now empty.

        Missing paths are not an error. Raises OSError on other failures.
        """
        target = Path(path)
        if target.exists():
            shutil.rmtree(target)

        parent = target.parent
        try:
            parent.resolve().relative_to(self.base_dir.resolve())
        except ValueError:
            return  # Don't touch paths outside the workspaces root
        if parent.resolve() == self.base_dir.resolve():
            return
        try:
            parent.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            logger.debug(f"Workspace directory {parent} not empty; left in place")
