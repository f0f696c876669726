"""The ``run`` operation: workspace, checkout, instance, process."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from gitserve.core.errors import GitServeError, LaunchError, WorkspaceError
from gitserve.core.gitops import GitRepository
from gitserve.core.models import Instance, InstanceStatus
from gitserve.core.process import ProcessSupervisor
from gitserve.core.store import InstanceStore
from gitserve.core.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "npm run dev"


@dataclass
class RunRequest:
    """Parameters for running a command from a repository ref."""

    repo_path: Path
    ref: str | None = None
    command: str = ""
    port: int = 0
    detached: bool = False


class Runner:
    """Creates an instance in a fresh workspace and starts it.

    Workflow:
    1. Validate the repository
    2. Allocate a workspace and check out the ref into it
    3. Register a ``created`` instance in the store
    4. Start it detached, or run it in the foreground

    A failed checkout or launch leaves no record and no workspace behind.
    After a foreground run the record and workspace are removed together.
    """

    def __init__(
        self,
        store: InstanceStore,
        supervisor: ProcessSupervisor,
        workspaces: WorkspaceManager,
        git: GitRepository | None = None,
        default_command: str = DEFAULT_COMMAND,
    ):
        self.store = store
        self.supervisor = supervisor
        self.workspaces = workspaces
        self.git = git or GitRepository()
        self.default_command = default_command

    def run(self, request: RunRequest) -> Instance:
        repo_path = self.git.validate(request.repo_path)
        workspace = self.workspaces.create(repo_path.name)

        try:
            self.git.prepare(repo_path, request.ref, workspace.path)
        except WorkspaceError:
            self._cleanup_workspace(str(workspace.path))
            raise

        instance_id = str(uuid.uuid4())
        instance = Instance(
            id=instance_id,
            name=f"{request.ref or 'HEAD'}-{instance_id[:8]}",
            port=request.port,
            path=str(workspace.path),
            status=InstanceStatus.CREATED,
            command=request.command or self.default_command,
        )

        try:
            self.store.add(instance)
        except GitServeError:
            self._cleanup_workspace(instance.path)
            raise

        if request.detached:
            return self._start_detached(instance)
        return self._run_foreground(instance)

    def _start_detached(self, instance: Instance) -> Instance:
        try:
            return self.supervisor.start_detached(instance)
        except LaunchError:
            self._discard(instance)
            raise

    def _run_foreground(self, instance: Instance) -> Instance:
        try:
            return self.supervisor.run_foreground(instance)
        finally:
            self._discard(instance)

    def _discard(self, instance: Instance) -> None:
        """Delete the record and its workspace together."""
        try:
            self.store.delete(instance.id)
        except GitServeError as e:
            logger.warning(f"Failed to remove instance {instance.id} from store: {e}")
        self._cleanup_workspace(instance.path)

    def _cleanup_workspace(self, path: str) -> None:
        try:
            self.workspaces.remove_path(path)
        except OSError as e:
            logger.warning(f"Failed to clean up workspace '{path}': {e}")
