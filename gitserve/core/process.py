"""Process supervision for instance commands.

Detached instances run as the leader of a new session (and therefore a new
process group), so later signals address the whole group including any
children the command spawns. Each detached child is reaped by a supervised
thread whose only externally visible effect is one terminal status update
written through the store.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import IO

from gitserve.core.errors import (
    GitServeError,
    LaunchError,
    NotFoundError,
    PersistenceError,
    ProcessExitedError,
)
from gitserve.core.models import Instance, InstanceStatus, describe_transition, utc_now
from gitserve.core.store import InstanceStore

logger = logging.getLogger(__name__)


def log_paths(instance: Instance) -> tuple[Path, Path]:
    """Deterministic ``(stdout, stderr)`` log files for an instance."""
    workspace = Path(instance.path)
    return (
        workspace / f"{instance.id}.out.log",
        workspace / f"{instance.id}.err.log",
    )


def reaped_status(current: InstanceStatus, returncode: int) -> InstanceStatus:
    """Status an instance takes once its detached process has exited.

    A ``stopping`` instance was asked to terminate, so any exit counts as a
    clean stop. Terminal statuses set elsewhere are kept.
    """
    if current.is_terminal:
        return current
    if current == InstanceStatus.STOPPING:
        return InstanceStatus.STOPPED
    return InstanceStatus.STOPPED if returncode == 0 else InstanceStatus.FAILED


class ProcessSupervisor:
    """Spawns instance commands and owns their reaper threads.

    USAGE:
        supervisor = ProcessSupervisor(store)
        instance = supervisor.start_detached(instance)   # returns immediately
        supervisor.run_foreground(instance)              # blocks until exit

    Reapers are daemon threads: they keep the store current for as long as
    this process lives. When the CLI exits first, the orphaned child is
    reparented and reaped by the OS, and a later ``list`` reconciles its
    status from process liveness instead.
    """

    def __init__(self, store: InstanceStore, shell: str = "/bin/sh"):
        self.store = store
        self.shell = shell
        self._reapers: dict[str, threading.Thread] = {}
        self._reapers_lock = threading.Lock()

    def _require_stored(self, instance: Instance) -> Instance:
        stored = self.store.get(instance.id)
        if stored is None:
            raise NotFoundError(instance.id, transition="start")
        if not stored.path or not Path(stored.path).is_dir():
            raise LaunchError(
                f"workspace path for instance '{stored.id}' does not exist: '{stored.path}'",
                instance_id=stored.id,
                transition=describe_transition(stored.status, InstanceStatus.RUNNING),
            )
        return stored

    # ------------------------------------------------------------------
    # Detached
    # ------------------------------------------------------------------

    def start_detached(self, instance: Instance) -> Instance:
        """Start the instance command in the background.

        Returns the updated record (``running`` with the process-group id).

        Raises:
            NotFoundError: The instance is not in the store.
            LaunchError: Log files could not be created, the spawn failed, or
                the process started but recording it failed (the new process
                group is terminated in that case).
        """
        stored = self._require_stored(instance)
        transition = describe_transition(stored.status, InstanceStatus.RUNNING)
        stdout_path, stderr_path = log_paths(stored)

        try:
            stdout_file = open(stdout_path, "wb")
        except OSError as e:
            raise LaunchError(
                f"failed to create stdout log file {stdout_path} for instance "
                f"'{stored.id}': {e}",
                instance_id=stored.id,
                transition=transition,
            ) from e
        try:
            stderr_file = open(stderr_path, "wb")
        except OSError as e:
            stdout_file.close()
            raise LaunchError(
                f"failed to create stderr log file {stderr_path} for instance "
                f"'{stored.id}': {e}",
                instance_id=stored.id,
                transition=transition,
            ) from e

        try:
            proc = subprocess.Popen(
                [self.shell, "-c", stored.command],
                cwd=stored.path,
                stdin=subprocess.DEVNULL,
                stdout=stdout_file,
                stderr=stderr_file,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            stdout_file.close()
            stderr_file.close()
            raise LaunchError(
                f"failed to start process for instance '{stored.id}': {e}",
                instance_id=stored.id,
                transition=transition,
            ) from e

        logger.info(f"Started instance {stored.id} (PGID {proc.pid}): {stored.command}")

        def mark_running(inst: Instance) -> None:
            inst.pid = proc.pid
            inst.status = InstanceStatus.RUNNING
            inst.start_time = utc_now()
            inst.stop_time = None
            inst.log_path = str(stdout_path)

        # The reaper starts only after the running transition is recorded,
        # so its terminal update can never be overwritten by it.
        try:
            updated = self.store.modify(stored.id, mark_running)
        except GitServeError as e:
            # An untracked group could never be listed or stopped again.
            self._terminate_untracked(stored.id, proc)
            raise LaunchError(
                f"process for instance '{stored.id}' started (PGID {proc.pid}) but "
                f"recording it failed; process group terminated: {e}",
                instance_id=stored.id,
                transition=transition,
            ) from e
        finally:
            self._spawn_reaper(stored.id, proc, (stdout_file, stderr_file))

        return updated

    @staticmethod
    def _terminate_untracked(instance_id: str, proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(
                f"Failed to terminate untracked process group {proc.pid} "
                f"of instance {instance_id}: {e}"
            )

    def _spawn_reaper(
        self,
        instance_id: str,
        proc: subprocess.Popen,
        log_files: tuple[IO[bytes], ...],
    ) -> None:
        thread = threading.Thread(
            target=self._reap,
            args=(instance_id, proc, log_files),
            name=f"gitserve-reaper-{instance_id[:8]}",
            daemon=True,
        )
        with self._reapers_lock:
            self._reapers[instance_id] = thread
        thread.start()

    def _reap(
        self,
        instance_id: str,
        proc: subprocess.Popen,
        log_files: tuple[IO[bytes], ...],
    ) -> None:
        try:
            returncode = proc.wait()
        finally:
            for f in log_files:
                f.close()

        logger.info(f"Instance {instance_id} (PGID {proc.pid}) exited with code {returncode}")

        def mark_exited(inst: Instance) -> None:
            new_status = reaped_status(inst.status, returncode)
            if new_status != inst.status:
                logger.info(
                    f"Instance {instance_id}: "
                    f"{describe_transition(inst.status, new_status)} after exit"
                )
            inst.status = new_status
            if inst.stop_time is None:
                inst.stop_time = utc_now()

        try:
            self.store.modify(instance_id, mark_exited)
        except NotFoundError:
            logger.debug(f"Instance {instance_id} was removed before its process exited")
        except PersistenceError as e:
            logger.warning(f"Failed to record exit of instance {instance_id}: {e}")
        finally:
            with self._reapers_lock:
                self._reapers.pop(instance_id, None)

    def join_reapers(self, timeout: float | None = None) -> bool:
        """Wait for all reaper threads. Returns True if none are left running."""
        with self._reapers_lock:
            threads = list(self._reapers.values())
        for thread in threads:
            thread.join(timeout)
        return not any(t.is_alive() for t in threads)

    @property
    def active_reapers(self) -> int:
        with self._reapers_lock:
            return len(self._reapers)

    # ------------------------------------------------------------------
    # Foreground
    # ------------------------------------------------------------------

    def run_foreground(self, instance: Instance) -> Instance:
        """Run the instance command synchronously on the controlling terminal.

        Raises:
            LaunchError: The process could not be started.
            ProcessExitedError: The process ran and exited non-zero.
        """
        stored = self._require_stored(instance)
        transition = describe_transition(stored.status, InstanceStatus.RUNNING)

        try:
            proc = subprocess.Popen([self.shell, "-c", stored.command], cwd=stored.path)
        except (OSError, ValueError) as e:
            raise LaunchError(
                f"failed to start process for instance '{stored.id}': {e}",
                instance_id=stored.id,
                transition=transition,
            ) from e

        def mark_running(inst: Instance) -> None:
            inst.pid = proc.pid
            inst.status = InstanceStatus.RUNNING
            inst.start_time = utc_now()
            inst.stop_time = None

        # Recorded before blocking so a concurrent `list` sees it as running.
        try:
            self.store.modify(stored.id, mark_running)
        except PersistenceError as e:
            logger.warning(f"Failed to record start of instance {stored.id}: {e}")

        try:
            returncode = proc.wait()
        except KeyboardInterrupt:
            # The child shares our process group and got the same SIGINT.
            returncode = proc.wait()

        def mark_stopped(inst: Instance) -> None:
            inst.status = InstanceStatus.STOPPED
            inst.stop_time = utc_now()

        updated = self.store.modify(stored.id, mark_stopped)

        if returncode != 0:
            raise ProcessExitedError(stored.id, returncode)
        return updated
