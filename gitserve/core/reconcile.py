"""Liveness reconciliation and pruning of instances.

Recorded status is corrected against real process liveness only when a
listing is requested; there is no background timer. Terminal instances
older than the retention window are deleted together with their workspace.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from gitserve.core.errors import GitServeError
from gitserve.core.models import Instance, InstanceStatus, describe_transition, utc_now
from gitserve.core.store import InstanceStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(minutes=1)

Clock = Callable[[], datetime]
Probe = Callable[[int], bool]


def probe_process_group(pgid: int) -> bool:
    """Return True if the process group still exists.

    Sends signal 0, which checks existence without delivering anything.
    EPERM means the group exists but belongs to someone else.
    """
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def remove_workspace(path: str) -> None:
    """Recursively delete a workspace directory. Missing paths are fine."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass


@dataclass
class StatusTransition:
    """A status correction made during reconciliation."""

    instance_id: str
    old_status: InstanceStatus
    new_status: InstanceStatus
    pid: int

    def __str__(self) -> str:
        return describe_transition(self.old_status, self.new_status)


@dataclass
class PruneRecord:
    """Outcome of pruning one instance."""

    instance_id: str
    status: InstanceStatus
    stop_time: datetime | None
    path: str
    record_deleted: bool = False
    workspace_removed: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def orphaned_workspace(self) -> bool:
        """Record is gone but its directory could not be removed."""
        return self.record_deleted and bool(self.path) and not self.workspace_removed


@dataclass
class ListResult:
    """Everything a listing pass observed and changed."""

    instances: list[Instance] = field(default_factory=list)
    transitions: list[StatusTransition] = field(default_factory=list)
    pruned: list[PruneRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class LivenessReconciler:
    """Derives the corrected status of a stored instance."""

    PROBED_STATUSES = {
        InstanceStatus.RUNNING: InstanceStatus.EXITED_UNEXPECTEDLY,
        InstanceStatus.STOPPING: InstanceStatus.STOPPED,
    }

    def __init__(self, probe: Probe = probe_process_group, clock: Clock = utc_now):
        self.probe = probe
        self.clock = clock

    def reconcile(self, instance: Instance) -> tuple[Instance, StatusTransition | None, bool]:
        """Return ``(corrected copy, transition or None, changed)``.

        The input is never modified.
        """
        corrected = instance.model_copy(deep=True)
        transition = None
        changed = False
        now = self.clock()

        target = self.PROBED_STATUSES.get(corrected.status)
        if target is not None and corrected.pid > 0 and not self.probe(corrected.pid):
            transition = StatusTransition(
                instance_id=corrected.id,
                old_status=corrected.status,
                new_status=target,
                pid=corrected.pid,
            )
            corrected.status = target
            corrected.stop_time = now
            changed = True

        # Legacy or incomplete records: give pruning an age to measure from.
        if corrected.is_terminal and corrected.stop_time is None:
            corrected.stop_time = now
            changed = True

        return corrected, transition, changed


class PruningPolicy:
    """Decides whether a terminal instance is old enough to delete."""

    def __init__(self, retention: timedelta = DEFAULT_RETENTION, clock: Clock = utc_now):
        self.retention = retention
        self.clock = clock

    def is_expired(self, instance: Instance) -> bool:
        if not instance.is_terminal or instance.stop_time is None:
            return False
        return self.clock() - instance.stop_time > self.retention


class InstanceLister:
    """The ``list`` operation: reconcile, persist, prune, return survivors."""

    def __init__(
        self,
        store: InstanceStore,
        reconciler: LivenessReconciler | None = None,
        pruning: PruningPolicy | None = None,
        workspace_remover: Callable[[str], None] = remove_workspace,
    ):
        self.store = store
        self.reconciler = reconciler or LivenessReconciler()
        self.pruning = pruning or PruningPolicy()
        self.workspace_remover = workspace_remover

    def list_instances(self) -> ListResult:
        result = ListResult()

        for original in self.store.get_all():
            current, transition, changed = self.reconciler.reconcile(original)

            if changed:
                try:
                    self.store.update(current.id, current)
                except GitServeError as e:
                    message = f"Error updating store for instance {current.id}: {e}"
                    logger.warning(message)
                    result.errors.append(message)
                    result.instances.append(original)
                    continue

            if transition is not None:
                logger.info(
                    f"Instance {current.id}: {transition} (PID {transition.pid} not found)"
                )
                result.transitions.append(transition)

            if self.pruning.is_expired(current):
                result.pruned.append(self._prune(current))
                continue

            result.instances.append(current)

        result.instances.sort(key=_start_sort_key)
        return result

    def _prune(self, instance: Instance) -> PruneRecord:
        """Delete the record and its workspace, each attempted independently."""
        record = PruneRecord(
            instance_id=instance.id,
            status=instance.status,
            stop_time=instance.stop_time,
            path=instance.path,
        )
        logger.info(
            f"Pruning instance {instance.id} ({instance.status.value}, "
            f"stopped at {instance.stop_time})"
        )

        try:
            self.store.delete(instance.id)
            record.record_deleted = True
        except GitServeError as e:
            record.errors.append(f"failed to delete instance {instance.id} from store: {e}")
            logger.warning(record.errors[-1])

        if instance.path:
            try:
                self.workspace_remover(instance.path)
                record.workspace_removed = True
            except OSError as e:
                record.errors.append(f"failed to clean up workspace '{instance.path}': {e}")
                logger.warning(record.errors[-1])

        return record


def _start_sort_key(instance: Instance) -> tuple[bool, datetime | str]:
    if instance.start_time is None:
        return (True, instance.id)
    return (False, instance.start_time)
