"""Graceful termination of one or many instances.

Signals go through ``killpg`` to the whole process group the instance
command leads. A group that no longer exists is an expected
outcome and becomes a status transition, not an error.
"""

from __future__ import annotations

import logging
import os
import signal
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from gitserve.core.errors import (
    GitServeError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ProcessUnavailableError,
    SignalFailureError,
)
from gitserve.core.models import Instance, InstanceStatus, describe_transition, utc_now
from gitserve.core.store import InstanceStore

logger = logging.getLogger(__name__)

SendSignal = Callable[[int, int], None]


class OutcomeKind(str, Enum):
    SIGNALED = "signaled"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StopOutcome:
    """Result of stopping (or skipping) a single instance."""

    instance_id: str
    name: str
    kind: OutcomeKind
    final_status: InstanceStatus | None = None
    pid: int = 0
    reason: str | None = None  # skip reason or error message

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SIGNALED


@dataclass
class StopAllSummary:
    """Aggregate of a bulk stop. Outcomes keep the store's iteration order."""

    project: str | None
    outcomes: list[StopOutcome] = field(default_factory=list)

    def _count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind == kind)

    @property
    def signaled(self) -> int:
        return self._count(OutcomeKind.SIGNALED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeKind.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeKind.SKIPPED)

    def get_failures(self) -> list[StopOutcome]:
        return [o for o in self.outcomes if o.kind == OutcomeKind.FAILED]


class StopController:
    """Sends SIGTERM to instance process groups and records the result.

    USAGE:
        controller = StopController(store)
        outcome = controller.stop("1b9d6bcd-...")
        summary = controller.stop_all(project="myproj")
    """

    def __init__(
        self,
        store: InstanceStore,
        send_signal: SendSignal | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.send_signal = send_signal or os.killpg
        self.clock = clock

    # ------------------------------------------------------------------
    # Single target
    # ------------------------------------------------------------------

    def stop(self, instance_id: str) -> StopOutcome:
        """Stop one running instance.

        Raises:
            NotFoundError: Unknown id.
            InvalidStateError: Status is not ``running``. Nothing changes.
            ProcessUnavailableError: PID 0 recorded; marked ``error_pid_zero``.
            SignalFailureError: SIGTERM refused; status left as is for retry.
            PersistenceError: The resulting transition could not be saved.
        """
        instance = self.store.get(instance_id)
        if instance is None:
            raise NotFoundError(instance_id, transition="stop")

        if instance.status != InstanceStatus.RUNNING:
            raise InvalidStateError(
                instance_id,
                status=instance.status.value,
                expected=InstanceStatus.RUNNING.value,
                transition="stop",
            )

        if instance.pid == 0:
            raise self._mark_pid_zero(instance)

        return self._signal(instance)

    def _mark_pid_zero(self, instance: Instance) -> ProcessUnavailableError:
        """Record ``error_pid_zero`` and return the error for the caller to raise."""
        transition = describe_transition(instance.status, InstanceStatus.ERROR_PID_ZERO)
        message = (
            f"instance '{instance.id}' has PID 0 recorded, cannot stop "
            f"(attempted: {transition})"
        )

        def mark(inst: Instance) -> None:
            inst.status = InstanceStatus.ERROR_PID_ZERO
            inst.stop_time = self.clock()

        try:
            self.store.modify(instance.id, mark)
        except PersistenceError as e:
            error = ProcessUnavailableError(
                f"{message}; additionally failed to record status: {e}",
                instance_id=instance.id,
                transition=transition,
            )
            error.__cause__ = e
            return error

        return ProcessUnavailableError(
            f"{message}. Status updated to '{InstanceStatus.ERROR_PID_ZERO.value}'.",
            instance_id=instance.id,
            transition=transition,
        )

    def _signal(self, instance: Instance) -> StopOutcome:
        """SIGTERM the process group and persist the resulting status."""
        intended = describe_transition(instance.status, InstanceStatus.STOPPING)
        try:
            self.send_signal(instance.pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.info(
                f"Process group {instance.pid} for instance {instance.id} not found; "
                "it has already exited"
            )
            new_status = InstanceStatus.EXITED_OR_NOT_FOUND
        except OSError as e:
            raise SignalFailureError(instance.id, instance.pid, intended, e) from e
        else:
            logger.info(f"Sent SIGTERM to process group {instance.pid} of instance {instance.id}")
            new_status = InstanceStatus.STOPPING

        transition = describe_transition(instance.status, new_status)
        stop_time = self.clock()

        def mark(inst: Instance) -> None:
            # The reaper may have recorded the exit while we were signaling.
            if inst.is_terminal:
                return
            inst.status = new_status
            inst.stop_time = stop_time

        try:
            updated = self.store.modify(instance.id, mark)
        except PersistenceError as e:
            raise PersistenceError(
                f"signal handled for instance '{instance.id}', but failed to update "
                f"status ({transition}): {e}",
                instance_id=instance.id,
                transition=transition,
            ) from e

        return StopOutcome(
            instance_id=updated.id,
            name=updated.name,
            kind=OutcomeKind.SIGNALED,
            final_status=updated.status,
            pid=updated.pid,
        )

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def stop_all(self, project: str | None = None) -> StopAllSummary:
        """Stop every running instance, optionally only one project's.

        ``project`` is matched case-insensitively against the workspace
        directory name. Eligible instances are signaled concurrently and
        all tasks are joined before the summary is returned.
        """
        summary = StopAllSummary(project=project)
        slots: list[StopOutcome | None] = []
        eligible: list[tuple[int, Instance]] = []

        for instance in self.store.get_all():
            reason = self._skip_reason(instance, project)
            if reason is not None:
                slots.append(
                    StopOutcome(
                        instance_id=instance.id,
                        name=instance.name,
                        kind=OutcomeKind.SKIPPED,
                        final_status=instance.status,
                        pid=instance.pid,
                        reason=reason,
                    )
                )
                continue
            eligible.append((len(slots), instance))
            slots.append(None)

        if eligible:
            with ThreadPoolExecutor(
                max_workers=len(eligible), thread_name_prefix="gitserve-stop"
            ) as pool:
                futures = [
                    (index, instance, pool.submit(self._signal, instance))
                    for index, instance in eligible
                ]
                for index, instance, future in futures:
                    slots[index] = self._collect(instance, future)

        summary.outcomes = [outcome for outcome in slots if outcome is not None]
        return summary

    @staticmethod
    def _skip_reason(instance: Instance, project: str | None) -> str | None:
        if project:
            if not instance.path:
                return "missing path for project filtering"
            if instance.project_name.casefold() != project.casefold():
                return "project name mismatch"
        if instance.status != InstanceStatus.RUNNING:
            return f"status is '{instance.status.value}', not 'running'"
        if instance.pid == 0:
            return "PID is 0"
        return None

    @staticmethod
    def _collect(instance: Instance, future) -> StopOutcome:
        try:
            return future.result()
        except GitServeError as e:
            reason = str(e)
        except Exception as e:
            # One bad record must not sink the rest of the batch.
            logger.error(f"Stopping instance {instance.id} failed unexpectedly: {e!r}")
            reason = f"unexpected error stopping instance '{instance.id}': {e!r}"
        return StopOutcome(
            instance_id=instance.id,
            name=instance.name,
            kind=OutcomeKind.FAILED,
            final_status=instance.status,
            pid=instance.pid,
            reason=reason,
        )
