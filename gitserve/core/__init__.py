"""Instance lifecycle and process supervision engine."""

from gitserve.core.errors import (
    AlreadyExistsError,
    GitServeError,
    InvalidStateError,
    LaunchError,
    NotFoundError,
    PersistenceError,
    ProcessExitedError,
    ProcessUnavailableError,
    SignalFailureError,
    WorkspaceError,
)
from gitserve.core.models import TERMINAL_STATUSES, Instance, InstanceStatus
from gitserve.core.process import ProcessSupervisor
from gitserve.core.reconcile import InstanceLister, LivenessReconciler, PruningPolicy
from gitserve.core.stop import StopAllSummary, StopController, StopOutcome
from gitserve.core.store import InstanceStore

__all__ = [
    "AlreadyExistsError",
    "GitServeError",
    "Instance",
    "InstanceLister",
    "InstanceStatus",
    "InstanceStore",
    "InvalidStateError",
    "LaunchError",
    "LivenessReconciler",
    "NotFoundError",
    "PersistenceError",
    "ProcessExitedError",
    "ProcessSupervisor",
    "ProcessUnavailableError",
    "PruningPolicy",
    "SignalFailureError",
    "StopAllSummary",
    "StopController",
    "StopOutcome",
    "TERMINAL_STATUSES",
    "WorkspaceError",
]
