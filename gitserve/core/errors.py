"""Typed failures surfaced by the instance lifecycle engine.

Every error can carry the instance id and the status transition that was
being attempted, so command-level messages say which instance failed, what
was tried, and why.
"""

from __future__ import annotations


class GitServeError(Exception):
    """Base class for all gitserve failures."""

    def __init__(
        self,
        message: str,
        instance_id: str | None = None,
        transition: str | None = None,
    ):
        self.instance_id = instance_id
        self.transition = transition
        super().__init__(message)


class NotFoundError(GitServeError):
    """No instance with the given id exists in the store."""

    def __init__(self, instance_id: str, transition: str | None = None):
        message = f"no instance found with ID '{instance_id}'"
        if transition:
            message += f" (attempted: {transition})"
        super().__init__(message, instance_id=instance_id, transition=transition)


class AlreadyExistsError(GitServeError):
    """An instance with the same id is already stored."""

    def __init__(self, instance_id: str):
        super().__init__(
            f"instance with ID '{instance_id}' already exists", instance_id=instance_id
        )


class InvalidStateError(GitServeError):
    """Operation is not valid for the instance's current status."""

    def __init__(self, instance_id: str, status: str, expected: str, transition: str):
        self.status = status
        self.expected = expected
        super().__init__(
            f"instance '{instance_id}' is not in a '{expected}' state "
            f"(current status: {status}); cannot {transition}",
            instance_id=instance_id,
            transition=transition,
        )


class ProcessUnavailableError(GitServeError):
    """The instance has no usable process id."""


class SignalFailureError(GitServeError):
    """The OS refused a signal for a reason other than "no such process"."""

    def __init__(self, instance_id: str, pgid: int, transition: str, cause: OSError):
        self.pgid = pgid
        self.cause = cause
        super().__init__(
            f"failed to send SIGTERM to process group {pgid} for instance "
            f"'{instance_id}' (attempted: {transition}): {cause}; status unchanged",
            instance_id=instance_id,
            transition=transition,
        )


class PersistenceError(GitServeError):
    """Reading, writing or decoding the instance document failed."""


class LaunchError(GitServeError):
    """The instance command or its log files could not be created."""


class ProcessExitedError(GitServeError):
    """A foreground command ran and exited non-zero.

    Distinct from LaunchError: the process did start.
    """

    def __init__(self, instance_id: str, returncode: int):
        self.returncode = returncode
        super().__init__(
            f"process for instance '{instance_id}' exited with code {returncode}",
            instance_id=instance_id,
        )


class WorkspaceError(GitServeError):
    """Workspace allocation or repository preparation failed."""
