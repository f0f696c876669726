"""Data models for gitserve instances.

Uses Pydantic for schema-enforced persisted records.
"""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InstanceStatus(str, Enum):
    """Lifecycle status of an instance."""

    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    EXITED_UNEXPECTEDLY = "exited_unexpectedly"
    FAILED = "failed"
    EXITED_OR_NOT_FOUND = "exited_or_not_found"
    ERROR_PID_ZERO = "error_pid_zero"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Statuses from which nothing progresses without a re-launch; eligible for pruning.
TERMINAL_STATUSES = frozenset(
    {
        InstanceStatus.STOPPED,
        InstanceStatus.EXITED_UNEXPECTEDLY,
        InstanceStatus.FAILED,
        InstanceStatus.EXITED_OR_NOT_FOUND,
        InstanceStatus.ERROR_PID_ZERO,
    }
)

# Older records wrote Go's zero time instead of leaving the field empty.
_ZERO_TIME_PREFIX = "0001-01-01T00:00:00"

# Process-group ids are C ints; anything larger cannot be signaled.
MAX_PID = 2**31 - 1


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def describe_transition(old: InstanceStatus | str, new: InstanceStatus | str) -> str:
    """Render a status transition for messages, e.g. ``running -> stopping``."""
    old_value = old.value if isinstance(old, InstanceStatus) else old
    new_value = new.value if isinstance(new, InstanceStatus) else new
    return f"{old_value} -> {new_value}"


class Instance(BaseModel):
    """One managed execution of a command inside an isolated workspace.

    Persisted keys keep the camelCase names of the on-disk document
    (``startTime``, ``stopTime``, ``logPath``). ``gitserveId`` is unused but
    carried through so older documents survive a rewrite unchanged.
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: str = Field(frozen=True, min_length=1)
    name: str = Field(default="", frozen=True)
    pid: int = Field(default=0, ge=0, le=MAX_PID)  # 0 = never successfully started
    port: int = Field(default=0, ge=0)
    path: str = ""
    status: InstanceStatus = InstanceStatus.CREATED
    start_time: datetime | None = Field(default=None, alias="startTime")
    stop_time: datetime | None = Field(default=None, alias="stopTime")
    log_path: str = Field(default="", alias="logPath")
    command: str = ""
    gitserve_id: str = Field(default="", alias="gitserveId")

    @field_validator("start_time", "stop_time", mode="before")
    @classmethod
    def _normalize_time(cls, value: object) -> object:
        if value is None or value == "":
            return None
        if isinstance(value, str) and value.startswith(_ZERO_TIME_PREFIX):
            return None
        if isinstance(value, datetime):
            if value.year == 1:
                return None
            if value.tzinfo is None:
                return value.replace(tzinfo=UTC)
        return value

    @field_validator("start_time", "stop_time")
    @classmethod
    def _ensure_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def project_name(self) -> str:
        """Workspace directory basename (the checked-out repository's name)."""
        return Path(self.path).name if self.path else ""

    def to_record(self) -> dict:
        """Serialize to the persisted JSON shape."""
        return self.model_dump(mode="json", by_alias=True)
