"""JSON-backed store of instance records.

The whole collection lives in memory behind a reader/writer lock and is
rewritten to a single JSON document on every mutation (write-through).

KNOWN LIMITATION: there is no cross-process locking. The store assumes one
controlling gitserve process at a time. If a second invocation rewrites the
file while this one holds it in memory, the last writer wins and the other
invocation's changes are lost. This is not detected.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from gitserve.core.errors import AlreadyExistsError, NotFoundError, PersistenceError
from gitserve.core.models import Instance
from gitserve.core.rwlock import ReadWriteLock

logger = logging.getLogger(__name__)


class InstanceStore:
    """Durable keyed collection of instances.

    Load on construction, flush on every mutation. Records returned to
    callers are copies; the store is the sole owner of the canonical ones.
    """

    INSTANCES_FILE = "gitserve_instances.json"
    DIR_MODE = 0o750
    FILE_MODE = 0o600

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)
        self.file_path = self.data_dir / self.INSTANCES_FILE
        self._instances: dict[str, Instance] = {}
        self._lock = ReadWriteLock()

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True, mode=self.DIR_MODE)
        except OSError as e:
            raise PersistenceError(
                f"failed to create storage directory {self.data_dir}: {e}"
            ) from e

        self.load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Replace in-memory state with the persisted document.

        A missing or zero-byte file is an empty store. Anything that does
        not decode into valid records resets the store to empty and raises.
        """
        with self._lock.write_lock():
            try:
                data = self.file_path.read_bytes()
            except FileNotFoundError:
                self._instances = {}
                return
            except OSError as e:
                raise PersistenceError(
                    f"error reading instances file {self.file_path}: {e}"
                ) from e

            if not data:
                self._instances = {}
                return

            try:
                self._instances = self._decode(data)
            except (ValueError, ValidationError) as e:
                self._instances = {}
                raise PersistenceError(
                    f"error decoding instances data from {self.file_path}: {e}. "
                    "Store reset to empty."
                ) from e

        logger.debug(f"Loaded {len(self._instances)} instances from {self.file_path}")

    @staticmethod
    def _decode(data: bytes) -> dict[str, Instance]:
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError(f"expected a JSON object, got {type(raw).__name__}")

        instances: dict[str, Instance] = {}
        for key, record in raw.items():
            instance = Instance.model_validate(record)
            if instance.id != key:
                raise ValueError(f"record key '{key}' does not match instance id '{instance.id}'")
            instances[key] = instance
        return instances

    def _save(self) -> None:
        """Atomically rewrite the document. Caller must hold the write lock."""
        payload = json.dumps(
            {key: inst.to_record() for key, inst in self._instances.items()},
            indent=2,
        )

        # Atomic write via temp file + replace.
        fd, temp_path = tempfile.mkstemp(
            prefix=".instances_",
            suffix=".tmp",
            dir=str(self.data_dir),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, self.FILE_MODE)
            os.replace(temp_path, self.file_path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise PersistenceError(
                f"error writing instances file {self.file_path}: {e}"
            ) from e

        logger.debug(f"Saved {len(self._instances)} instances to {self.file_path}")

    def _commit(self, previous: dict[str, Instance], instance_id: str, action: str) -> None:
        """Persist, restoring ``previous`` if the write fails."""
        try:
            self._save()
        except PersistenceError as e:
            self._instances = previous
            raise PersistenceError(
                f"failed to persist {action} of instance '{instance_id}': {e}",
                instance_id=instance_id,
                transition=action,
            ) from e

    # ------------------------------------------------------------------
    # Collection operations
    # ------------------------------------------------------------------

    def add(self, instance: Instance) -> None:
        with self._lock.write_lock():
            if instance.id in self._instances:
                raise AlreadyExistsError(instance.id)
            previous = dict(self._instances)
            self._instances[instance.id] = instance.model_copy(deep=True)
            self._commit(previous, instance.id, "add")

    def get(self, instance_id: str) -> Instance | None:
        with self._lock.read_lock():
            instance = self._instances.get(instance_id)
            return instance.model_copy(deep=True) if instance else None

    def get_all(self) -> list[Instance]:
        with self._lock.read_lock():
            return [inst.model_copy(deep=True) for inst in self._instances.values()]

    def update(self, instance_id: str, instance: Instance) -> None:
        with self._lock.write_lock():
            if instance_id not in self._instances:
                raise NotFoundError(instance_id, transition="update")
            if instance.id != instance_id:
                raise ValueError(
                    f"cannot store instance '{instance.id}' under ID '{instance_id}'"
                )
            previous = dict(self._instances)
            self._instances[instance_id] = instance.model_copy(deep=True)
            self._commit(previous, instance_id, "update")

    def modify(self, instance_id: str, func: Callable[[Instance], None]) -> Instance:
        """Apply ``func`` to a copy of the record and persist it, atomically.

        The read, the change and the write all happen under one write-lock
        hold, so concurrent transitions on the same record cannot interleave.
        ``func`` may raise to abort without changing anything.
        """
        with self._lock.write_lock():
            current = self._instances.get(instance_id)
            if current is None:
                raise NotFoundError(instance_id, transition="modify")
            working = current.model_copy(deep=True)
            func(working)
            previous = dict(self._instances)
            self._instances[instance_id] = working
            self._commit(previous, instance_id, "update")
            return working.model_copy(deep=True)

    def delete(self, instance_id: str) -> None:
        with self._lock.write_lock():
            if instance_id not in self._instances:
                raise NotFoundError(instance_id, transition="delete")
            previous = dict(self._instances)
            del self._instances[instance_id]
            self._commit(previous, instance_id, "delete")

    def __len__(self) -> int:
        with self._lock.read_lock():
            return len(self._instances)

    def __contains__(self, instance_id: object) -> bool:
        with self._lock.read_lock():
            return instance_id in self._instances
