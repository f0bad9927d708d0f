"""Durable per-task agent records.

One JSON file per task, ``<haven>/agents/<TASK_ID>/record.json``, written
atomically. The same directory holds the agent's mission, log and completion
sentinels, so everything about one agent can be inspected or deleted as a
unit.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Protocol

from haven.atomic_io import AtomicWriteError, atomic_write_json, read_json
from haven.errors import RecordStoreError
from haven.locking import HavenLocks

logger = logging.getLogger(__name__)

AgentStatus = Literal["spawned", "running", "completed", "error", "reaped", "killed", "rejected"]

LIVE_STATES: frozenset[str] = frozenset({"spawned", "running"})
FINISHED_STATES: frozenset[str] = frozenset({"completed", "error"})
TERMINAL_STATES: frozenset[str] = frozenset({"reaped", "killed", "rejected"})

RECORD_FILENAME = "record.json"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class WorktreeRef:
    path: str
    branch: str
    base_branch: str
    branching: str = "flat"


@dataclass(frozen=True)
class AgentRecord:
    """Lifecycle state of the agent working on one task.

    ``pid`` is only kept while the status is spawned or running; every other
    status drops it (see :meth:`normalized`).
    """

    task_id: str
    status: AgentStatus
    spawned_at: str
    pid: int | None = None
    worktree: WorktreeRef | None = None
    mission_file: str | None = None
    log_file: str | None = None
    timeout: int | None = None
    ended_at: str | None = None
    exit_code: int | None = None
    exit_signal: int | None = None
    result_status: str | None = None
    merge_strategy: str | None = None
    merged: bool = False
    cleaned_up: bool = False
    merge_conflicts: tuple[str, ...] = ()
    dirty_worktree: bool = False
    uncommitted_files: tuple[str, ...] = ()
    reaped_at: str | None = None
    killed_at: str | None = None
    rejected_at: str | None = None
    reject_reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATES

    def normalized(self) -> AgentRecord:
        if self.status not in LIVE_STATES and self.pid is not None:
            return replace(self, pid=None)
        return self

    def evolve(self, **changes: Any) -> AgentRecord:
        return replace(self, **changes).normalized()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["merge_conflicts"] = list(self.merge_conflicts)
        data["uncommitted_files"] = list(self.uncommitted_files)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRecord:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        extra = dict(kwargs.pop("extra", {}) or {})
        extra.update({k: v for k, v in data.items() if k not in known})
        try:
            worktree = kwargs.pop("worktree", None)
            if isinstance(worktree, dict):
                kwargs["worktree"] = WorktreeRef(**worktree)
            kwargs["merge_conflicts"] = tuple(kwargs.get("merge_conflicts", ()))
            kwargs["uncommitted_files"] = tuple(kwargs.get("uncommitted_files", ()))
            return cls(extra=extra, **kwargs)
        except TypeError as e:
            raise RecordStoreError(f"Malformed agent record for {data.get('task_id')!r}: {e}") from e


class AgentRecordStore(Protocol):
    """Key-value store of agent records addressed by task id."""

    def get(self, task_id: str) -> AgentRecord | None: ...

    def put(self, record: AgentRecord) -> None: ...

    def delete(self, task_id: str) -> bool: ...

    def list_ids(self) -> list[str]: ...


class FileAgentRecordStore:
    """Agent records as JSON files under ``<haven>/agents``."""

    def __init__(self, haven_dir: Path | str, locks: HavenLocks | None = None) -> None:
        self.haven_dir = Path(haven_dir)
        self.agents_dir = self.haven_dir / "agents"
        self.locks = locks or HavenLocks(self.haven_dir)

    def agent_dir(self, task_id: str) -> Path:
        return self.agents_dir / task_id

    def record_path(self, task_id: str) -> Path:
        return self.agent_dir(task_id) / RECORD_FILENAME

    def get(self, task_id: str) -> AgentRecord | None:
        """Load a record.

        Raises:
            RecordStoreError: If the file exists but cannot be parsed.
        """
        path = self.record_path(task_id)
        data, error = read_json(path)
        if error:
            raise RecordStoreError(f"Corrupted agent record {path}: {error}")
        if data is None:
            return None
        if not isinstance(data, dict):
            raise RecordStoreError(f"Corrupted agent record {path}: expected an object")
        return AgentRecord.from_dict(data)

    def put(self, record: AgentRecord) -> None:
        record = record.normalized()
        with self.locks.record_lock(record.task_id):
            try:
                atomic_write_json(self.record_path(record.task_id), record.to_dict())
            except AtomicWriteError as e:
                raise RecordStoreError(str(e)) from e
        logger.debug("Saved agent record %s (%s)", record.task_id, record.status)

    def delete(self, task_id: str) -> bool:
        """Delete the record and every file in the agent directory."""
        directory = self.agent_dir(task_id)
        if not directory.exists():
            return False
        with self.locks.record_lock(task_id):
            shutil.rmtree(directory)
        return True

    def list_ids(self) -> list[str]:
        if not self.agents_dir.exists():
            return []
        return sorted(p.name for p in self.agents_dir.iterdir() if (p / RECORD_FILENAME).exists())
