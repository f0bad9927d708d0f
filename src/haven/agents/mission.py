"""Mission and result descriptors exchanged with agent subprocesses.

The orchestrator writes ``mission.yaml`` into the agent directory before
launch and polls for ``result.yaml`` written by the agent on exit.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from haven.atomic_io import atomic_write_yaml, read_yaml
from haven.backlog.repository import Task

MISSION_FILENAME = "mission.yaml"
RESULT_FILENAME = "result.yaml"
DONE_FILENAME = "done"
EXIT_FILENAME = "exit.json"
LOG_FILENAME = "run.log"


class MissionConstraints(BaseModel):
    model_config = ConfigDict(extra="forbid")

    no_git_commit: bool = True


class Mission(BaseModel):
    """Everything an agent is told at launch."""

    model_config = ConfigDict(extra="forbid")

    task_id: str
    epic_id: str | None = None
    prd_id: str | None = None
    title: str = ""
    instruction: str = ""
    context_files: list[str] = Field(default_factory=list)
    constraints: MissionConstraints = Field(default_factory=MissionConstraints)
    timeout: int = 3600
    worktree: str | None = None
    branch: str | None = None
    result_file: str

    @classmethod
    def for_task(
        cls,
        task: Task,
        *,
        result_file: Path,
        instruction: str = "",
        context_files: list[str] | None = None,
        timeout: int = 3600,
        worktree: Path | None = None,
        branch: str | None = None,
    ) -> Mission:
        return cls(
            task_id=task.id,
            epic_id=task.epic_id,
            prd_id=task.prd_id,
            title=task.title,
            instruction=instruction or f"Implement {task.id}: {task.title}".rstrip(": "),
            context_files=list(context_files or []),
            constraints=MissionConstraints(no_git_commit=worktree is not None),
            timeout=timeout,
            worktree=str(worktree) if worktree else None,
            branch=branch,
            result_file=str(result_file),
        )

    def write(self, path: Path) -> None:
        atomic_write_yaml(path, self.model_dump(mode="json"))


class AgentResult(BaseModel):
    """Completion descriptor written by the agent."""

    model_config = ConfigDict(extra="allow")

    status: Literal["completed", "blocked"]
    summary: str = ""
    notes: str = ""
    files_changed: list[str] = Field(default_factory=list)


def load_result(path: Path) -> tuple[AgentResult | None, str | None]:
    """Read ``result.yaml``.

    Returns:
        ``(result, None)`` on success, ``(None, None)`` if absent and
        ``(None, reason)`` if the file is unreadable or invalid.
    """
    data, error = read_yaml(path)
    if error:
        return None, error
    if data is None:
        return None, None
    try:
        return AgentResult.model_validate(data), None
    except ValidationError as e:
        return None, f"Invalid result descriptor: {e.error_count()} error(s): {e.errors()[0]['msg']}"
