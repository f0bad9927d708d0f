"""Status propagation across the Task → Epic → PRD hierarchy.

Starting a task pulls its epic and PRD into "In Progress". Finishing the last
open task of an epic marks the epic ``Auto-Done``, which in turn may mark the
PRD ``Auto-Done``. ``Auto-Done`` means "every known child is finished" and is
left for a human to confirm as ``Done``.

Every operation reads the current status before writing and only writes on a
real transition, so re-running after a crash or a retry is harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from haven.backlog import lexicon
from haven.backlog.repository import ArtefactRepository, Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusTransition:
    """Outcome of one attempted status change."""

    updated: bool
    entity_id: str | None
    previous: str | None = None
    new: str | None = None
    message: str = ""


@dataclass
class CascadeResult:
    task: StatusTransition | None = None
    epic: StatusTransition | None = None
    prd: StatusTransition | None = None
    transitions: list[StatusTransition] = field(default_factory=list)

    @property
    def changed(self) -> list[StatusTransition]:
        return [t for t in self.transitions if t.updated]


class StatusCascade:
    """Applies start/completion cascades through an :class:`ArtefactRepository`."""

    def __init__(self, repository: ArtefactRepository) -> None:
        self.repository = repository

    def _write(self, entity_id: str, previous: str, new: str, message: str) -> StatusTransition:
        self.repository.set_status(entity_id, new)
        self.repository.invalidate()
        logger.info("%s", message)
        return StatusTransition(updated=True, entity_id=entity_id, previous=previous, new=new, message=message)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def escalate_epic_to_in_progress(self, epic_id: str | None) -> StatusTransition:
        if not epic_id:
            return StatusTransition(updated=False, entity_id=None, message="Task has no epic")
        epic = self.repository.get_epic(epic_id)
        if epic is None:
            return StatusTransition(updated=False, entity_id=epic_id, message="Epic not found")
        if not lexicon.is_not_started(epic.status):
            return StatusTransition(
                updated=False, entity_id=epic.id, previous=epic.status, new=epic.status, message="Epic already started"
            )
        return self._write(epic.id, epic.status, lexicon.IN_PROGRESS, f"Epic {epic.id} → In Progress")

    def escalate_prd_to_in_progress(self, prd_id: str | None) -> StatusTransition:
        if not prd_id:
            return StatusTransition(updated=False, entity_id=None, message="Task has no PRD")
        prd = self.repository.get_prd(prd_id)
        if prd is None:
            return StatusTransition(updated=False, entity_id=prd_id, message="PRD not found")
        if not (lexicon.is_draft_or_approved(prd.status) or lexicon.is_not_started(prd.status)):
            return StatusTransition(
                updated=False, entity_id=prd.id, previous=prd.status, new=prd.status, message="PRD already in progress"
            )
        return self._write(prd.id, prd.status, lexicon.IN_PROGRESS, f"PRD {prd.id} → In Progress")

    def escalate_on_task_start(self, task: Task) -> CascadeResult:
        """Move the owning epic and PRD to In Progress if they have not started."""
        result = CascadeResult()
        result.epic = self.escalate_epic_to_in_progress(task.epic_id)
        result.prd = self.escalate_prd_to_in_progress(self._prd_of(task))
        result.transitions = [result.epic, result.prd]
        return result

    def start_task(self, task_id: str) -> CascadeResult:
        """Set a task In Progress and escalate its parents."""
        task = self.repository.get_task(task_id)
        if task is None:
            return CascadeResult(task=StatusTransition(updated=False, entity_id=task_id, message="Task not found"))
        if lexicon.is_in_progress(task.status):
            task_change = StatusTransition(
                updated=False, entity_id=task.id, previous=task.status, new=task.status, message="Task already started"
            )
        else:
            task_change = self._write(task.id, task.status, lexicon.IN_PROGRESS, f"Task {task.id} → In Progress")
        result = self.escalate_on_task_start(task)
        result.task = task_change
        result.transitions.insert(0, task_change)
        return result

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _prd_of(self, task: Task) -> str | None:
        if task.prd_id:
            return task.prd_id
        if task.epic_id:
            epic = self.repository.get_epic(task.epic_id)
            if epic is not None:
                return epic.prd_id
        return None

    def all_epic_tasks_finished(self, epic_id: str, current_task_id: str | None = None) -> bool:
        """True iff the epic has tasks and all are Done or Cancelled.

        ``current_task_id`` counts as Done even if the repository has not
        caught up yet. An epic with no tasks is never considered finished.
        """
        tasks = self.repository.list_tasks(epic_id=epic_id)
        if not tasks:
            return False
        return all(t.id == current_task_id or lexicon.is_finished(t.status) for t in tasks)

    def all_prd_epics_finished(self, prd_id: str) -> bool:
        """True iff the PRD has epics and all are Done, Cancelled or Auto-Done."""
        epics = self.repository.list_epics(prd_id=prd_id)
        if not epics:
            return False
        return all(lexicon.is_finished(e.status) or lexicon.is_auto_done(e.status) for e in epics)

    def check_epic_auto_done(self, epic_id: str, current_task_id: str | None = None) -> StatusTransition:
        if not self.all_epic_tasks_finished(epic_id, current_task_id):
            return StatusTransition(updated=False, entity_id=epic_id, message="Not all tasks are done")
        epic = self.repository.get_epic(epic_id)
        if epic is None:
            return StatusTransition(updated=False, entity_id=epic_id, message="Epic not found")
        if lexicon.is_done(epic.status) or lexicon.is_auto_done(epic.status):
            return StatusTransition(
                updated=False, entity_id=epic.id, previous=epic.status, new=epic.status, message="Epic already done"
            )
        return self._write(
            epic.id, epic.status, lexicon.AUTO_DONE, f"Epic {epic.id} → Auto-Done (to be reviewed for completion)"
        )

    def check_prd_auto_done(self, prd_id: str) -> StatusTransition:
        if not self.all_prd_epics_finished(prd_id):
            return StatusTransition(updated=False, entity_id=prd_id, message="Not all epics are done")
        prd = self.repository.get_prd(prd_id)
        if prd is None:
            return StatusTransition(updated=False, entity_id=prd_id, message="PRD not found")
        if lexicon.is_done(prd.status) or lexicon.is_auto_done(prd.status):
            return StatusTransition(
                updated=False, entity_id=prd.id, previous=prd.status, new=prd.status, message="PRD already done"
            )
        return self._write(
            prd.id, prd.status, lexicon.AUTO_DONE, f"PRD {prd.id} → Auto-Done (to be reviewed for completion)"
        )

    def cascade_task_completion(self, task: Task) -> CascadeResult:
        """Re-evaluate the epic and PRD after ``task`` is marked Done.

        The epic becomes Auto-Done when every sibling is Done or Cancelled.
        Whenever the epic is finished (now or from an earlier run) the PRD is
        re-evaluated: Auto-Done when every epic is finished, otherwise bumped from Draft/Approved to In Progress.
        """
        result = CascadeResult()
        if not task.epic_id:
            return result

        result.epic = self.check_epic_auto_done(task.epic_id, current_task_id=task.id)
        result.transitions.append(result.epic)
        if not result.epic.updated:
            epic = self.repository.get_epic(task.epic_id)
            if epic is None or not (lexicon.is_done(epic.status) or lexicon.is_auto_done(epic.status)):
                return result

        prd_id = self._prd_of(task)
        if not prd_id:
            return result
        result.prd = self.check_prd_auto_done(prd_id)
        if not result.prd.updated:
            prd = self.repository.get_prd(prd_id)
            if prd is not None and lexicon.is_draft_or_approved(prd.status):
                result.prd = self._write(prd.id, prd.status, lexicon.IN_PROGRESS, f"PRD {prd.id} → In Progress")
        result.transitions.append(result.prd)
        return result

    def complete_task(self, task_id: str) -> CascadeResult:
        """Mark a task Done and cascade the completion upward."""
        task = self.repository.get_task(task_id)
        if task is None:
            return CascadeResult(task=StatusTransition(updated=False, entity_id=task_id, message="Task not found"))
        if lexicon.is_done(task.status):
            task_change = StatusTransition(
                updated=False, entity_id=task.id, previous=task.status, new=task.status, message="Task already done"
            )
        else:
            task_change = self._write(task.id, task.status, lexicon.DONE, f"Task {task.id} → Done")
        result = self.cascade_task_completion(task)
        result.task = task_change
        result.transitions.insert(0, task_change)
        return result

    def block_task(self, task_id: str, reason: str = "") -> StatusTransition:
        task = self.repository.get_task(task_id)
        if task is None:
            return StatusTransition(updated=False, entity_id=task_id, message="Task not found")
        if lexicon.is_blocked(task.status):
            return StatusTransition(
                updated=False, entity_id=task.id, previous=task.status, new=task.status, message="Task already blocked"
            )
        suffix = f" ({reason})" if reason else ""
        return self._write(task.id, task.status, lexicon.BLOCKED, f"Task {task.id} → Blocked{suffix}")
