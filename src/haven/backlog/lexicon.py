"""Status vocabulary for the PRD / Epic / Task hierarchy.

Artefacts are hand-edited, so statuses arrive in many spellings ("WIP",
"in-progress", "In Progress"). Every comparison in the orchestrator goes
through this module: keys are lowercased and stripped of spaces, dashes and
underscores before lookup.
"""

from __future__ import annotations

import re
from typing import Literal

EntityKind = Literal["prd", "epic", "task"]

NOT_STARTED = "Not Started"
IN_PROGRESS = "In Progress"
BLOCKED = "Blocked"
DONE = "Done"
CANCELLED = "Cancelled"
AUTO_DONE = "Auto-Done"
DRAFT = "Draft"
IN_REVIEW = "In Review"
APPROVED = "Approved"

STATUSES: dict[str, tuple[str, ...]] = {
    "task": (NOT_STARTED, IN_PROGRESS, BLOCKED, DONE, CANCELLED),
    "epic": (NOT_STARTED, IN_PROGRESS, AUTO_DONE, DONE),
    "prd": (DRAFT, IN_REVIEW, APPROVED, IN_PROGRESS, AUTO_DONE, DONE),
}

STATUS_ALIASES: dict[str, str] = {
    "notstarted": NOT_STARTED,
    "todo": NOT_STARTED,
    "pending": NOT_STARTED,
    "new": NOT_STARTED,
    "inprogress": IN_PROGRESS,
    "wip": IN_PROGRESS,
    "started": IN_PROGRESS,
    "working": IN_PROGRESS,
    "active": IN_PROGRESS,
    "blocked": BLOCKED,
    "stuck": BLOCKED,
    "waiting": BLOCKED,
    "autodone": AUTO_DONE,
    "done": DONE,
    "complete": DONE,
    "completed": DONE,
    "finished": DONE,
    "closed": DONE,
    "cancelled": CANCELLED,
    "canceled": CANCELLED,
    "cancel": CANCELLED,
    "dropped": CANCELLED,
    "abandoned": CANCELLED,
    "wontfix": CANCELLED,
    "draft": DRAFT,
    "inreview": IN_REVIEW,
    "review": IN_REVIEW,
    "reviewing": IN_REVIEW,
    "approved": APPROVED,
}

_SEPARATORS = re.compile(r"[\s_-]+")


def _key(status: str | None) -> str:
    return _SEPARATORS.sub("", (status or "").lower())


def canonical_status(status: str | None) -> str:
    """Return the canonical label for ``status``, or the input when unknown."""
    if not status:
        return "Unknown"
    return STATUS_ALIASES.get(_key(status), status)


def normalize_status(status: str | None, kind: EntityKind = "task") -> str | None:
    """Strictly normalize ``status`` for an entity kind.

    Returns None when the value is unknown or not valid for ``kind``
    (e.g. "Draft" for a task).
    """
    canonical = STATUS_ALIASES.get(_key(status))
    if canonical is None or canonical not in STATUSES[kind]:
        return None
    return canonical


def validate_status(status: str | None, kind: EntityKind) -> str | None:
    """Return an error message for an invalid status, or None if valid."""
    if not status:
        return "Status is missing"
    if normalize_status(status, kind) is None:
        return f'Invalid status "{status}" for {kind}. Valid: {", ".join(STATUSES[kind])}'
    return None


def status_equals(status: str | None, target: str | None) -> bool:
    a, b = _key(status), _key(target)
    if a == b:
        return True
    return STATUS_ALIASES.get(a) is not None and STATUS_ALIASES.get(a) == STATUS_ALIASES.get(b)


def is_done(status: str | None) -> bool:
    return status_equals(status, DONE)


def is_cancelled(status: str | None) -> bool:
    return status_equals(status, CANCELLED)


def is_auto_done(status: str | None) -> bool:
    return status_equals(status, AUTO_DONE)


def is_not_started(status: str | None) -> bool:
    return status_equals(status, NOT_STARTED)


def is_in_progress(status: str | None) -> bool:
    return status_equals(status, IN_PROGRESS)


def is_blocked(status: str | None) -> bool:
    return status_equals(status, BLOCKED)


def is_finished(status: str | None) -> bool:
    """Done or Cancelled: the task no longer blocks anything."""
    return is_done(status) or is_cancelled(status)


def is_draft_or_approved(status: str | None) -> bool:
    return status_equals(status, DRAFT) or status_equals(status, APPROVED)
