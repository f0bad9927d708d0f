"""Backlog identifier parsing.

IDs are written loosely by humans (``T1``, ``t01``, ``PRD-1``, ``prd1``) and
canonicalized to three-digit padding (``T001``, ``PRD-001``) before they are
used as graph keys, branch names or record-store keys.
"""

from __future__ import annotations

import re
from typing import Literal

IdKind = Literal["prd", "epic", "task", "story"]

ID_DIGITS = 3

_PATTERNS: tuple[tuple[IdKind, re.Pattern[str], str], ...] = (
    ("prd", re.compile(r"^PRD-?(\d+)$", re.IGNORECASE), "PRD-"),
    ("epic", re.compile(r"^E(\d+)$", re.IGNORECASE), "E"),
    ("task", re.compile(r"^T(\d+)$", re.IGNORECASE), "T"),
    ("story", re.compile(r"^S(\d+)$", re.IGNORECASE), "S"),
)

_PRD_REF = re.compile(r"PRD-?(\d+)", re.IGNORECASE)
_EPIC_REF = re.compile(r"(?<![A-Za-z])E(\d+)", re.IGNORECASE)
_TASK_REF = re.compile(r"^\s*(T\d+)", re.IGNORECASE)


def format_id(prefix: str, number: int, digits: int = ID_DIGITS) -> str:
    return f"{prefix}{number:0{digits}d}"


def normalize_id(raw: str | None) -> str | None:
    """Canonicalize an entity id.

    >>> normalize_id("t2")
    'T002'
    >>> normalize_id("PRD-1")
    'PRD-001'

    Unrecognized ids come back stripped and upper-cased.
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    for _kind, pattern, prefix in _PATTERNS:
        match = pattern.match(value)
        if match:
            return format_id(prefix, int(match.group(1)))
    return value.upper()


def entity_kind(raw: str | None) -> IdKind | None:
    if not raw:
        return None
    value = raw.strip()
    for kind, pattern, _prefix in _PATTERNS:
        if pattern.match(value):
            return kind
    return None


def extract_prd_id(parent: str | None) -> str | None:
    """Pull the PRD id out of a parent reference like ``"PRD-001 / E002"``."""
    if not parent:
        return None
    match = _PRD_REF.search(parent)
    return format_id("PRD-", int(match.group(1))) if match else None


def extract_epic_id(parent: str | None) -> str | None:
    """Pull the epic id out of a parent reference like ``"PRD-001 / E002"``."""
    if not parent:
        return None
    match = _EPIC_REF.search(parent)
    return format_id("E", int(match.group(1))) if match else None


def extract_task_id(entry: str | None) -> str | None:
    """Read the task id at the start of a blocked_by entry (``"T002 (schema)"``)."""
    if not entry:
        return None
    match = _TASK_REF.match(entry)
    return normalize_id(match.group(1)) if match else None
