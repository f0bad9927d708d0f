"""Conflict probing between branches.

Two questions are answered here:

1. Would merging an agent's branch into its target conflict right now?
   (:class:`GitConflictDetector`, a dry run that never touches the index or
   any working tree.)
2. Which running agents are editing the same files, and in which order
   should they be merged? (the parallel conflict matrix)

The lifecycle machine depends only on the :class:`ConflictDetector`
protocol, so a different VCS backend can supply its own probe.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from haven.isolation.git import GitProvider

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = ("<<<<<<<", ">>>>>>>")
_STAGES = ("base", "our", "their", "result")


@dataclass(frozen=True)
class ConflictCheck:
    has_conflicts: bool
    files: tuple[str, ...] = ()
    error: str | None = None


@runtime_checkable
class ConflictDetector(Protocol):
    def detect_conflicts(self, target: str, source: str) -> list[str]:
        """Files that would conflict if ``source`` were merged into ``target``."""
        ...


def parse_merge_tree(output: str) -> list[str]:
    """Extract conflicting paths from legacy ``git merge-tree`` output.

    The output is a series of sections. Each starts with an unindented
    description ("changed in both", "added in both", ...), followed by
    indented stage lines (``  our    100644 <sha> <path>``) and then a diff.
    A section conflicts when its diff contains conflict markers.
    """
    conflicts: list[str] = []
    path: str | None = None
    for line in output.splitlines():
        if not line:
            continue
        if line[0].isalpha():
            path = None
            continue
        stripped = line.strip()
        parts = stripped.split(maxsplit=3)
        if line.startswith("  ") and len(parts) == 4 and parts[0] in _STAGES:
            path = parts[3]
            continue
        if path and any(marker in line for marker in CONFLICT_MARKERS) and path not in conflicts:
            conflicts.append(path)
    return conflicts


class GitConflictDetector:
    """Dry-run conflict probe using ``merge-base`` + ``merge-tree``."""

    def __init__(self, git: GitProvider) -> None:
        self.git = git

    def detect_conflicts(self, target: str, source: str) -> list[str]:
        base = self.git.merge_base(target, source)
        if base is None:
            logger.warning("No merge base between %s and %s", target, source)
            return []
        return parse_merge_tree(self.git.merge_tree(base, target, source))


def check_merge_conflicts(detector: ConflictDetector, target: str, source: str) -> ConflictCheck:
    """Wrap a detector call in a :class:`ConflictCheck`."""
    files = detector.detect_conflicts(target, source)
    return ConflictCheck(has_conflicts=bool(files), files=tuple(sorted(files)))


# ---------------------------------------------------------------------------
# Parallel agents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileOverlap:
    task_a: str
    task_b: str
    files: tuple[str, ...]


@dataclass
class ConflictMatrix:
    """Pairwise file overlaps between active agent branches."""

    modified: dict[str, list[str]] = field(default_factory=dict)
    overlaps: list[FileOverlap] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.overlaps)

    def conflicts_for(self, task_id: str) -> list[FileOverlap]:
        return [o for o in self.overlaps if task_id in (o.task_a, o.task_b)]


def get_modified_files(git: GitProvider, branch: str, base: str) -> list[str]:
    return git.diff_names(base, branch)


def detect_file_overlaps(modified: Mapping[str, list[str]]) -> list[FileOverlap]:
    overlaps = []
    ids = sorted(modified)
    for i, a in enumerate(ids):
        files_a = set(modified[a])
        for b in ids[i + 1 :]:
            shared = files_a & set(modified[b])
            if shared:
                overlaps.append(FileOverlap(task_a=a, task_b=b, files=tuple(sorted(shared))))
    return overlaps


def build_conflict_matrix(git: GitProvider, branches: Mapping[str, tuple[str, str]]) -> ConflictMatrix:
    """Build the overlap matrix for active agents.

    Args:
        git: Provider for the main repository.
        branches: ``task_id -> (branch, base_branch)`` for each active agent.
    """
    modified = {
        task_id: get_modified_files(git, branch, base) for task_id, (branch, base) in branches.items()
    }
    return ConflictMatrix(modified=modified, overlaps=detect_file_overlaps(modified))


def suggest_merge_order(matrix: ConflictMatrix) -> list[str]:
    """Merge agents touching fewer files first, then by id."""
    return sorted(matrix.modified, key=lambda t: (len(matrix.modified[t]), t))


def can_merge_without_conflict(matrix: ConflictMatrix, task_id: str, merged: set[str] | None = None) -> bool:
    """True if ``task_id`` shares no files with agents not yet merged."""
    merged = merged or set()
    for overlap in matrix.conflicts_for(task_id):
        other = overlap.task_b if overlap.task_a == task_id else overlap.task_a
        if other not in merged:
            return False
    return True
