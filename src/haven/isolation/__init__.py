"""Execution isolation: git access, worktrees, branch hierarchy, conflict probes."""

from haven.isolation.conflicts import (
    ConflictCheck,
    ConflictDetector,
    ConflictMatrix,
    GitConflictDetector,
    build_conflict_matrix,
    can_merge_without_conflict,
    check_merge_conflicts,
    suggest_merge_order,
)
from haven.isolation.git import GitProvider
from haven.isolation.guards import GuardContext, GuardReport, run_guards
from haven.isolation.worktree import (
    WorktreeContext,
    WorktreeManager,
    get_branch_hierarchy,
    get_parent_branch,
    task_branch,
)

__all__ = [
    "ConflictCheck",
    "ConflictDetector",
    "ConflictMatrix",
    "GitConflictDetector",
    "GitProvider",
    "GuardContext",
    "GuardReport",
    "WorktreeContext",
    "WorktreeManager",
    "build_conflict_matrix",
    "can_merge_without_conflict",
    "check_merge_conflicts",
    "get_branch_hierarchy",
    "get_parent_branch",
    "run_guards",
    "suggest_merge_order",
    "task_branch",
]
