"""Backlog model: status vocabulary, ids, repository, dependency graph, cascade."""

from haven.backlog.cascade import CascadeResult, StatusCascade, StatusTransition
from haven.backlog.graph import (
    MissingReference,
    ReadyTask,
    TaskGraph,
    TaskNode,
    ancestors,
    blockers_resolved,
    build_graph,
    descendants,
    detect_cycles,
    impact,
    longest_path,
    ready_tasks,
    roots,
    unresolved_blockers,
    validate_references,
)
from haven.backlog.ids import extract_epic_id, extract_prd_id, extract_task_id, normalize_id
from haven.backlog.repository import ArtefactRepository, Epic, InMemoryRepository, Prd, Story, Task

__all__ = [
    "ArtefactRepository",
    "CascadeResult",
    "Epic",
    "InMemoryRepository",
    "MissingReference",
    "Prd",
    "ReadyTask",
    "StatusCascade",
    "StatusTransition",
    "Story",
    "Task",
    "TaskGraph",
    "TaskNode",
    "ancestors",
    "blockers_resolved",
    "build_graph",
    "descendants",
    "detect_cycles",
    "extract_epic_id",
    "extract_prd_id",
    "extract_task_id",
    "impact",
    "longest_path",
    "normalize_id",
    "ready_tasks",
    "roots",
    "unresolved_blockers",
    "validate_references",
]
