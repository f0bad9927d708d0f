"""Dependency graph over backlog tasks.

The graph is rebuilt from the repository for every query; nothing here holds
state between calls. Edges come from each task's ``blocked_by`` list:

- ``node.blocked_by``: ids this task waits on (upstream)
- ``graph.blocks[id]``: ids waiting on ``id`` (downstream, the reverse map)

Scheduling priority is derived from the downstream side: a task that unblocks
more work (``impact``) or heads a longer chain (``longest_path``) goes first.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from haven.backlog.ids import extract_task_id
from haven.backlog.lexicon import is_finished, is_in_progress, is_not_started
from haven.backlog.repository import Task
from haven.errors import GraphCycleError


@dataclass
class TaskNode:
    """A task normalized for graph queries."""

    id: str
    status: str
    title: str = ""
    blocked_by: list[str] = field(default_factory=list)
    blocked_by_raw: list[str] = field(default_factory=list)
    epic_id: str | None = None
    prd_id: str | None = None
    parent: str | None = None
    assignee: str | None = None
    effort: str | None = None
    priority: str | None = None
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_task(cls, task: Task) -> TaskNode:
        blockers: list[str] = []
        for entry in task.blocked_by:
            blocker = extract_task_id(entry)
            if blocker and blocker not in blockers:
                blockers.append(blocker)
        return cls(
            id=task.id,
            status=task.status,
            title=task.title,
            blocked_by=blockers,
            blocked_by_raw=list(task.blocked_by),
            epic_id=task.epic_id,
            prd_id=task.prd_id,
            parent=task.parent,
            assignee=task.assignee,
            effort=task.effort,
            priority=task.priority,
            tags=list(task.tags),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "title": self.title,
            "blocked_by": list(self.blocked_by),
            "epic_id": self.epic_id,
            "prd_id": self.prd_id,
            "tags": list(self.tags),
        }


@dataclass
class TaskGraph:
    """Nodes keyed by normalized id plus the reverse ``blocks`` index."""

    nodes: dict[str, TaskNode] = field(default_factory=dict)
    blocks: dict[str, list[str]] = field(default_factory=dict)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependents(self, task_id: str) -> list[str]:
        return self.blocks.get(task_id, [])


@dataclass(frozen=True)
class MissingReference:
    """A ``blocked_by`` entry naming a task that does not exist."""

    task_id: str
    missing_id: str


@dataclass(frozen=True)
class ReadyTask:
    node: TaskNode
    impact: int
    critical_path: int


def build_graph(tasks: Iterable[Task]) -> TaskGraph:
    """Build nodes and the reverse ``blocks`` index in O(n + e)."""
    graph = TaskGraph()
    for task in tasks:
        graph.nodes[task.id] = TaskNode.from_task(task)

    for node in graph.nodes.values():
        for blocker in node.blocked_by:
            graph.blocks.setdefault(blocker, []).append(node.id)
    for dependents in graph.blocks.values():
        dependents.sort()
    return graph


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------


def _upstream(graph: TaskGraph, task_id: str) -> list[str]:
    return [b for b in graph.nodes[task_id].blocked_by if b in graph.nodes]


def _cycle_key(cycle: list[str]) -> tuple[str, ...]:
    body = cycle[:-1]
    pivot = body.index(min(body))
    return tuple(body[pivot:] + body[:pivot])


def _dfs_cycles(graph: TaskGraph) -> Iterator[list[str]]:
    """Depth-first traversal with an explicit recursion stack.

    Yields ``path[start:] + [node]`` for every back edge found.
    """
    visited: set[str] = set()
    for root in sorted(graph.nodes):
        if root in visited:
            continue
        path: list[str] = [root]
        on_stack: set[str] = {root}
        visited.add(root)
        stack: list[Iterator[str]] = [iter(_upstream(graph, root))]
        while stack:
            advanced = False
            for neighbor in stack[-1]:
                if neighbor in on_stack:
                    start = path.index(neighbor)
                    yield path[start:] + [neighbor]
                elif neighbor not in visited:
                    visited.add(neighbor)
                    on_stack.add(neighbor)
                    path.append(neighbor)
                    stack.append(iter(_upstream(graph, neighbor)))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                on_stack.discard(path.pop())


def _cyclic_core(graph: TaskGraph) -> set[str]:
    """Nodes left after repeatedly peeling sources and sinks.

    Every node on a cycle survives; DAG-only nodes are removed.
    """
    remaining = set(graph.nodes)
    upstream = {n: set(_upstream(graph, n)) for n in remaining}
    downstream: dict[str, set[str]] = {n: set() for n in remaining}
    for n, ups in upstream.items():
        for u in ups:
            downstream[u].add(n)

    queue = deque(n for n in remaining if not upstream[n] or not downstream[n])
    while queue:
        n = queue.popleft()
        if n not in remaining:
            continue
        remaining.discard(n)
        for u in upstream[n]:
            downstream[u].discard(n)
            if u in remaining and not downstream[u]:
                queue.append(u)
        for d in downstream[n]:
            upstream[d].discard(n)
            if d in remaining and not upstream[d]:
                queue.append(d)
    return remaining


def _cycle_through(graph: TaskGraph, start: str, allowed: set[str]) -> list[str] | None:
    """Shortest cycle through ``start`` using only ``allowed`` nodes (BFS)."""
    parents: dict[str, str] = {}
    queue = deque([start])
    seen = {start}
    while queue:
        current = queue.popleft()
        for neighbor in _upstream(graph, current):
            if neighbor == start:
                path = [current]
                while path[-1] != start:
                    path.append(parents[path[-1]])
                path.reverse()
                return path + [start]
            if neighbor in allowed and neighbor not in seen:
                seen.add(neighbor)
                parents[neighbor] = current
                queue.append(neighbor)
    return None


def detect_cycles(graph: TaskGraph) -> list[list[str]]:
    """Return every distinct dependency cycle as an ordered id list.

    Each cycle is closed by repeating its first id (``["T001", "T002",
    "T001"]``). Every task that lies on some cycle appears in at least one
    returned cycle. The result is empty iff the graph is acyclic.
    """
    cycles: list[list[str]] = []
    seen_keys: set[tuple[str, ...]] = set()

    def _add(cycle: list[str]) -> None:
        key = _cycle_key(cycle)
        if key not in seen_keys:
            seen_keys.add(key)
            cycles.append(cycle)

    for cycle in _dfs_cycles(graph):
        _add(cycle)

    if cycles:
        covered = {n for c in cycles for n in c}
        core = _cyclic_core(graph)
        for node in sorted(core - covered):
            if node in covered:
                continue
            cycle = _cycle_through(graph, node, core)
            if cycle is not None:
                _add(cycle)
                covered.update(cycle)
    return cycles


def _require_acyclic(graph: TaskGraph) -> None:
    cycles = detect_cycles(graph)
    if cycles:
        raise GraphCycleError(cycles)


# ---------------------------------------------------------------------------
# Readiness and priority
# ---------------------------------------------------------------------------


def unresolved_blockers(node: TaskNode, graph: TaskGraph) -> list[str]:
    """Blocker ids that are missing from the graph or not Done/Cancelled."""
    unresolved = []
    for blocker in node.blocked_by:
        target = graph.nodes.get(blocker)
        if target is None or not is_finished(target.status):
            unresolved.append(blocker)
    return unresolved


def blockers_resolved(node: TaskNode, graph: TaskGraph) -> bool:
    """True iff every blocker exists and is Done or Cancelled.

    Unknown ids count as unresolved.
    """
    return not unresolved_blockers(node, graph)


def longest_path(
    graph: TaskGraph,
    task_id: str,
    memo: dict[str, tuple[int, list[str]]] | None = None,
) -> tuple[int, list[str]]:
    """Critical-path length from ``task_id`` to a sink along ``blocks`` edges.

    A task that blocks nothing has length 1. ``memo`` may be shared across
    calls within one query.

    Raises:
        GraphCycleError: If a cycle is reachable from ``task_id``.
    """
    memo = {} if memo is None else memo
    if task_id in memo:
        return memo[task_id]

    in_progress: list[str] = [task_id]
    on_path: set[str] = {task_id}
    stack: list[Iterator[str]] = [iter(graph.dependents(task_id))]
    while stack:
        current = in_progress[-1]
        pushed = False
        for child in stack[-1]:
            if child in memo:
                continue
            if child in on_path:
                start = in_progress.index(child)
                raise GraphCycleError([in_progress[start:] + [child]])
            in_progress.append(child)
            on_path.add(child)
            stack.append(iter(graph.dependents(child)))
            pushed = True
            break
        if pushed:
            continue
        best: tuple[int, list[str]] = (0, [])
        for child in graph.dependents(current):
            if memo[child][0] > best[0]:
                best = memo[child]
        memo[current] = (best[0] + 1, [current] + best[1])
        stack.pop()
        on_path.discard(in_progress.pop())
    return memo[task_id]


def impact(graph: TaskGraph, task_id: str) -> int:
    """Number of distinct tasks transitively waiting on ``task_id``."""
    seen: set[str] = set()
    queue = deque(graph.dependents(task_id))
    while queue:
        current = queue.popleft()
        if current in seen or current == task_id:
            continue
        seen.add(current)
        queue.extend(graph.dependents(current))
    return len(seen)


def ready_tasks(graph: TaskGraph, include_in_progress: bool = False) -> list[ReadyTask]:
    """Tasks whose blockers are all finished, highest priority first.

    Sorted by impact (descending), then critical-path length (descending),
    then id for a stable order.

    Raises:
        GraphCycleError: If the graph contains any cycle.
    """
    _require_acyclic(graph)

    memo: dict[str, tuple[int, list[str]]] = {}
    ready: list[ReadyTask] = []
    for node in graph.nodes.values():
        eligible = is_not_started(node.status) or (include_in_progress and is_in_progress(node.status))
        if not eligible or not blockers_resolved(node, graph):
            continue
        ready.append(
            ReadyTask(
                node=node,
                impact=impact(graph, node.id),
                critical_path=longest_path(graph, node.id, memo)[0],
            )
        )
    ready.sort(key=lambda r: (-r.impact, -r.critical_path, r.node.id))
    return ready


def validate_references(graph: TaskGraph) -> list[MissingReference]:
    """Report ``blocked_by`` ids that do not resolve to a known task."""
    missing = []
    for task_id in sorted(graph.nodes):
        for blocker in graph.nodes[task_id].blocked_by:
            if blocker not in graph.nodes:
                missing.append(MissingReference(task_id=task_id, missing_id=blocker))
    return missing


# ---------------------------------------------------------------------------
# Traversal helpers
# ---------------------------------------------------------------------------


def _reachable(start: str, step) -> list[str]:
    seen: set[str] = set()
    queue = deque(step(start))
    while queue:
        current = queue.popleft()
        if current in seen or current == start:
            continue
        seen.add(current)
        queue.extend(step(current))
    return sorted(seen)


def ancestors(graph: TaskGraph, task_id: str) -> list[str]:
    """All tasks ``task_id`` transitively waits on (known ids only)."""
    return _reachable(task_id, lambda n: _upstream(graph, n) if n in graph.nodes else [])


def descendants(graph: TaskGraph, task_id: str) -> list[str]:
    """All tasks transitively waiting on ``task_id``."""
    return _reachable(task_id, graph.dependents)


def roots(graph: TaskGraph) -> list[str]:
    """Tasks with no blockers at all."""
    return sorted(n.id for n in graph.nodes.values() if not n.blocked_by)
