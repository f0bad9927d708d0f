# SPDX-License-Identifier: MIT
"""Tests for the task dependency graph.

Covers:
1. Reverse ``blocks`` index construction
2. Cycle detection (self-loops, overlapping cycles, full coverage)
3. Ready-task selection and priority ordering
4. Critical path and impact metrics
"""

from __future__ import annotations

import random

import pytest

from haven.backlog.graph import (
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
from haven.backlog.repository import Task
from haven.errors import GraphCycleError


def _graph(spec: dict[str, tuple[str, ...]], statuses: dict[str, str] | None = None):
    statuses = statuses or {}
    return build_graph(
        Task(task_id, blocked_by=blockers, status=statuses.get(task_id, "Not Started"))
        for task_id, blockers in spec.items()
    )


class TestBuildGraph:
    """Nodes and the reverse index."""

    def test_blocks_is_reverse_of_blocked_by(self) -> None:
        graph = _graph({"T001": (), "T002": ("T001",), "T003": ("T001", "T002")})
        assert graph.dependents("T001") == ["T002", "T003"]
        assert graph.dependents("T002") == ["T003"]
        assert graph.dependents("T003") == []

    def test_blocked_by_entries_are_normalized_and_deduplicated(self) -> None:
        """Free-text entries are reduced to their leading task id."""
        graph = build_graph([Task("T1"), Task("T2", blocked_by=("t1 (schema)", "T001", "wait for design"))])
        assert graph.nodes["T002"].blocked_by == ["T001"]
        assert graph.nodes["T002"].blocked_by_raw == ["t1 (schema)", "T001", "wait for design"]

    def test_roots_and_traversal(self) -> None:
        graph = _graph({"T001": (), "T002": ("T001",), "T003": ("T002",), "T004": ()})
        assert roots(graph) == ["T001", "T004"]
        assert ancestors(graph, "T003") == ["T001", "T002"]
        assert descendants(graph, "T001") == ["T002", "T003"]

    def test_validate_references(self) -> None:
        graph = _graph({"T001": ("T009",)})
        missing = validate_references(graph)
        assert [(m.task_id, m.missing_id) for m in missing] == [("T001", "T009")]


class TestDetectCycles:
    """Cycle detection returns closed id lists covering every cyclic task."""

    def test_acyclic_graph_has_no_cycles(self) -> None:
        graph = _graph({"T001": (), "T002": ("T001",), "T003": ("T002", "T001")})
        assert detect_cycles(graph) == []

    def test_self_loop(self) -> None:
        """A task blocking itself is a one-node cycle."""
        graph = _graph({"T001": ("T001",)})
        assert detect_cycles(graph) == [["T001", "T001"]]

    def test_two_node_cycle_is_closed(self) -> None:
        graph = _graph({"T001": ("T002",), "T002": ("T001",)})
        cycles = detect_cycles(graph)
        assert len(cycles) == 1
        cycle = cycles[0]
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"T001", "T002"}

    def test_every_cyclic_node_is_covered(self) -> None:
        """Overlapping cycles sharing a node are all reported."""
        graph = _graph(
            {
                "T001": ("T002",),
                "T002": ("T001", "T003"),
                "T003": ("T002",),
                "T004": ("T001",),
            }
        )
        covered = {n for cycle in detect_cycles(graph) for n in cycle}
        assert covered == {"T001", "T002", "T003"}

    def test_unknown_blockers_are_ignored(self) -> None:
        graph = _graph({"T001": ("T404",)})
        assert detect_cycles(graph) == []

    def test_random_dags_are_acyclic(self) -> None:
        """Edges only pointing at lower ids can never form a cycle."""
        rng = random.Random(7)
        for _ in range(25):
            ids = [f"T{i:03d}" for i in range(1, 16)]
            spec = {
                task_id: tuple(rng.sample(ids[:index], k=min(index, rng.randint(0, 3))))
                for index, task_id in enumerate(ids)
            }
            assert detect_cycles(_graph(spec)) == []

    def test_random_graphs_cover_cyclic_core(self) -> None:
        """Every node on a cycle shows up in some reported cycle."""
        rng = random.Random(11)
        for _ in range(25):
            ids = [f"T{i:03d}" for i in range(1, 9)]
            spec = {task_id: tuple(rng.sample(ids, k=rng.randint(0, 2))) for task_id in ids}
            graph = _graph(spec)
            cycles = detect_cycles(graph)
            covered = {n for cycle in cycles for n in cycle}
            for task_id in ids:
                on_cycle = any(
                    up == task_id or task_id in ancestors(graph, up) for up in graph.nodes[task_id].blocked_by
                )
                assert (task_id in covered) == on_cycle
            for cycle in cycles:
                assert cycle[0] == cycle[-1]
                for upstream, downstream in zip(cycle[1:], cycle):
                    assert upstream in graph.nodes[downstream].blocked_by


class TestReadiness:
    """Blocker resolution fails closed."""

    def test_finished_blockers_resolve(self) -> None:
        graph = _graph({"T001": (), "T002": (), "T003": ("T001", "T002")}, {"T001": "Done", "T002": "Cancelled"})
        assert blockers_resolved(graph.nodes["T003"], graph)

    def test_unknown_blocker_is_unresolved(self) -> None:
        graph = _graph({"T001": ("T404",)})
        assert unresolved_blockers(graph.nodes["T001"], graph) == ["T404"]
        assert not blockers_resolved(graph.nodes["T001"], graph)

    def test_blocked_blocker_does_not_resolve(self) -> None:
        graph = _graph({"T001": (), "T002": ("T001",)}, {"T001": "Blocked"})
        assert not blockers_resolved(graph.nodes["T002"], graph)

    def test_ready_tasks_excludes_started_and_blocked(self) -> None:
        graph = _graph(
            {"T001": (), "T002": (), "T003": ("T001",), "T004": ()},
            {"T001": "Done", "T002": "In Progress", "T004": "Blocked"},
        )
        assert [r.node.id for r in ready_tasks(graph)] == ["T003"]
        assert [r.node.id for r in ready_tasks(graph, include_in_progress=True)] == ["T002", "T003"]

    def test_ready_tasks_priority_order(self) -> None:
        """Higher impact first, then longer critical path, then id."""
        graph = _graph(
            {
                "T001": (),
                "T002": (),
                "T003": (),
                "T004": ("T002",),
                "T005": ("T002",),
                "T006": ("T003",),
                "T007": ("T006",),
            }
        )
        ready = ready_tasks(graph)
        assert [r.node.id for r in ready] == ["T003", "T002", "T001"]
        assert [(r.impact, r.critical_path) for r in ready] == [(2, 3), (2, 2), (0, 1)]

    def test_ready_tasks_refuses_cycles(self) -> None:
        graph = _graph({"T001": (), "T002": ("T003",), "T003": ("T002",)})
        with pytest.raises(GraphCycleError) as excinfo:
            ready_tasks(graph)
        assert excinfo.value.cycles


class TestMetrics:
    """Critical path and impact."""

    def test_sink_has_length_one(self) -> None:
        graph = _graph({"T001": ()})
        assert longest_path(graph, "T001") == (1, ["T001"])

    def test_longest_path_follows_longest_branch(self) -> None:
        graph = _graph({"T001": (), "T002": ("T001",), "T003": ("T001",), "T004": ("T003",)})
        length, path = longest_path(graph, "T001")
        assert length == 3
        assert path == ["T001", "T003", "T004"]

    def test_longest_path_raises_on_cycle(self) -> None:
        graph = _graph({"T001": ("T002",), "T002": ("T001",)})
        with pytest.raises(GraphCycleError):
            longest_path(graph, "T001")

    def test_longest_path_deep_chain(self) -> None:
        """Deep chains do not hit the recursion limit."""
        spec = {"T0001": ()}
        for i in range(2, 3001):
            spec[f"T{i:04d}"] = (f"T{i - 1:04d}",)
        graph = _graph(spec)
        assert longest_path(graph, "T001")[0] == 3000

    def test_impact_counts_distinct_transitive_dependents(self) -> None:
        graph = _graph({"T001": (), "T002": ("T001",), "T003": ("T001", "T002"), "T004": ("T003",)})
        assert impact(graph, "T001") == 3
        assert impact(graph, "T004") == 0
