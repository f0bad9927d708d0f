# SPDX-License-Identifier: MIT
"""End-to-end tests for the agent lifecycle state machine.

Agents are short ``sys.executable -c`` scripts that write into their
worktree and drop a result descriptor, so the full spawn → wait → reap path
runs against real git and real processes:

1. Spawn refuses to replace a live or unreaped agent
2. Reap merges, cascades status and is idempotent
3. Conflicts block the task and escalate with manual steps
4. Kill, reject and clear clean up without touching task status
"""

from __future__ import annotations

import subprocess
import sys
import time
from pathlib import Path

import pytest

from conftest import commit_file, run_git
from haven.agents.lifecycle import AgentLifecycle
from haven.agents.records import AgentRecord, utc_now
from haven.backlog import lexicon
from haven.backlog.repository import Epic, InMemoryRepository, Prd, Task
from haven.config import AgentConfig, GitConfig, HavenConfig
from haven.errors import GitError

pytestmark = pytest.mark.git

SUCCESS = (
    "import pathlib, sys\n"
    "pathlib.Path('agent.txt').write_text('agent work\\n')\n"
    "print('hello from agent', flush=True)\n"
    "pathlib.Path(sys.argv[1]).write_text('status: completed\\nsummary: ok\\n')\n"
)
BLOCKED = "import pathlib, sys\npathlib.Path(sys.argv[1]).write_text('status: blocked\\nnotes: need access\\n')\n"
CONFLICTING = (
    "import pathlib, sys\n"
    "pathlib.Path('X').write_text('agent version\\n')\n"
    "pathlib.Path(sys.argv[1]).write_text('status: completed\\n')\n"
)
SLEEPER = "import time\ntime.sleep(60)\n"
FAILING = "import sys\nprint('boom')\nsys.exit(2)\n"
STREAMING = (
    "import pathlib, sys, time\n"
    "print('first', flush=True)\n"
    "print('second', flush=True)\n"
    "deadline = time.time() + 30\n"
    "while not pathlib.Path('go').exists() and time.time() < deadline:\n"
    "    time.sleep(0.05)\n"
    "print('third', flush=True)\n"
    "pathlib.Path(sys.argv[1]).write_text('status: completed\\n')\n"
)


def _backlog() -> InMemoryRepository:
    return InMemoryRepository.from_entities(
        tasks=[
            Task("T001", "Only task of E001", parent="PRD-001 / E001"),
            Task("T002", "Independent", parent="PRD-001 / E002"),
            Task("T003", "Waits on T002", blocked_by=("T002",), parent="PRD-001 / E002"),
        ],
        epics=[Epic("E001", prd_id="PRD-001"), Epic("E002", prd_id="PRD-001")],
        prds=[Prd("PRD-001", status="Approved")],
    )


def _lifecycle(
    repo: Path,
    repository: InMemoryRepository,
    code: str | None,
    *,
    use_worktrees: bool = True,
    branching: str = "flat",
    max_parallel: int = 6,
    **kwargs,
) -> AgentLifecycle:
    command = (sys.executable, "-c", code, "{result}") if code else ()
    config = HavenConfig(
        git=GitConfig(branching=branching),
        agent=AgentConfig(
            use_worktrees=use_worktrees,
            command=command,
            poll_interval_s=0.05,
            kill_grace_s=2.0,
            timeout=30,
            max_parallel=max_parallel,
        ),
    )
    return AgentLifecycle(repo, repository, config, **kwargs)


def _sha(repo: Path, ref: str = "main") -> str:
    return run_git(["rev-parse", ref], repo)[1].strip()


@pytest.fixture
def backlog() -> InMemoryRepository:
    return _backlog()


class TestSpawnAndReap:
    """The happy path."""

    def test_full_cycle_merges_and_cascades(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        spawned = lifecycle.spawn("t1")
        assert spawned.success, spawned.escalation
        assert spawned.task_id == "T001"
        assert spawned.worktree.branch == "task/T001"
        assert backlog.get_task("T001").status == lexicon.IN_PROGRESS
        assert backlog.get_epic("E001").status == lexicon.IN_PROGRESS
        assert backlog.get_prd("PRD-001").status == lexicon.IN_PROGRESS

        waited = lifecycle.wait("T001", timeout=30)
        assert waited.success
        assert waited.status == "completed"

        reaped = lifecycle.reap("T001")
        assert reaped.success, reaped.escalation
        assert reaped.merged
        assert reaped.result_status == "completed"
        assert reaped.task_status == lexicon.DONE
        assert (temp_git_repo / "agent.txt").read_text() == "agent work\n"
        assert backlog.get_epic("E001").status == lexicon.AUTO_DONE
        # E002 is still open
        assert backlog.get_prd("PRD-001").status == lexicon.IN_PROGRESS
        assert lifecycle.store.get("T001").status == "reaped"

        names = [e.name for e in lifecycle.events.get_history("agent:spawned")]
        names += [e.name for e in lifecycle.events.get_history("agent:completed")]
        names += [e.name for e in lifecycle.events.get_history("agent:reaped")]
        assert names == ["agent:spawned", "agent:completed", "agent:reaped"]
        updated = {e.task_id for e in lifecycle.events.get_history("task:updated")}
        assert updated == {"T001", "E001", "PRD-001"}

    def test_reap_is_idempotent(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        """A second reap changes nothing in git or the backlog."""
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        assert lifecycle.spawn("T001").success
        assert lifecycle.reap("T001", timeout=30).success
        main_after_first = _sha(temp_git_repo)

        again = lifecycle.reap("T001")
        assert again.success
        assert again.already_reaped
        assert not again.merged
        assert again.task_status == lexicon.DONE
        assert _sha(temp_git_repo) == main_after_first

    def test_reap_with_cleanup_removes_worktree(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        spawned = lifecycle.spawn("T001")
        reaped = lifecycle.reap("T001", timeout=30, cleanup_worktree=True)
        assert reaped.success and reaped.cleaned_up
        assert not Path(spawned.worktree.path).exists()
        assert run_git(["rev-parse", "--verify", "--quiet", "refs/heads/task/T001"], temp_git_repo)[0] != 0

    def test_blocked_result_blocks_task(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, BLOCKED)
        assert lifecycle.spawn("T002").success
        reaped = lifecycle.reap("T002", timeout=30)
        assert reaped.success
        assert reaped.result_status == "blocked"
        assert backlog.get_task("T002").status == lexicon.BLOCKED

    def test_without_worktrees(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        """Agents run in the project root and nothing is merged."""
        code = "import pathlib, sys\npathlib.Path(sys.argv[1]).write_text('status: completed\\n')\n"
        lifecycle = _lifecycle(temp_git_repo, backlog, code, use_worktrees=False)
        spawned = lifecycle.spawn("T002")
        assert spawned.success
        assert spawned.worktree is None
        reaped = lifecycle.reap("T002", timeout=30)
        assert reaped.success
        assert not reaped.merged
        assert backlog.get_task("T002").status == lexicon.DONE

    def test_epic_branching_merges_into_epic_branch(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        """An epic with work left keeps the task's changes off main."""
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS, branching="epic")
        spawned = lifecycle.spawn("T002")
        assert spawned.success, spawned.escalation
        assert spawned.worktree.base_branch == "epic/E002"

        main_before = _sha(temp_git_repo)
        reaped = lifecycle.reap("T002", timeout=30)
        assert reaped.success
        assert reaped.upward_sync == ()
        assert run_git(["show", "epic/E002:agent.txt"], temp_git_repo)[0] == 0
        assert _sha(temp_git_repo) == main_before
        assert not (temp_git_repo / "agent.txt").exists()

    def test_auto_done_epic_is_merged_upward(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        """Completing the last task of an epic merges the epic branch into main."""
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS, branching="epic")
        assert lifecycle.spawn("T001").success

        reaped = lifecycle.reap("T001", timeout=30)
        assert reaped.success
        assert backlog.get_epic("E001").status == lexicon.AUTO_DONE
        assert len(reaped.upward_sync) == 1
        assert reaped.upward_sync[0].success
        assert run_git(["show", "main:agent.txt"], temp_git_repo)[0] == 0

    def test_log_is_captured(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        lifecycle.spawn("T001")
        lifecycle.wait("T001", timeout=30)
        assert lifecycle.tail_log("T001", 5) == ["hello from agent"]

    def test_follow_log_joins_mid_stream(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        """A late follower gets the last line already written, then new ones as events."""
        lifecycle = _lifecycle(temp_git_repo, backlog, STREAMING)
        spawned = lifecycle.spawn("T001")
        assert spawned.success, spawned.escalation
        deadline = time.monotonic() + 30
        while lifecycle.tail_log("T001", 5) != ["first", "second"] and time.monotonic() < deadline:
            time.sleep(0.05)
        assert lifecycle.tail_log("T001", 5) == ["first", "second"]

        tailer = lifecycle.follow_log("T001", from_start=False)
        seen: list[str] = []
        tailer.subscribe(seen.append, last_n=1)
        assert seen == ["second"]
        events: list[str] = []
        lifecycle.events.on("agent:log", lambda evt: events.append(evt.data["line"]), task_id="T001")

        (Path(spawned.worktree.path) / "go").write_text("")
        assert lifecycle.wait("T001", timeout=30).success
        assert tailer.poll() == ["third"]
        assert seen == ["second", "third"]
        assert events == ["third"]


class TestSpawnRefusals:
    """Spawn never silently replaces existing work."""

    def test_unknown_task(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        result = _lifecycle(temp_git_repo, backlog, SUCCESS).spawn("T999")
        assert not result.success
        assert result.escalation.reason == "Task T999 not found"

    def test_no_command(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        result = _lifecycle(temp_git_repo, backlog, None).spawn("T001")
        assert not result.success
        assert "No agent command" in result.escalation.reason
        assert backlog.get_task("T001").status == lexicon.NOT_STARTED

    def test_running_agent_is_not_replaced(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SLEEPER)
        first = lifecycle.spawn("T001")
        assert first.success
        try:
            second = lifecycle.spawn("T001")
            assert not second.success
            assert "already running" in second.escalation.reason
            assert "agent:kill T001 to stop it" in second.escalation.next_steps
            assert lifecycle.store.get("T001").pid == first.pid
            assert not lifecycle.clear("T001")
        finally:
            lifecycle.kill("T001")

    def test_unreaped_agent_blocks_respawn(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        lifecycle.spawn("T001")
        lifecycle.wait("T001", timeout=30)
        again = lifecycle.spawn("T001")
        assert not again.success
        assert "has not been reaped" in again.escalation.reason

    def test_dirty_repository(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        (temp_git_repo / "wip.txt").write_text("uncommitted\n")
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        result = lifecycle.spawn("T001")
        assert not result.success
        assert "wip.txt" in result.escalation.reason
        assert "Commit or stash the uncommitted changes, then spawn again" in result.escalation.next_steps
        assert lifecycle.store.get("T001") is None

    def test_respawn_after_kill_replaces_clean_worktree(
        self, temp_git_repo: Path, backlog: InMemoryRepository
    ) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SLEEPER)
        assert lifecycle.spawn("T001").success
        assert lifecycle.kill("T001").success
        again = lifecycle.spawn("T001")
        try:
            assert again.success, again.escalation
            assert lifecycle.store.get("T001").status in ("spawned", "running")
        finally:
            lifecycle.kill("T001")

    def test_leftover_worktree_with_work_escalates(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SLEEPER)
        spawned = lifecycle.spawn("T001")
        lifecycle.kill("T001")
        (Path(spawned.worktree.path) / "half-done.txt").write_text("partial\n")
        again = lifecycle.spawn("T001")
        assert not again.success
        assert "still holds work" in again.escalation.reason
        assert "agent:reject T001 to discard it" in again.escalation.next_steps

    def test_leftover_worktree_with_unknown_base_escalates(
        self, temp_git_repo: Path, backlog: InMemoryRepository
    ) -> None:
        """When neither the base nor the main branch resolves, spawn escalates instead of raising."""
        config = HavenConfig(
            git=GitConfig(main_branch="trunk"),
            agent=AgentConfig(use_worktrees=True, command=(sys.executable, "-c", SUCCESS, "{result}")),
        )
        lifecycle = AgentLifecycle(temp_git_repo, backlog, config)
        assert lifecycle.worktrees.create_worktree("T001", "main").success

        escalation = lifecycle._clear_stale_worktree("T001", "epic/E404")
        assert escalation is not None
        assert "Cannot tell whether the previous worktree for T001 holds work" in escalation.reason
        assert lifecycle.worktrees.worktree_path("T001").exists()


class TestConflicts:
    """Conflicting work is never half-merged."""

    def test_conflict_blocks_task_and_lists_files(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        commit_file(temp_git_repo, "X", "original\n")
        lifecycle = _lifecycle(temp_git_repo, backlog, CONFLICTING)
        assert lifecycle.spawn("T001").success
        assert lifecycle.wait("T001", timeout=30).success
        commit_file(temp_git_repo, "X", "main version\n")
        main_before = _sha(temp_git_repo)

        reaped = lifecycle.reap("T001")
        assert not reaped.success
        assert reaped.task_status == lexicon.BLOCKED
        assert backlog.get_task("T001").status == lexicon.BLOCKED
        escalation = reaped.escalation
        assert escalation.reason == "Merge conflicts detected"
        assert escalation.context["files"] == ["X"]
        assert "git checkout -b merge/T001-to-main main" in escalation.next_steps
        assert "git merge task/T001 --no-commit" in escalation.next_steps

        assert _sha(temp_git_repo) == main_before
        assert (temp_git_repo / "X").read_text() == "main version\n"
        record = lifecycle.store.get("T001")
        assert record.status == "completed"
        assert record.merge_conflicts == ("X",)


class TestWaitKillRejectClear:
    def test_wait_times_out_without_killing(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SLEEPER)
        lifecycle.spawn("T001")
        try:
            waited = lifecycle.wait("T001", timeout=0.3)
            assert not waited.success
            assert waited.timed_out
            assert lifecycle.is_running("T001")

            reaped = lifecycle.reap("T001", wait=False)
            assert not reaped.success
            assert "still running" in reaped.escalation.reason
        finally:
            killed = lifecycle.kill("T001")
        assert killed.was_running
        assert killed.signal == "SIGTERM"
        assert lifecycle.store.get("T001").status == "killed"
        assert lifecycle.store.get("T001").pid is None
        assert lifecycle.events.get_history("agent:killed", "T001")

    def test_kill_dead_pid_marks_killed(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        """A record pointing at a process that is already gone is still killed cleanly."""
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        lifecycle.store.put(AgentRecord(task_id="T001", status="running", spawned_at=utc_now(), pid=proc.pid))

        killed = lifecycle.kill("T001")
        assert killed.success
        assert not killed.was_running
        record = lifecycle.store.get("T001")
        assert record.status == "killed"
        assert record.pid is None

        reaped = lifecycle.reap("T001")
        assert not reaped.success
        assert "agent:clear T001" in reaped.escalation.next_steps

    def test_error_exit_then_reject(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, FAILING)
        spawned = lifecycle.spawn("T001")
        assert lifecycle.wait("T001", timeout=30).status == "error"

        reaped = lifecycle.reap("T001")
        assert not reaped.success
        assert "exited with an error (code 2)" in reaped.escalation.reason

        rejected = lifecycle.reject("T001", "wrong approach")
        assert rejected.success
        record = lifecycle.store.get("T001")
        assert record.status == "rejected"
        assert record.reject_reason == "wrong approach"
        assert not Path(spawned.worktree.path).exists()
        assert run_git(["rev-parse", "--verify", "--quiet", "refs/heads/task/T001"], temp_git_repo)[0] != 0
        # rejection leaves the task status to the caller
        assert backlog.get_task("T001").status == lexicon.IN_PROGRESS

        assert lifecycle.clear("T001")
        assert lifecycle.store.get("T001") is None
        assert lifecycle.status("T001") is None
        assert not lifecycle.clear("T001")

    def test_missing_worktree_escalates(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        spawned = lifecycle.spawn("T001")
        lifecycle.wait("T001", timeout=30)
        run_git(["worktree", "remove", "--force", spawned.worktree.path], temp_git_repo)

        reaped = lifecycle.reap("T001")
        assert not reaped.success
        assert reaped.escalation.reason.startswith("Worktree not found")

    def test_failed_conflict_check_escalates_without_merging(
        self, temp_git_repo: Path, backlog: InMemoryRepository
    ) -> None:
        class _FailingDetector:
            def detect_conflicts(self, target: str, source: str) -> list[str]:
                raise GitError(["git", "merge-tree"], 129, "usage: git merge-tree")

        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS, detector=_FailingDetector())
        assert lifecycle.spawn("T001").success
        main_before = _sha(temp_git_repo)

        reaped = lifecycle.reap("T001", timeout=30)
        assert not reaped.success
        assert not reaped.merged
        assert "usage: git merge-tree" in reaped.escalation.reason
        assert "agent:reap T001 to retry" in reaped.escalation.next_steps
        assert _sha(temp_git_repo) == main_before
        assert backlog.get_task("T001").status == lexicon.IN_PROGRESS
        assert lifecycle.store.get("T001").status == "completed"

    def test_operations_on_unknown_agent(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SUCCESS)
        assert not lifecycle.reap("T002").success
        assert not lifecycle.kill("T002").success
        assert not lifecycle.reject("T002").success
        assert not lifecycle.wait("T002").success
        assert not lifecycle.clear("T002")


class TestScheduling:
    def test_next_tasks_skips_tasks_with_agents(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SLEEPER, max_parallel=2)
        assert [r.node.id for r in lifecycle.next_tasks()] == ["T002", "T001"]
        lifecycle.spawn("T002")
        try:
            assert [r.node.id for r in lifecycle.next_tasks()] == ["T001"]
            views = lifecycle.list_agents()
            assert [(v.record.task_id, v.alive) for v in views] == [("T002", True)]
        finally:
            lifecycle.kill("T002")

    def test_next_tasks_respects_parallel_limit(self, temp_git_repo: Path, backlog: InMemoryRepository) -> None:
        lifecycle = _lifecycle(temp_git_repo, backlog, SLEEPER, max_parallel=1)
        lifecycle.spawn("T001")
        try:
            assert lifecycle.next_tasks() == []
        finally:
            lifecycle.kill("T001")
