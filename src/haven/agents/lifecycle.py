"""Agent lifecycle state machine.

States per task::

    absent → spawned → running → completed | error → reaped | killed | rejected
                                                      clear() → absent

``running`` is never stored as ground truth: every read re-checks the pid
and moves the record on when the process has gone. Operations return result
objects; anything the machine cannot resolve safely on its own (a live agent
in the way, merge conflicts, a worktree deleted behind our back) comes back
as an :class:`~haven.errors.Escalation` with concrete next steps.

Merges into a shared target branch are serialized per branch with a file
lock; callers running several orchestrators against one repository on
different hosts must coordinate reaps themselves.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from haven.agents.events import EventBus
from haven.agents.logtail import LogTailer, read_last_lines
from haven.agents.mission import (
    DONE_FILENAME,
    EXIT_FILENAME,
    LOG_FILENAME,
    MISSION_FILENAME,
    RESULT_FILENAME,
    Mission,
    load_result,
)
from haven.agents.process import LocalProcessProvider, ProcessProvider, TerminateResult
from haven.agents.records import (
    FINISHED_STATES,
    AgentRecord,
    AgentRecordStore,
    FileAgentRecordStore,
    WorktreeRef,
    utc_now,
)
from haven.atomic_io import atomic_write_text, read_json
from haven.backlog import lexicon
from haven.backlog.cascade import CascadeResult, StatusCascade, StatusTransition
from haven.backlog.graph import ReadyTask, build_graph, ready_tasks
from haven.backlog.ids import normalize_id
from haven.backlog.repository import ArtefactRepository
from haven.config import HavenConfig, load_config
from haven.errors import Escalation, GitError
from haven.isolation.conflicts import ConflictDetector, ConflictMatrix, GitConflictDetector, build_conflict_matrix
from haven.isolation.git import GitProvider
from haven.isolation.guards import SPAWN_GUARDS, GuardContext, run_guards
from haven.isolation.worktree import (
    UpwardSyncResult,
    WorktreeContext,
    WorktreeManager,
    WorktreeResult,
    merge_branch,
    task_branch,
)
from haven.locking import HavenLocks

logger = logging.getLogger(__name__)

_GUARD_REMEDIES = {
    "has_git": "Install git and make sure it is on PATH",
    "has_git_repo": "Run 'git init' in the project root, or disable agent.use_worktrees",
    "repo_clean": "Commit or stash the uncommitted changes, then spawn again",
    "repo_has_commits": "Create an initial commit so worktrees have a branch point",
}


@dataclass(frozen=True)
class SpawnResult:
    success: bool
    task_id: str
    pid: int | None = None
    worktree: WorktreeRef | None = None
    escalation: Escalation | None = None


@dataclass(frozen=True)
class WaitResult:
    success: bool
    task_id: str
    timed_out: bool = False
    status: str | None = None
    escalation: Escalation | None = None


@dataclass(frozen=True)
class ReapResult:
    success: bool
    task_id: str
    result_status: str | None = None
    task_status: str | None = None
    merged: bool = False
    cleaned_up: bool = False
    already_reaped: bool = False
    escalation: Escalation | None = None
    cascade: CascadeResult | None = None
    upward_sync: tuple[UpwardSyncResult, ...] = ()


@dataclass(frozen=True)
class KillResult:
    success: bool
    task_id: str
    was_running: bool = False
    signal: str | None = None
    escalation: Escalation | None = None


@dataclass(frozen=True)
class RejectResult:
    success: bool
    task_id: str
    escalation: Escalation | None = None


@dataclass(frozen=True)
class AgentView:
    """A record plus what was observed about it just now."""

    record: AgentRecord
    alive: bool
    log_file: Path


class AgentLifecycle:
    """Spawns, supervises and reaps agents for backlog tasks.

    Every collaborator is injected; the defaults build the local git,
    process, record-store and event-bus implementations from ``config``.
    """

    def __init__(
        self,
        project_root: Path | str,
        repository: ArtefactRepository,
        config: HavenConfig | None = None,
        *,
        store: AgentRecordStore | None = None,
        git: GitProvider | None = None,
        process: ProcessProvider | None = None,
        events: EventBus | None = None,
        detector: ConflictDetector | None = None,
        worktrees: WorktreeManager | None = None,
        locks: HavenLocks | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.config = config or HavenConfig()
        self.haven_dir = self.config.haven_dir(self.project_root)
        self.repository = repository
        self.cascade = StatusCascade(repository)
        self.locks = locks or HavenLocks(self.haven_dir)
        self.store = store or FileAgentRecordStore(self.haven_dir, self.locks)
        self.git = git or GitProvider(self.project_root)
        self.process = process or LocalProcessProvider()
        self.events = events or EventBus()
        self.worktrees = worktrees or WorktreeManager(
            self.git,
            self.haven_dir / "worktrees",
            detector or GitConflictDetector(self.git),
            main_branch=self.config.git.main_branch,
            sync_before_spawn=self.config.git.sync_before_spawn,
            remote=self.config.git.remote,
            locks=self.locks,
        )

    @classmethod
    def from_project(
        cls,
        project_root: Path | str,
        repository: ArtefactRepository,
        config_path: Path | None = None,
    ) -> AgentLifecycle:
        root = Path(project_root)
        return cls(root, repository, load_config(config_path, root))

    # ------------------------------------------------------------------
    # Paths and small helpers
    # ------------------------------------------------------------------

    def agent_dir(self, task_id: str) -> Path:
        return self.haven_dir / "agents" / task_id

    def log_file(self, task_id: str) -> Path:
        return self.agent_dir(task_id) / LOG_FILENAME

    def ensure_haven_dir(self) -> None:
        """Create the state directory and keep it out of ``git status``."""
        self.haven_dir.mkdir(parents=True, exist_ok=True)
        ignore = self.haven_dir / ".gitignore"
        if not ignore.exists():
            atomic_write_text(ignore, "*\n")

    def _escalate(self, task_id: str, reason: str, *steps: str, **context: object) -> Escalation:
        logger.warning("%s: %s", task_id, reason)
        return Escalation(reason=reason, next_steps=tuple(steps), context=dict(context))

    def _publish(self, transitions: list[StatusTransition]) -> None:
        for change in transitions:
            if change.updated:
                self.events.emit(
                    "task:updated",
                    change.entity_id,
                    field="status",
                    old_value=change.previous,
                    new_value=change.new,
                )

    def _read_exit(self, task_id: str) -> dict:
        data, error = read_json(self.agent_dir(task_id) / EXIT_FILENAME)
        if error:
            logger.warning("Ignoring unreadable exit descriptor for %s: %s", task_id, error)
        return data if isinstance(data, dict) else {}

    def _has_result_sentinel(self, task_id: str) -> bool:
        directory = self.agent_dir(task_id)
        return (directory / RESULT_FILENAME).exists() or (directory / DONE_FILENAME).exists()

    def _refresh(self, record: AgentRecord) -> AgentRecord:
        """Re-verify a live record against the process table.

        spawned → running while the pid answers; once it stops answering the
        record moves to completed (exit 0 or a result sentinel) or error.
        """
        if not record.is_live:
            return record

        if record.pid is not None and self.process.is_alive(record.pid):
            if record.status == "spawned":
                record = record.evolve(status="running")
                self.store.put(record)
            return record

        exit_info = self._read_exit(record.task_id)
        exit_code = exit_info.get("exit_code")
        completed = exit_code == 0 or self._has_result_sentinel(record.task_id)
        changes: dict = {
            "status": "completed" if completed else "error",
            "exit_code": exit_code,
            "exit_signal": exit_info.get("exit_signal"),
            "ended_at": exit_info.get("ended_at") or utc_now(),
        }
        if record.worktree is not None:
            state = self.worktrees.worktree_status(Path(record.worktree.path))
            if state.exists and not state.clean:
                changes["dirty_worktree"] = True
                changes["uncommitted_files"] = state.files
        record = record.evolve(**changes)
        self.store.put(record)
        logger.info("Agent %s finished: %s (exit=%s)", record.task_id, record.status, exit_code)
        self.events.emit(
            "agent:completed",
            record.task_id,
            exit_code=record.exit_code,
            exit_signal=record.exit_signal,
            status=record.status,
        )
        return record

    def _load(self, task_id: str) -> tuple[str, AgentRecord | None]:
        task_id = normalize_id(task_id) or task_id
        return task_id, self.store.get(task_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_running(self, task_id: str) -> bool:
        _, record = self._load(task_id)
        if record is None:
            return False
        return self._refresh(record).is_live

    def status(self, task_id: str) -> AgentView | None:
        task_id, record = self._load(task_id)
        if record is None:
            return None
        record = self._refresh(record)
        return AgentView(record=record, alive=record.is_live, log_file=self.log_file(task_id))

    def list_agents(self) -> list[AgentView]:
        views = []
        for task_id in self.store.list_ids():
            view = self.status(task_id)
            if view is not None:
                views.append(view)
        return views

    def next_tasks(self, include_in_progress: bool = False) -> list[ReadyTask]:
        """Ready tasks without an agent, capped by ``agent.max_parallel``."""
        graph = build_graph(self.repository.list_tasks())
        agents = self.list_agents()
        occupied = {v.record.task_id for v in agents if v.record.status not in ("reaped", "rejected")}
        running = sum(1 for v in agents if v.alive)
        slots = max(0, self.config.agent.max_parallel - running)
        candidates = [r for r in ready_tasks(graph, include_in_progress) if r.node.id not in occupied]
        return candidates[:slots]

    def conflict_matrix(self) -> ConflictMatrix:
        """File overlaps between every live agent working in a worktree."""
        branches = {
            v.record.task_id: (v.record.worktree.branch, v.record.worktree.base_branch)
            for v in self.list_agents()
            if v.alive and v.record.worktree is not None
        }
        return build_conflict_matrix(self.git, branches)

    def tail_log(self, task_id: str, lines: int = 50) -> list[str]:
        return read_last_lines(self.log_file(normalize_id(task_id) or task_id), lines)

    def follow_log(self, task_id: str, poll_interval: float = 0.5, from_start: bool = True) -> LogTailer:
        """A tailer that publishes ``agent:log`` events for ``task_id``."""
        task_id = normalize_id(task_id) or task_id
        return LogTailer(
            self.log_file(task_id),
            task_id=task_id,
            bus=self.events,
            poll_interval=poll_interval,
            from_start=from_start,
        )

    # ------------------------------------------------------------------
    # spawn
    # ------------------------------------------------------------------

    def _clear_stale_worktree(self, task_id: str, base_branch: str) -> Escalation | None:
        """Remove a leftover worktree for ``task_id`` if it holds no work."""
        path = self.worktrees.worktree_path(task_id)
        if not path.exists():
            return None
        branch = task_branch(task_id)
        state = self.worktrees.worktree_status(path)
        ahead = 0
        if self.git.branch_exists(branch):
            try:
                ahead = self.git.rev_list_count(base_branch, branch)
            except GitError:
                try:
                    ahead = self.git.rev_list_count(self.config.git.main_branch, branch)
                except GitError as e:
                    return self._escalate(
                        task_id,
                        f"Cannot tell whether the previous worktree for {task_id} holds work: {e.stderr}",
                        f"Inspect {path}",
                        f"agent:reject {task_id} to discard it",
                        worktree=str(path),
                    )
        if not state.clean or ahead > 0:
            return self._escalate(
                task_id,
                f"A previous worktree for {task_id} still holds work ({len(state.files)} uncommitted "
                f"file(s), {ahead} commit(s) ahead of {base_branch})",
                f"Inspect {path}",
                f"agent:reject {task_id} to discard it",
                f"git worktree remove --force {path} && git branch -D {branch}",
                worktree=str(path),
                files=list(state.files),
            )
        logger.warning("Removing stale clean worktree %s", path)
        self.worktrees.remove_worktree(path, branch, force=True)
        return None

    def _command(self, argv: list[str], values: dict[str, str]) -> list[str]:
        rendered = []
        for part in argv:
            for key, value in values.items():
                part = part.replace("{" + key + "}", value)
            rendered.append(part)
        return rendered

    def spawn(
        self,
        task_id: str,
        *,
        instruction: str = "",
        context_files: list[str] | None = None,
        timeout: int | None = None,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> SpawnResult:
        """Launch an agent for ``task_id``.

        Refuses (with an escalation) when an agent is already live for the
        task, when a previous run left work behind, or when worktree
        preconditions fail. Nothing is mutated before all checks pass.
        """
        task_id, existing = self._load(task_id)
        task = self.repository.get_task(task_id)
        if task is None:
            return SpawnResult(False, task_id, escalation=self._escalate(task_id, f"Task {task_id} not found"))

        argv = list(command or self.config.agent.command)
        if not argv:
            return SpawnResult(
                False,
                task_id,
                escalation=self._escalate(
                    task_id, "No agent command configured", "Set agent.command in .haven/config.yaml"
                ),
            )

        if existing is not None:
            existing = self._refresh(existing)
            if existing.is_live:
                return SpawnResult(
                    False,
                    task_id,
                    pid=existing.pid,
                    escalation=self._escalate(
                        task_id,
                        f"Agent already running for {task_id} (pid {existing.pid})",
                        f"agent:wait {task_id} to wait for it",
                        f"agent:kill {task_id} to stop it",
                        f"agent:reap {task_id} once it has finished",
                        pid=existing.pid,
                    ),
                )
            if existing.status in FINISHED_STATES:
                return SpawnResult(
                    False,
                    task_id,
                    escalation=self._escalate(
                        task_id,
                        f"Agent for {task_id} finished ({existing.status}) but has not been reaped",
                        f"agent:reap {task_id} to merge its work",
                        f"agent:reject {task_id} to discard it",
                    ),
                )

        self.ensure_haven_dir()
        use_worktrees = self.config.agent.use_worktrees
        ctx = WorktreeContext(prd_id=task.prd_id, epic_id=task.epic_id, branching=self.config.git.branching)
        worktree: WorktreeResult | None = None

        if use_worktrees:
            report = run_guards(SPAWN_GUARDS, GuardContext(git=self.git, base_branch=self.config.git.main_branch))
            if not report.ok:
                return SpawnResult(
                    False,
                    task_id,
                    escalation=self._escalate(
                        task_id,
                        f"Cannot spawn {task_id} in a worktree: {'; '.join(report.errors)}",
                        *(_GUARD_REMEDIES[name] for name in report.failed),
                        errors=report.errors,
                    ),
                )

            stale = self._clear_stale_worktree(task_id, self.worktrees.parent_branch(ctx))
            if stale is not None:
                return SpawnResult(False, task_id, escalation=stale)

            if ctx.branching != "flat":
                hierarchy = self.worktrees.ensure_branch_hierarchy(ctx)
                if not hierarchy.success:
                    return SpawnResult(
                        False,
                        task_id,
                        escalation=self._escalate(
                            task_id,
                            f"Could not create branch hierarchy: {'; '.join(hierarchy.errors)}",
                            "Check that the main branch exists: git branch --list",
                        ),
                    )
                sync = self.worktrees.sync_parent_branch(ctx)
                if not sync.success:
                    parent = self.worktrees.parent_branch(ctx)
                    return SpawnResult(
                        False,
                        task_id,
                        escalation=self._escalate(
                            task_id,
                            f"Could not sync {parent} before spawning: {sync.message}",
                            f"Resolve the divergence of {parent} manually",
                            "Or set git.sync_before_spawn: false",
                        ),
                    )

            worktree = self.worktrees.create_worktree(task_id, self.worktrees.parent_branch(ctx))
            if not worktree.success:
                return SpawnResult(
                    False,
                    task_id,
                    escalation=self._escalate(task_id, worktree.error or "Worktree creation failed"),
                )

        agent_dir = self.agent_dir(task_id)
        agent_dir.mkdir(parents=True, exist_ok=True)
        for name in (RESULT_FILENAME, DONE_FILENAME, EXIT_FILENAME, LOG_FILENAME):
            (agent_dir / name).unlink(missing_ok=True)

        effective_timeout = timeout or self.config.agent.timeout
        mission_path = agent_dir / MISSION_FILENAME
        mission = Mission.for_task(
            task,
            result_file=agent_dir / RESULT_FILENAME,
            instruction=instruction,
            context_files=context_files,
            timeout=effective_timeout,
            worktree=worktree.path if worktree else None,
            branch=worktree.branch if worktree else None,
        )
        mission.write(mission_path)

        cwd = worktree.path if worktree else self.project_root
        values = {
            "mission": str(mission_path),
            "task_id": task_id,
            "worktree": str(cwd),
            "result": str(agent_dir / RESULT_FILENAME),
        }
        child_env = {
            **os.environ,
            **(env or {}),
            "HAVEN_TASK_ID": task_id,
            "HAVEN_MISSION": values["mission"],
            "HAVEN_RESULT_FILE": values["result"],
            "HAVEN_AGENT_DIR": str(agent_dir),
        }
        try:
            handle = self.process.launch(
                self._command(argv, values),
                cwd,
                child_env,
                self.log_file(task_id),
                agent_dir / EXIT_FILENAME,
            )
        except OSError as e:
            if worktree is not None:
                self.worktrees.remove_worktree(worktree.path, worktree.branch, force=True)
            return SpawnResult(
                False,
                task_id,
                escalation=self._escalate(
                    task_id, f"Failed to launch agent: {e}", "Check agent.command in .haven/config.yaml"
                ),
            )

        ref = None
        if worktree is not None:
            ref = WorktreeRef(
                path=str(worktree.path),
                branch=worktree.branch,
                base_branch=worktree.base_branch or self.config.git.main_branch,
                branching=ctx.branching,
            )
        record = AgentRecord(
            task_id=task_id,
            status="spawned",
            spawned_at=utc_now(),
            pid=handle.pid,
            worktree=ref,
            mission_file=str(mission_path),
            log_file=str(self.log_file(task_id)),
            timeout=effective_timeout,
            merge_strategy=self.config.agent.merge_strategy,
        )
        self.store.put(record)

        started = self.cascade.start_task(task_id)
        self._publish(started.transitions)
        self.events.emit(
            "agent:spawned",
            task_id,
            pid=handle.pid,
            worktree={"path": ref.path, "branch": ref.branch} if ref else None,
        )
        logger.info("Spawned agent for %s (pid %d)", task_id, handle.pid)
        return SpawnResult(True, task_id, pid=handle.pid, worktree=ref)

    # ------------------------------------------------------------------
    # wait
    # ------------------------------------------------------------------

    def wait(self, task_id: str, timeout: float | None = None, poll_interval: float | None = None) -> WaitResult:
        """Block until the agent's process has exited, polling at a fixed interval.

        Reaching the deadline returns ``timed_out=True`` and leaves the agent
        running.
        """
        task_id, record = self._load(task_id)
        if record is None:
            return WaitResult(
                False, task_id, escalation=self._escalate(task_id, f"No agent found for {task_id}")
            )

        limit = float(self.config.agent.timeout if timeout is None else timeout)
        interval = poll_interval or self.config.agent.poll_interval_s
        deadline = time.monotonic() + limit
        while True:
            record = self._refresh(record)
            if not record.is_live:
                return WaitResult(True, task_id, status=record.status)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return WaitResult(False, task_id, timed_out=True, status=record.status)
            time.sleep(min(interval, remaining))
            latest = self.store.get(task_id)
            if latest is None:
                return WaitResult(
                    False, task_id, escalation=self._escalate(task_id, f"Agent record for {task_id} was cleared")
                )
            record = latest

    # ------------------------------------------------------------------
    # reap
    # ------------------------------------------------------------------

    def _conflict_escalation(self, task_id: str, branch: str, target: str, files: tuple[str, ...]) -> Escalation:
        resolve = merge_branch(task_id, target)
        return self._escalate(
            task_id,
            "Merge conflicts detected",
            f"git checkout -b {resolve} {target}",
            f"git merge {branch} --no-commit",
            f"Resolve conflicts in: {', '.join(files)}",
            f'git commit -m "merge({task_id}): resolve conflicts"',
            f"git checkout {target} && git merge {resolve}",
            f"agent:clear {task_id}",
            files=list(files),
            branch=branch,
            target=target,
        )

    def _sync_upward(self, task_id: str, cascade: CascadeResult) -> tuple[UpwardSyncResult, ...]:
        """Merge auto-completed epic and PRD branches into their parents."""
        if self.config.git.branching == "flat":
            return ()
        task = self.repository.get_task(task_id)
        if task is None:
            return ()
        ctx = WorktreeContext(prd_id=task.prd_id, epic_id=task.epic_id, branching=self.config.git.branching)
        results = []
        for level, transition in (("epic", cascade.epic), ("prd", cascade.prd)):
            if transition is None or not transition.updated or transition.new != lexicon.AUTO_DONE:
                continue
            synced = self.worktrees.sync_upward_hierarchy(level, ctx)
            if not synced.success:
                logger.warning("Upward sync of %s %s failed: %s", level, transition.entity_id, synced.errors)
            results.append(synced)
        return tuple(results)

    def reap(
        self,
        task_id: str,
        *,
        wait: bool = True,
        timeout: float = 300.0,
        cleanup_worktree: bool = False,
        strategy: str | None = None,
    ) -> ReapResult:
        """Collect a finished agent: merge its work and advance task status.

        Reaping an already reaped task succeeds without touching git.
        """
        task_id, record = self._load(task_id)
        if record is None:
            return ReapResult(
                False,
                task_id,
                escalation=self._escalate(task_id, f"No agent found for {task_id}", f"agent:spawn {task_id}"),
            )

        if record.status == "reaped":
            task = self.repository.get_task(task_id)
            return ReapResult(
                True,
                task_id,
                result_status=record.result_status,
                task_status=task.status if task else None,
                merged=False,
                already_reaped=True,
            )

        if record.status in ("killed", "rejected"):
            return ReapResult(
                False,
                task_id,
                escalation=self._escalate(
                    task_id,
                    f"Agent for {task_id} was {record.status}; there is nothing to reap",
                    f"agent:clear {task_id}",
                    f"agent:spawn {task_id}",
                ),
            )

        record = self._refresh(record)
        if record.is_live:
            if not wait:
                return ReapResult(
                    False,
                    task_id,
                    escalation=self._escalate(
                        task_id,
                        f"Agent for {task_id} is still running (pid {record.pid})",
                        f"agent:wait {task_id}",
                        f"agent:kill {task_id}",
                    ),
                )
            waited = self.wait(task_id, timeout=timeout)
            if waited.timed_out:
                return ReapResult(
                    False,
                    task_id,
                    escalation=self._escalate(
                        task_id,
                        f"Timed out after {timeout:g}s waiting for {task_id}",
                        f"agent:wait {task_id} with a longer timeout",
                        f"agent:kill {task_id}",
                    ),
                )
            if not waited.success:
                return ReapResult(False, task_id, escalation=waited.escalation)
            record = self.store.get(task_id) or record

        result, error = load_result(self.agent_dir(task_id) / RESULT_FILENAME)
        if error:
            return ReapResult(
                False,
                task_id,
                escalation=self._escalate(
                    task_id,
                    f"Result descriptor for {task_id} is invalid: {error}",
                    f"Fix {self.agent_dir(task_id) / RESULT_FILENAME}",
                    f"agent:reject {task_id}",
                ),
            )
        if record.status == "error" and result is None:
            return ReapResult(
                False,
                task_id,
                escalation=self._escalate(
                    task_id,
                    f"Agent for {task_id} exited with an error (code {record.exit_code}) and wrote no result",
                    f"Inspect the log: {self.log_file(task_id)}",
                    f"agent:reject {task_id}",
                    f"agent:clear {task_id}",
                ),
            )
        result_status = result.status if result else "completed"

        merged = False
        cleaned_up = False
        upward: tuple[UpwardSyncResult, ...] = ()
        if record.worktree is not None:
            path = Path(record.worktree.path)
            if not path.exists():
                return ReapResult(
                    False,
                    task_id,
                    result_status=result_status,
                    escalation=self._escalate(
                        task_id,
                        f"Worktree not found: {path}",
                        "The worktree was removed outside the orchestrator; unmerged work may be lost",
                        f"Check for the branch: git branch --list {record.worktree.branch}",
                        f"agent:reject {task_id}",
                        f"agent:clear {task_id}",
                    ),
                )

            merge_strategy = strategy or record.merge_strategy or self.config.agent.merge_strategy
            outcome = self.worktrees.merge_work(
                task_id, path, record.worktree.branch, record.worktree.base_branch, merge_strategy
            )
            if outcome.conflicts is not None and outcome.conflicts.has_conflicts:
                files = outcome.conflicts.files
                blocked = self.cascade.block_task(task_id, "merge conflicts")
                self._publish([blocked])
                self.store.put(record.evolve(merge_conflicts=files, result_status=result_status))
                return ReapResult(
                    False,
                    task_id,
                    result_status=result_status,
                    task_status=lexicon.BLOCKED,
                    escalation=self._conflict_escalation(
                        task_id, record.worktree.branch, record.worktree.base_branch, files
                    ),
                )
            if outcome.conflicts is not None and outcome.conflicts.error is not None:
                return ReapResult(
                    False,
                    task_id,
                    result_status=result_status,
                    escalation=self._escalate(
                        task_id,
                        f"Could not check {record.worktree.branch} against {record.worktree.base_branch} "
                        f"for conflicts: {outcome.conflicts.error}",
                        f"agent:reap {task_id} to retry",
                        f"git merge-tree $(git merge-base {record.worktree.base_branch} {record.worktree.branch}) "
                        f"{record.worktree.base_branch} {record.worktree.branch}",
                        f"Merge by hand: git checkout {record.worktree.base_branch} && "
                        f"git merge {record.worktree.branch}",
                        branch=record.worktree.branch,
                        target=record.worktree.base_branch,
                    ),
                )
            if not outcome.success:
                return ReapResult(
                    False,
                    task_id,
                    result_status=result_status,
                    escalation=self._escalate(
                        task_id,
                        f"Merge of {record.worktree.branch} into {record.worktree.base_branch} failed: "
                        f"{outcome.message}",
                        f"Make sure {record.worktree.base_branch} can be checked out in {self.project_root}",
                        f"agent:reap {task_id} to retry",
                    ),
                )
            merged = outcome.merged

            if cleanup_worktree:
                removed = self.worktrees.remove_worktree(path, record.worktree.branch, force=True)
                cleaned_up = removed.success

        cascade: CascadeResult | None = None
        if result_status == "completed":
            cascade = self.cascade.complete_task(task_id)
            self._publish(cascade.transitions)
            if record.worktree is not None:
                upward = self._sync_upward(task_id, cascade)
        else:
            self._publish([self.cascade.block_task(task_id, "agent reported blocked")])
        task = self.repository.get_task(task_id)
        task_status = task.status if task else None

        self.store.put(
            record.evolve(
                status="reaped",
                result_status=result_status,
                reaped_at=utc_now(),
                merged=merged,
                cleaned_up=cleaned_up,
                merge_conflicts=(),
            )
        )
        self.events.emit("agent:reaped", task_id, merged=merged, task_status=task_status)
        logger.info("Reaped %s: %s (merged=%s)", task_id, result_status, merged)
        return ReapResult(
            True,
            task_id,
            result_status=result_status,
            task_status=task_status,
            merged=merged,
            cleaned_up=cleaned_up,
            cascade=cascade,
            upward_sync=upward,
        )

    # ------------------------------------------------------------------
    # kill / reject / clear
    # ------------------------------------------------------------------

    def kill(self, task_id: str) -> KillResult:
        """Terminate the agent; a process that is already gone still counts as killed."""
        task_id, record = self._load(task_id)
        if record is None:
            return KillResult(
                False, task_id, escalation=self._escalate(task_id, f"No agent found for {task_id}")
            )
        if record.status in ("reaped", "rejected"):
            return KillResult(True, task_id)

        terminated = TerminateResult(was_alive=False)
        if record.pid is not None:
            terminated = self.process.terminate(record.pid, self.config.agent.kill_grace_s)

        self.store.put(record.evolve(status="killed", killed_at=utc_now(), ended_at=record.ended_at or utc_now()))
        self.events.emit("agent:killed", task_id, pid=record.pid, signal=terminated.signal)
        logger.info("Killed agent %s (was_alive=%s)", task_id, terminated.was_alive)
        return KillResult(True, task_id, was_running=terminated.was_alive, signal=terminated.signal)

    def reject(self, task_id: str, reason: str = "") -> RejectResult:
        """Discard the agent's worktree and branch without merging."""
        task_id, record = self._load(task_id)
        if record is None:
            return RejectResult(
                False, task_id, escalation=self._escalate(task_id, f"No agent found for {task_id}")
            )

        if record.pid is not None and self.process.is_alive(record.pid):
            self.process.terminate(record.pid, self.config.agent.kill_grace_s)

        if record.worktree is not None:
            removed = self.worktrees.remove_worktree(
                Path(record.worktree.path), record.worktree.branch, force=True
            )
            if not removed.success:
                return RejectResult(
                    False,
                    task_id,
                    escalation=self._escalate(
                        task_id,
                        f"Could not remove worktree {record.worktree.path}: {removed.error}",
                        f"git worktree remove --force {record.worktree.path}",
                    ),
                )

        self.store.put(
            record.evolve(
                status="rejected",
                reject_reason=reason or None,
                rejected_at=utc_now(),
                cleaned_up=record.worktree is not None,
            )
        )
        self.events.emit("agent:rejected", task_id, reason=reason)
        return RejectResult(True, task_id)

    def clear(self, task_id: str) -> bool:
        """Forget the agent for ``task_id``. A live agent is never cleared."""
        task_id, record = self._load(task_id)
        if record is None:
            return False
        if self._refresh(record).is_live:
            logger.warning("Refusing to clear %s while its agent is running", task_id)
            return False
        return self.store.delete(task_id)
