"""Per-task worktrees and the PRD → Epic → Task branch hierarchy.

Branch names are pure functions of ids::

    task/T001        one per task, always
    epic/E001        epic and prd strategies
    prd/PRD-001      prd strategy only
    merge/T001-to-main   manual conflict resolution

Branching strategies:

    flat   main → task
    epic   main → epic → task
    prd    main → prd → epic → task

Worktrees live in ``<haven>/worktrees/<TASK_ID>`` so each agent edits a
disjoint copy of the repository. Merges back into shared branches happen in
the main working copy and are serialized per target branch with a lock.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from haven.errors import GitError
from haven.isolation.conflicts import ConflictCheck, ConflictDetector, check_merge_conflicts
from haven.isolation.git import GitProvider
from haven.locking import HavenLocks

logger = logging.getLogger(__name__)

Branching = Literal["flat", "epic", "prd"]
SyncMethod = Literal["merge", "rebase"]


def task_branch(task_id: str) -> str:
    return f"task/{task_id}"


def epic_branch(epic_id: str) -> str:
    return f"epic/{epic_id}"


def prd_branch(prd_id: str) -> str:
    return f"prd/{prd_id}"


def merge_branch(source_id: str, target: str) -> str:
    return f"merge/{source_id}-to-{target.replace('/', '-')}"


@dataclass(frozen=True)
class WorktreeContext:
    """Where a task sits in the hierarchy and how deep branching goes."""

    prd_id: str | None = None
    epic_id: str | None = None
    branching: Branching = "flat"


def get_branch_hierarchy(ctx: WorktreeContext, main_branch: str = "main") -> list[str]:
    """Ancestor chain for a task branch, outermost first (``[main, prd?, epic?]``)."""
    chain = [main_branch]
    if ctx.branching == "prd" and ctx.prd_id:
        chain.append(prd_branch(ctx.prd_id))
    if ctx.branching in ("epic", "prd") and ctx.epic_id:
        chain.append(epic_branch(ctx.epic_id))
    return chain


def get_parent_branch(ctx: WorktreeContext, main_branch: str = "main") -> str:
    """Branch a task's own branch is created from."""
    return get_branch_hierarchy(ctx, main_branch)[-1]


@dataclass
class HierarchyResult:
    branches: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class SyncResult:
    success: bool
    synced: bool = False
    behind: int = 0
    ahead: int = 0
    message: str = ""


@dataclass
class UpwardSyncResult:
    success: bool = True
    synced: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class WorktreeResult:
    success: bool
    path: Path
    branch: str
    base_branch: str | None = None
    recreated: bool = False
    error: str | None = None


@dataclass(frozen=True)
class RemoveResult:
    success: bool
    branch_deleted: bool = False
    remote_deleted: bool = False
    error: str | None = None


@dataclass(frozen=True)
class WorktreeEntry:
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    head: str | None = None
    branch: str | None = None
    bare: bool = False
    detached: bool = False
    locked: bool = False
    prunable: bool = False


@dataclass(frozen=True)
class WorktreeState:
    exists: bool
    clean: bool = True
    files: tuple[str, ...] = ()
    branch: str | None = None


@dataclass(frozen=True)
class MergeResult:
    success: bool
    merged: bool = False
    committed: tuple[str, ...] = ()
    conflicts: ConflictCheck | None = None
    message: str = ""


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    entries: list[WorktreeEntry] = []
    block: dict[str, str] = {}

    def _flush() -> None:
        if "worktree" in block:
            branch = block.get("branch")
            entries.append(
                WorktreeEntry(
                    path=Path(block["worktree"]),
                    head=block.get("HEAD"),
                    branch=branch.removeprefix("refs/heads/") if branch else None,
                    bare="bare" in block,
                    detached="detached" in block,
                    locked="locked" in block,
                    prunable="prunable" in block,
                )
            )
        block.clear()

    for line in output.splitlines():
        if not line.strip():
            _flush()
            continue
        key, _, value = line.partition(" ")
        block[key] = value
    _flush()
    return entries


def auto_commit_message(task_id: str) -> str:
    return f"chore({task_id}): auto-commit agent changes"


def squash_commit_message(task_id: str, branch: str) -> str:
    return f"feat({task_id}): {branch}"


class WorktreeManager:
    """Branch hierarchy, worktree and merge operations for one repository.

    Args:
        git: Provider bound to the main working copy.
        worktrees_dir: Directory holding one worktree per task.
        detector: Conflict probe used before every merge.
        main_branch: Root of the hierarchy.
        sync_before_spawn: Whether :meth:`sync_parent_branch` does anything.
        remote: Remote used by :meth:`cleanup_worktree`.
        locks: Optional lock registry serializing merges per target branch.
    """

    def __init__(
        self,
        git: GitProvider,
        worktrees_dir: Path,
        detector: ConflictDetector,
        *,
        main_branch: str = "main",
        sync_before_spawn: bool = True,
        remote: str = "origin",
        locks: HavenLocks | None = None,
    ) -> None:
        self.git = git
        self.worktrees_dir = Path(worktrees_dir)
        self.detector = detector
        self.main_branch = main_branch
        self.sync_before_spawn = sync_before_spawn
        self.remote = remote
        self.locks = locks

    def _merge_lock(self, target: str):
        return self.locks.merge_lock(target) if self.locks else nullcontext()

    def worktree_path(self, task_id: str) -> Path:
        return self.worktrees_dir / task_id

    def hierarchy(self, ctx: WorktreeContext) -> list[str]:
        return get_branch_hierarchy(ctx, self.main_branch)

    def parent_branch(self, ctx: WorktreeContext) -> str:
        return get_parent_branch(ctx, self.main_branch)

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    def ensure_branch_hierarchy(self, ctx: WorktreeContext) -> HierarchyResult:
        """Create any missing ancestor branch, each off its own parent.

        Existing branches are left exactly as they are.
        """
        chain = self.hierarchy(ctx)
        result = HierarchyResult(branches=list(chain))
        for parent, branch in zip(chain, chain[1:]):
            if self.git.branch_exists(branch):
                continue
            try:
                self.git.create_branch(branch, parent)
            except GitError as e:
                result.errors.append(f"{branch}: {e.stderr}")
                break
            logger.info("Created branch %s from %s", branch, parent)
            result.created.append(branch)
        return result

    def get_branch_divergence(self, branch: str, upstream: str) -> tuple[int, int]:
        """``(behind, ahead)`` of ``branch`` relative to ``upstream``."""
        return self.git.left_right_count(upstream, branch)

    def sync_branch(self, branch: str, upstream: str, method: SyncMethod = "merge") -> SyncResult:
        """Bring ``branch`` up to date with ``upstream`` in the main working copy.

        The previously checked-out branch is restored afterwards, also on
        failure. A failed merge or rebase is aborted.
        """
        try:
            behind, ahead = self.get_branch_divergence(branch, upstream)
        except GitError as e:
            return SyncResult(success=False, message=e.stderr)
        if behind == 0:
            return SyncResult(success=True, behind=0, ahead=ahead, message="up to date")

        original = self.git.current_branch()
        try:
            self.git.checkout(branch)
        except GitError as e:
            return SyncResult(success=False, behind=behind, ahead=ahead, message=e.stderr)
        try:
            if method == "rebase":
                ok, output = self.git.rebase(upstream)
            else:
                ok, output = self.git.merge(upstream, "merge")
        finally:
            if original and original != branch:
                self.git.run(["checkout", original])

        if not ok:
            return SyncResult(success=False, behind=behind, ahead=ahead, message=output.strip())
        logger.info("Synced %s ← %s (%d commits)", branch, upstream, behind)
        return SyncResult(success=True, synced=True, behind=behind, ahead=ahead, message=f"{branch} ← {upstream}")

    def sync_parent_branch(self, ctx: WorktreeContext) -> SyncResult:
        """Refresh the task's immediate parent branch from its own upstream.

        Exactly one level is synced. Skipped when disabled, in flat mode, or
        when the parent branch does not exist yet.
        """
        if not self.sync_before_spawn:
            return SyncResult(success=True, message="sync disabled")
        chain = self.hierarchy(ctx)
        if len(chain) < 2:
            return SyncResult(success=True, message="flat mode")
        branch, upstream = chain[-1], chain[-2]
        if not self.git.branch_exists(branch):
            return SyncResult(success=True, message=f"{branch} (not created yet)")
        return self.sync_branch(branch, upstream, "merge")

    def sync_upward_hierarchy(self, level: Literal["epic", "prd"], ctx: WorktreeContext) -> UpwardSyncResult:
        """Propagate a completed epic or PRD branch one level up.

        Each branch is first refreshed from its upstream, then merged into it:
        an epic into its PRD branch (or main under the epic strategy), a PRD
        into main.
        """
        result = UpwardSyncResult()
        if ctx.branching == "flat":
            result.skipped.append("flat mode")
            return result

        chain = self.hierarchy(ctx)
        pairs: list[tuple[str, str]] = []
        if level == "epic" and ctx.epic_id:
            branch = epic_branch(ctx.epic_id)
            if branch in chain:
                pairs.append((branch, chain[chain.index(branch) - 1]))
        elif level == "prd" and ctx.branching == "prd" and ctx.prd_id:
            pairs.append((prd_branch(ctx.prd_id), self.main_branch))
        if not pairs:
            result.skipped.append(f"no {level} branch for {ctx.branching} strategy")
            return result

        for branch, upstream in pairs:
            if not self.git.branch_exists(branch):
                result.skipped.append(f"{branch} (not found)")
                continue
            refresh = self.sync_branch(branch, upstream, "merge")
            if not refresh.success:
                result.errors.append(f"{branch}: {refresh.message}")
                continue
            merged = self._merge_into(upstream, branch, "merge", message=f"Merge {branch} into {upstream}")
            if merged.success:
                result.synced.append(f"{upstream} ← {branch}")
            else:
                result.errors.append(f"{upstream}: {merged.message}")
        result.success = not result.errors
        return result

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    def create_worktree(self, task_id: str, base_branch: str | None = None) -> WorktreeResult:
        """Create ``<worktrees>/<task_id>`` on a fresh ``task/<task_id>`` branch.

        A leftover task branch with no commits ahead of its base is deleted
        and recreated from the current base. One with commits ahead is left
        alone and reported, since deleting it would lose work.
        """
        path = self.worktree_path(task_id)
        branch = task_branch(task_id)
        if path.exists():
            return WorktreeResult(False, path, branch, error=f"Worktree already exists: {path}")

        base = base_branch or self.git.current_branch() or self.main_branch
        recreated = False
        if self.git.branch_exists(branch):
            try:
                ahead = self.git.rev_list_count(base, branch)
            except GitError:
                ahead = 0
            if ahead > 0:
                return WorktreeResult(
                    False,
                    path,
                    branch,
                    base,
                    error=(
                        f"Branch '{branch}' exists with {ahead} commit(s) ahead of {base}. "
                        f"Use 'git branch -D {branch}' to delete it, or investigate the existing work."
                    ),
                )
            self.git.delete_branch(branch, force=True)
            recreated = True

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.git.worktree_add(path, branch, base)
        except GitError as e:
            return WorktreeResult(False, path, branch, base, error=e.stderr)
        logger.info("Created worktree %s on %s (base %s)", path, branch, base)
        return WorktreeResult(True, path, branch, base, recreated=recreated)

    def remove_worktree(
        self,
        path: Path,
        branch: str | None = None,
        *,
        force: bool = False,
        keep_branch: bool = False,
    ) -> RemoveResult:
        """Remove a worktree and, unless ``keep_branch``, its branch."""
        error = None
        if path.exists():
            ok, output = self.git.worktree_remove(path, force=force)
            if not ok:
                return RemoveResult(False, error=output.strip())
        else:
            self.git.worktree_prune()

        branch_deleted = False
        if branch and not keep_branch and self.git.branch_exists(branch):
            branch_deleted = self.git.delete_branch(branch, force=force)
            if not branch_deleted:
                error = f"Branch {branch} not deleted (unmerged work?)"
        return RemoveResult(True, branch_deleted=branch_deleted, error=error)

    def cleanup_worktree(self, path: Path, branch: str, *, delete_remote: bool = True) -> RemoveResult:
        """Force-remove a worktree and delete its local and remote branches."""
        removed = self.remove_worktree(path, branch, force=True)
        if not removed.success:
            return removed
        remote_deleted = False
        if delete_remote:
            remote_deleted = self.git.delete_remote_branch(branch, self.remote)
            if not remote_deleted:
                logger.debug("Remote branch %s/%s not deleted", self.remote, branch)
        return RemoveResult(True, removed.branch_deleted, remote_deleted, removed.error)

    def list_worktrees(self) -> list[WorktreeEntry]:
        return parse_worktree_list(self.git.worktree_list())

    def prune_worktrees(self) -> None:
        self.git.worktree_prune()

    def worktree_status(self, path: Path) -> WorktreeState:
        if not path.exists():
            return WorktreeState(exists=False)
        files = self.git.status_files(path)
        return WorktreeState(
            exists=True,
            clean=not files,
            files=tuple(files),
            branch=self.git.current_branch(path),
        )

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def auto_commit(self, task_id: str, path: Path) -> list[str]:
        """Commit whatever the agent left uncommitted in its worktree."""
        files = self.git.status_files(path)
        if not files:
            return []
        self.git.add_all(path)
        self.git.commit(auto_commit_message(task_id), path)
        logger.info("Auto-committed %d file(s) in %s", len(files), path)
        return files

    def check_merge_conflicts(self, target: str, source: str) -> ConflictCheck:
        try:
            return check_merge_conflicts(self.detector, target, source)
        except GitError as e:
            return ConflictCheck(has_conflicts=False, error=e.stderr)

    def _merge_into(self, target: str, source: str, strategy: str, message: str | None = None) -> MergeResult:
        with self._merge_lock(target):
            original = self.git.current_branch()
            if original != target:
                try:
                    self.git.checkout(target)
                except GitError as e:
                    return MergeResult(False, message=f"Cannot check out {target}: {e.stderr}")
            try:
                ok, output = self.git.merge(source, strategy, message)
            finally:
                if original and original != target:
                    self.git.run(["checkout", original])
        if not ok:
            return MergeResult(False, message=output.strip())
        logger.info("Merged %s into %s (%s)", source, target, strategy)
        return MergeResult(True, merged=True, message=output.strip())

    def merge_work(
        self,
        task_id: str,
        worktree_path: Path | None,
        branch: str,
        target: str,
        strategy: str = "merge",
    ) -> MergeResult:
        """Auto-commit, re-probe conflicts, then merge ``branch`` into ``target``.

        No merge is attempted when the probe reports conflicts or fails.
        """
        committed: list[str] = []
        if worktree_path is not None and worktree_path.exists():
            committed = self.auto_commit(task_id, worktree_path)

        check = self.check_merge_conflicts(target, branch)
        if check.has_conflicts:
            return MergeResult(False, committed=tuple(committed), conflicts=check, message="Merge conflicts detected")
        if check.error is not None:
            return MergeResult(
                False, committed=tuple(committed), conflicts=check, message=f"Conflict probe failed: {check.error}"
            )

        message = squash_commit_message(task_id, branch) if strategy == "squash" else None
        result = self._merge_into(target, branch, strategy, message)
        return MergeResult(
            result.success,
            merged=result.merged,
            committed=tuple(committed),
            conflicts=check,
            message=result.message,
        )
