"""Named preconditions for worktree transitions.

Each guard inspects the repository and returns a :class:`GuardResult`; none
of them mutate anything. :func:`run_guards` evaluates a list by name and
collects every failure so the caller can report them all at once.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from haven.errors import GitError
from haven.isolation.git import GitProvider

MAX_LISTED_FILES = 10


@dataclass(frozen=True)
class GuardContext:
    git: GitProvider
    worktree_path: Path | None = None
    branch: str | None = None
    base_branch: str = "main"
    conflicts_with: tuple[str, ...] = ()


@dataclass(frozen=True)
class GuardResult:
    ok: bool
    error: str | None = None


@dataclass
class GuardReport:
    ok: bool = True
    errors: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def has_git(ctx: GuardContext) -> GuardResult:
    if shutil.which("git") is None:
        return GuardResult(False, "Git not installed")
    return GuardResult(True)


def has_git_repo(ctx: GuardContext) -> GuardResult:
    if not ctx.git.is_repo():
        return GuardResult(False, f"Not a git repository: {ctx.git.root}")
    return GuardResult(True)


def repo_has_commits(ctx: GuardContext) -> GuardResult:
    if not ctx.git.has_commits():
        return GuardResult(False, "Repository has no commits (worktrees need a branch point)")
    return GuardResult(True)


def repo_clean(ctx: GuardContext) -> GuardResult:
    try:
        files = ctx.git.status_files()
    except GitError as e:
        return GuardResult(False, e.stderr)
    if files:
        listed = ", ".join(files[:MAX_LISTED_FILES])
        more = f" (+{len(files) - MAX_LISTED_FILES} more)" if len(files) > MAX_LISTED_FILES else ""
        return GuardResult(False, f"Working tree has uncommitted changes: {listed}{more}")
    return GuardResult(True)


def no_existing_worktree(ctx: GuardContext) -> GuardResult:
    if ctx.worktree_path is not None and ctx.worktree_path.exists():
        return GuardResult(False, f"Worktree already exists: {ctx.worktree_path}")
    return GuardResult(True)


def branch_available(ctx: GuardContext) -> GuardResult:
    if ctx.branch and ctx.git.branch_exists(ctx.branch):
        return GuardResult(False, f"Branch already exists: {ctx.branch}")
    return GuardResult(True)


def worktree_exists(ctx: GuardContext) -> GuardResult:
    if ctx.worktree_path is None or not ctx.worktree_path.exists():
        return GuardResult(False, f"Worktree not found: {ctx.worktree_path}")
    return GuardResult(True)


def worktree_clean(ctx: GuardContext) -> GuardResult:
    if ctx.worktree_path is None or not ctx.worktree_path.exists():
        return GuardResult(False, f"Worktree not found: {ctx.worktree_path}")
    try:
        files = ctx.git.status_files(ctx.worktree_path)
    except GitError as e:
        return GuardResult(False, e.stderr)
    if files:
        return GuardResult(False, "Worktree has uncommitted changes")
    return GuardResult(True)


def worktree_has_commits(ctx: GuardContext) -> GuardResult:
    if not ctx.branch:
        return GuardResult(False, "No branch to inspect")
    try:
        count = ctx.git.rev_list_count(ctx.base_branch, ctx.branch)
    except GitError as e:
        return GuardResult(False, e.stderr)
    if count == 0:
        return GuardResult(False, "No commits to merge")
    return GuardResult(True)


def no_parallel_conflicts(ctx: GuardContext) -> GuardResult:
    if ctx.conflicts_with:
        return GuardResult(False, f"Conflicts with running agents: {', '.join(ctx.conflicts_with)}")
    return GuardResult(True)


GUARDS: dict[str, Callable[[GuardContext], GuardResult]] = {
    "has_git": has_git,
    "has_git_repo": has_git_repo,
    "repo_has_commits": repo_has_commits,
    "repo_clean": repo_clean,
    "no_existing_worktree": no_existing_worktree,
    "branch_available": branch_available,
    "worktree_exists": worktree_exists,
    "worktree_clean": worktree_clean,
    "worktree_has_commits": worktree_has_commits,
    "no_parallel_conflicts": no_parallel_conflicts,
}

SPAWN_GUARDS = ("has_git", "has_git_repo", "repo_clean", "repo_has_commits")


def run_guards(names: Iterable[str], ctx: GuardContext, *, stop_on_failure: bool = False) -> GuardReport:
    """Evaluate guards by name.

    Raises:
        KeyError: If a guard name is unknown.
    """
    report = GuardReport()
    for name in names:
        result = GUARDS[name](ctx)
        if not result.ok:
            report.ok = False
            report.failed.append(name)
            report.errors.append(result.error or name)
            if stop_on_failure:
                break
    return report
