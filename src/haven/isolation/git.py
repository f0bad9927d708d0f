"""Thin git provider used by the isolation layer.

All git access goes through :class:`GitProvider` so that commands are logged
in one place and tests can point it at a throwaway repository. Commands
return ``(returncode, stdout, stderr)``; callers decide whether a non-zero
exit is an expected outcome (a conflicting merge) or an error (``check``).
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from haven.errors import GitError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 120.0


def _run_cmd(
    cmd: list[str],
    cwd: Path,
    env: dict[str, str] | None = None,
    *,
    timeout: float | None = DEFAULT_TIMEOUT_S,
) -> tuple[int, str, str]:
    """Run a subprocess and capture its output.

    A timeout is reported as return code 124 rather than raised.
    """
    try:
        proc = subprocess.run(cmd, cwd=str(cwd), env=env, text=True, capture_output=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        return 124, "", f"timed out after {e.timeout}s"
    return proc.returncode, proc.stdout or "", proc.stderr or ""


def parse_porcelain_status(output: str) -> list[str]:
    """File paths from ``git status --porcelain`` output (rename targets for renames)."""
    files = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(path.strip('"'))
    return files


class GitProvider:
    """Repository-scoped git primitives.

    Args:
        root: Main working copy of the repository.
        timeout_s: Per-command timeout.
    """

    def __init__(self, root: Path | str, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self.root = Path(root)
        self.timeout_s = timeout_s
        self._env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true"}

    def run(self, args: list[str], cwd: Path | None = None) -> tuple[int, str, str]:
        workdir = cwd or self.root
        logger.debug("git %s (cwd=%s)", " ".join(args), workdir)
        return _run_cmd(["git", *args], workdir, self._env, timeout=self.timeout_s)

    def check(self, args: list[str], cwd: Path | None = None) -> str:
        """Run a command that must succeed and return its stripped stdout.

        Raises:
            GitError: If git exits non-zero.
        """
        rc, out, err = self.run(args, cwd)
        if rc != 0:
            raise GitError(args, rc, err or out)
        return out.strip()

    # -- repository state ------------------------------------------------

    def is_repo(self, cwd: Path | None = None) -> bool:
        return self.run(["rev-parse", "--git-dir"], cwd)[0] == 0

    def has_commits(self, cwd: Path | None = None) -> bool:
        return self.run(["rev-parse", "--verify", "--quiet", "HEAD"], cwd)[0] == 0

    def status_files(self, cwd: Path | None = None) -> list[str]:
        """Uncommitted (including untracked) files in a working copy."""
        rc, out, err = self.run(["status", "--porcelain"], cwd)
        if rc != 0:
            raise GitError(["status", "--porcelain"], rc, err)
        return parse_porcelain_status(out)

    def is_clean(self, cwd: Path | None = None) -> bool:
        return not self.status_files(cwd)

    def current_branch(self, cwd: Path | None = None) -> str | None:
        rc, out, _ = self.run(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd)
        return out.strip() if rc == 0 else None

    # -- branches --------------------------------------------------------

    def branch_exists(self, branch: str) -> bool:
        return self.run(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"])[0] == 0

    def create_branch(self, branch: str, start_point: str) -> None:
        self.check(["branch", branch, start_point])

    def delete_branch(self, branch: str, force: bool = False) -> bool:
        rc, _, err = self.run(["branch", "-D" if force else "-d", branch])
        if rc != 0:
            logger.warning("Could not delete branch %s: %s", branch, err.strip())
        return rc == 0

    def checkout(self, branch: str, cwd: Path | None = None) -> None:
        self.check(["checkout", branch], cwd)

    def rev_list_count(self, from_ref: str, to_ref: str) -> int:
        """Number of commits in ``to_ref`` that are not in ``from_ref``."""
        return int(self.check(["rev-list", "--count", f"{from_ref}..{to_ref}"]) or 0)

    def left_right_count(self, upstream: str, branch: str) -> tuple[int, int]:
        """Return ``(behind, ahead)`` of ``branch`` relative to ``upstream``."""
        out = self.check(["rev-list", "--left-right", "--count", f"{upstream}...{branch}"])
        behind, ahead = (int(x) for x in out.split())
        return behind, ahead

    def diff_names(self, base: str, branch: str) -> list[str]:
        """Files changed on ``branch`` since it forked from ``base``."""
        rc, out, _ = self.run(["diff", "--name-only", f"{base}...{branch}"])
        if rc != 0:
            return []
        return [line for line in out.splitlines() if line.strip()]

    # -- commits and merges -----------------------------------------------

    def add_all(self, cwd: Path | None = None) -> None:
        self.check(["add", "-A"], cwd)

    def commit(self, message: str, cwd: Path | None = None) -> None:
        self.check(["commit", "-m", message], cwd)

    def merge(self, branch: str, strategy: str = "merge", message: str | None = None) -> tuple[bool, str]:
        """Merge ``branch`` into the currently checked-out branch of the root.

        ``strategy`` is ``merge`` (``--no-edit``), ``squash`` (squash then a
        single commit with ``message``) or ``rebase``. A failed merge or
        rebase is aborted before returning ``(False, output)``.
        """
        if strategy == "rebase":
            rc, out, err = self.run(["rebase", branch])
            if rc != 0:
                self.run(["rebase", "--abort"])
                return False, err or out
            return True, out

        if strategy == "squash":
            rc, out, err = self.run(["merge", "--squash", branch])
            if rc != 0:
                self.run(["merge", "--abort"])
                self.run(["reset", "--merge"])
                return False, err or out
            if self.is_clean():
                return True, "nothing to squash"
            rc, out, err = self.run(["commit", "-m", message or f"Squash merge {branch}"])
            if rc != 0:
                self.run(["reset", "--merge"])
                return False, err or out
            return True, out

        args = ["merge", "--no-edit", branch]
        if message:
            args[1:1] = ["-m", message]
        rc, out, err = self.run(args)
        if rc != 0:
            self.run(["merge", "--abort"])
            return False, err or out
        return True, out

    def rebase(self, upstream: str, cwd: Path | None = None) -> tuple[bool, str]:
        rc, out, err = self.run(["rebase", upstream], cwd)
        if rc != 0:
            self.run(["rebase", "--abort"], cwd)
            return False, err or out
        return True, out

    def merge_base(self, a: str, b: str) -> str | None:
        rc, out, _ = self.run(["merge-base", a, b])
        return out.strip() if rc == 0 and out.strip() else None

    def merge_tree(self, base: str, a: str, b: str) -> str:
        """Three-way merge preview. Writes nothing to the index or working tree."""
        return self.check(["merge-tree", base, a, b])

    # -- worktrees ---------------------------------------------------------

    def worktree_add(self, path: Path, branch: str, base: str) -> None:
        self.check(["worktree", "add", str(path), "-b", branch, base])

    def worktree_remove(self, path: Path, force: bool = False) -> tuple[bool, str]:
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        rc, out, err = self.run(args)
        return rc == 0, err or out

    def worktree_list(self) -> str:
        return self.check(["worktree", "list", "--porcelain"])

    def worktree_prune(self) -> None:
        self.check(["worktree", "prune"])

    # -- remotes -------------------------------------------------------------

    def delete_remote_branch(self, branch: str, remote: str = "origin") -> bool:
        return self.run(["push", remote, "--delete", branch])[0] == 0
