# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for the haven test suite.

This module provides:
- Deterministic test environment setup
- Temporary git repositories with an initial commit on ``main``
- Small backlog builders for graph, cascade and lifecycle tests
"""
from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from haven.backlog.repository import Epic, InMemoryRepository, Prd, Task


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism."""
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "GIT_TERMINAL_PROMPT": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def run_git(args: list[str], cwd: Path) -> tuple[int, str, str]:
    """Run a git command and return (rc, stdout, stderr)."""
    result = subprocess.run(
        ["git"] + args,
        cwd=cwd,
        capture_output=True,
        text=True,
    )
    return result.returncode, result.stdout, result.stderr


def commit_file(repo: Path, name: str, content: str, message: str | None = None) -> None:
    """Write ``name`` in ``repo`` and commit it on the current branch."""
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    run_git(["add", name], repo)
    rc, _, err = run_git(["commit", "-m", message or f"update {name}"], repo)
    assert rc == 0, err


def init_repo(repo: Path) -> Path:
    """Initialize ``repo`` on branch ``main`` with one commit and ``.haven`` ignored."""
    repo.mkdir(parents=True, exist_ok=True)
    run_git(["init"], repo)
    run_git(["symbolic-ref", "HEAD", "refs/heads/main"], repo)
    run_git(["config", "user.email", "test@test.com"], repo)
    run_git(["config", "user.name", "Test"], repo)
    run_git(["config", "commit.gpgsign", "false"], repo)
    (repo / "README.md").write_text("# Test Repo\n")
    (repo / ".gitignore").write_text(".haven/\n")
    run_git(["add", "README.md", ".gitignore"], repo)
    run_git(["commit", "-m", "Initial commit"], repo)
    return repo


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository with an initial commit on ``main``."""
    return init_repo(tmp_path / "repo")


# ---------------------------------------------------------------------------
# Backlog builders
# ---------------------------------------------------------------------------


@pytest.fixture
def small_backlog() -> InMemoryRepository:
    """PRD-001 → E001 → T001..T003 where T003 waits on T001 and T002."""
    return InMemoryRepository.from_entities(
        tasks=[
            Task("T001", "Schema", parent="PRD-001 / E001"),
            Task("T002", "Parser", parent="PRD-001 / E001"),
            Task("T003", "Wire up", blocked_by=("T001", "T002"), parent="PRD-001 / E001"),
        ],
        epics=[Epic("E001", "Core", prd_id="PRD-001")],
        prds=[Prd("PRD-001", "Product")],
    )
