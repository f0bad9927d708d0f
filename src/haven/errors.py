"""Exception hierarchy and the escalation value for the haven orchestrator.

Lifecycle operations do not raise for conditions a human can fix (dirty
working tree, merge conflicts, an agent that is still running). They return
an :class:`Escalation` instead so the calling layer can present remediation.
Exceptions are reserved for I/O failures and corrupted state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class HavenError(Exception):
    """Base class for orchestrator errors."""


class ConfigError(HavenError, ValueError):
    """Raised when haven configuration is invalid."""


class GitError(HavenError):
    """Raised when a git command fails where failure is not expected."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str) -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"git {' '.join(cmd)} failed (rc={returncode}): {self.stderr}")


class GraphCycleError(HavenError):
    """Raised when a query needs an acyclic graph but cycles exist."""

    def __init__(self, cycles: list[list[str]]) -> None:
        self.cycles = cycles
        rendered = "; ".join(" -> ".join(c) for c in cycles)
        super().__init__(f"Dependency cycle detected: {rendered}")


class RecordStoreError(HavenError):
    """Raised when an agent record cannot be read or written."""


class UnknownEntityError(HavenError, KeyError):
    """Raised when a repository write targets an id it does not hold."""


@dataclass(frozen=True)
class Escalation:
    """A condition that needs a human (or a higher layer) to decide.

    Attributes:
        reason: One-line description of what blocked the operation.
        next_steps: Concrete commands or actions, in the order to try them.
        context: Extra machine-readable details (conflicting files, pids...).
    """

    reason: str
    next_steps: tuple[str, ...] = ()
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "next_steps": list(self.next_steps),
            "context": dict(self.context),
        }

    def __str__(self) -> str:
        lines = [self.reason]
        lines.extend(f"  - {step}" for step in self.next_steps)
        return "\n".join(lines)
