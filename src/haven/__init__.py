"""Haven: orchestration engine for agent-driven backlogs.

A backlog of PRDs, epics and tasks is turned into a dependency graph; ready
tasks are handed to agent subprocesses, each isolated in its own git
worktree on a branch hierarchy; finished work is merged back and task status
cascades up to the owning epic and PRD.

Public API
----------
- :class:`AgentLifecycle` - spawn, wait, reap, kill, reject and clear agents
- :func:`build_graph` / :func:`ready_tasks` - scheduling queries
- :class:`StatusCascade` - status propagation through the hierarchy
- :class:`WorktreeManager` - branch hierarchy and worktree isolation
- :func:`load_config` - ``.haven/config.yaml`` loader
"""

from haven.agents import AgentLifecycle, EventBus
from haven.backlog import InMemoryRepository, StatusCascade, build_graph, detect_cycles, ready_tasks
from haven.config import HavenConfig, configure_logging, load_config
from haven.errors import ConfigError, Escalation, GitError, GraphCycleError, HavenError
from haven.isolation import WorktreeContext, WorktreeManager

__version__ = "0.1.0"

__all__ = [
    "AgentLifecycle",
    "ConfigError",
    "Escalation",
    "EventBus",
    "GitError",
    "GraphCycleError",
    "HavenConfig",
    "HavenError",
    "InMemoryRepository",
    "StatusCascade",
    "WorktreeContext",
    "WorktreeManager",
    "__version__",
    "build_graph",
    "configure_logging",
    "detect_cycles",
    "load_config",
    "ready_tasks",
]
