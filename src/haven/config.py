"""Configuration loader for the haven orchestrator.

Reads ``.haven/config.yaml`` from the project root and exposes frozen
dataclasses for type-safe access. A missing file yields the defaults; any
present file must be a valid YAML mapping.

Example config.yaml:

    git:
      main_branch: main
      branching: epic
      sync_before_spawn: true
    agent:
      use_worktrees: true
      merge_strategy: squash
      command: ["my-agent", "--mission", "{mission}"]
    logging:
      level: debug
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from haven.errors import ConfigError

HAVEN_DIRNAME = ".haven"
DEFAULT_CONFIG_PATH = Path(HAVEN_DIRNAME) / "config.yaml"

BRANCHING_STRATEGIES = ("flat", "epic", "prd")
MERGE_STRATEGIES = ("merge", "squash", "rebase")
LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass(frozen=True)
class GitConfig:
    """Version-control settings."""

    main_branch: str = "main"
    branching: str = "flat"
    sync_before_spawn: bool = True
    remote: str = "origin"


@dataclass(frozen=True)
class AgentConfig:
    """Agent process settings."""

    use_worktrees: bool = False
    timeout: int = 3600
    merge_strategy: str = "merge"
    max_parallel: int = 6
    kill_grace_s: float = 5.0
    poll_interval_s: float = 5.0
    command: tuple[str, ...] = ()


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"


@dataclass(frozen=True)
class HavenConfig:
    """Complete orchestrator configuration."""

    git: GitConfig = field(default_factory=GitConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def haven_dir(self, project_root: Path) -> Path:
        """State directory holding agent records, locks and worktrees."""
        return project_root / HAVEN_DIRNAME


def load_config(
    config_path: Path | None = None,
    project_root: Path | None = None,
) -> HavenConfig:
    """Load haven configuration from YAML.

    Args:
        config_path: Path to config.yaml. Defaults to .haven/config.yaml.
        project_root: Project root directory. Defaults to current working directory.

    Returns:
        HavenConfig with all configuration values.

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values.
    """
    root = project_root or Path.cwd()
    path = config_path or (root / DEFAULT_CONFIG_PATH)

    if not path.exists():
        return HavenConfig()

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return HavenConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

    return parse_config(data)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return value


def _choice(value: Any, allowed: tuple[str, ...], key: str) -> str:
    text = str(value).strip().lower()
    if text not in allowed:
        raise ConfigError(f"{key} must be one of {', '.join(allowed)}; got {value!r}")
    return text


def _positive(value: Any, key: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a number; got {value!r}") from e
    if number <= 0:
        raise ConfigError(f"{key} must be positive; got {value!r}")
    return number


def parse_config(data: dict[str, Any]) -> HavenConfig:
    """Build a HavenConfig from an already-parsed mapping."""
    defaults_git = GitConfig()
    git_data = _section(data, "git")
    git = GitConfig(
        main_branch=str(git_data.get("main_branch", defaults_git.main_branch)),
        branching=_choice(git_data.get("branching", defaults_git.branching), BRANCHING_STRATEGIES, "git.branching"),
        sync_before_spawn=bool(git_data.get("sync_before_spawn", defaults_git.sync_before_spawn)),
        remote=str(git_data.get("remote", defaults_git.remote)),
    )

    defaults_agent = AgentConfig()
    agent_data = _section(data, "agent")
    command = agent_data.get("command", [])
    if isinstance(command, str):
        command = command.split()
    if not isinstance(command, list):
        raise ConfigError("agent.command must be a list of arguments")
    agent = AgentConfig(
        use_worktrees=bool(agent_data.get("use_worktrees", defaults_agent.use_worktrees)),
        timeout=int(_positive(agent_data.get("timeout", defaults_agent.timeout), "agent.timeout")),
        merge_strategy=_choice(
            agent_data.get("merge_strategy", defaults_agent.merge_strategy),
            MERGE_STRATEGIES,
            "agent.merge_strategy",
        ),
        max_parallel=int(_positive(agent_data.get("max_parallel", defaults_agent.max_parallel), "agent.max_parallel")),
        kill_grace_s=_positive(agent_data.get("kill_grace_s", defaults_agent.kill_grace_s), "agent.kill_grace_s"),
        poll_interval_s=_positive(
            agent_data.get("poll_interval_s", defaults_agent.poll_interval_s), "agent.poll_interval_s"
        ),
        command=tuple(str(part) for part in command),
    )

    logging_data = _section(data, "logging")
    log_config = LoggingConfig(
        level=_choice(logging_data.get("level", LoggingConfig().level), LOG_LEVELS, "logging.level"),
    )

    return HavenConfig(git=git, agent=agent, logging=log_config)


def configure_logging(config: HavenConfig) -> None:
    """Apply ``logging.level`` to the ``haven`` logger hierarchy.

    Handlers are left to the embedding application.
    """
    logging.getLogger("haven").setLevel(config.logging.level.upper())
