# SPDX-License-Identifier: MIT
"""Tests for .haven/config.yaml loading and validation."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from haven.config import HavenConfig, configure_logging, load_config, parse_config
from haven.errors import ConfigError


class TestLoadConfig:
    """File handling."""

    def test_missing_file_yields_defaults(self, tmp_path: Path) -> None:
        config = load_config(project_root=tmp_path)
        assert config == HavenConfig()
        assert config.git.main_branch == "main"
        assert config.git.branching == "flat"
        assert config.agent.use_worktrees is False
        assert config.agent.max_parallel == 6
        assert config.agent.command == ()

    def test_empty_file_yields_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / ".haven" / "config.yaml"
        path.parent.mkdir()
        path.write_text("")
        assert load_config(project_root=tmp_path) == HavenConfig()

    def test_reads_values(self, tmp_path: Path) -> None:
        path = tmp_path / ".haven" / "config.yaml"
        path.parent.mkdir()
        path.write_text(
            "git:\n"
            "  main_branch: trunk\n"
            "  branching: EPIC\n"
            "  sync_before_spawn: false\n"
            "agent:\n"
            "  use_worktrees: true\n"
            "  merge_strategy: squash\n"
            "  command: [my-agent, --mission, '{mission}']\n"
            "  poll_interval_s: 0.5\n"
            "logging:\n"
            "  level: debug\n"
        )
        config = load_config(project_root=tmp_path)
        assert config.git.main_branch == "trunk"
        assert config.git.branching == "epic"
        assert config.git.sync_before_spawn is False
        assert config.agent.use_worktrees is True
        assert config.agent.merge_strategy == "squash"
        assert config.agent.command == ("my-agent", "--mission", "{mission}")
        assert config.agent.poll_interval_s == 0.5
        assert config.logging.level == "debug"

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("git: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_path=path)

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(config_path=path)

    def test_haven_dir(self, tmp_path: Path) -> None:
        assert HavenConfig().haven_dir(tmp_path) == tmp_path / ".haven"


class TestParseConfig:
    """Value validation."""

    def test_unknown_branching(self) -> None:
        with pytest.raises(ConfigError, match="git.branching"):
            parse_config({"git": {"branching": "trunk-based"}})

    def test_unknown_merge_strategy(self) -> None:
        with pytest.raises(ConfigError, match="agent.merge_strategy"):
            parse_config({"agent": {"merge_strategy": "octopus"}})

    def test_non_positive_timeout(self) -> None:
        with pytest.raises(ConfigError, match="positive"):
            parse_config({"agent": {"timeout": 0}})

    def test_watchdog_settings_are_not_read(self) -> None:
        """The watchdog runs outside the orchestrator; its keys are ignored."""
        config = parse_config({"agent": {"watchdog_timeout": 0}})
        assert not hasattr(config.agent, "watchdog_timeout")

    def test_non_numeric_parallelism(self) -> None:
        with pytest.raises(ConfigError, match="number"):
            parse_config({"agent": {"max_parallel": "many"}})

    def test_string_command_is_split(self) -> None:
        config = parse_config({"agent": {"command": "run-agent {mission}"}})
        assert config.agent.command == ("run-agent", "{mission}")

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(ConfigError, match="'agent'"):
            parse_config({"agent": ["x"]})

    def test_config_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_config({"logging": {"level": "loud"}})


def test_configure_logging_sets_package_level() -> None:
    configure_logging(parse_config({"logging": {"level": "warning"}}))
    try:
        assert logging.getLogger("haven").level == logging.WARNING
    finally:
        logging.getLogger("haven").setLevel(logging.NOTSET)
