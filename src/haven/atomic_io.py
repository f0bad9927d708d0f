"""Atomic file writes for orchestrator state.

Agent records, mission descriptors and exit descriptors are read by other
processes while the orchestrator is running. Every write here goes through
write-to-temp + fsync + rename so a reader never observes an empty or partial
file, even if the writer is interrupted.
"""

from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path
from typing import Any

import yaml


class AtomicWriteError(Exception):
    """Raised when atomic write fails."""


def atomic_write_text(path: Path | str, content: str, encoding: str = "utf-8") -> None:
    """Write text to a file atomically.

    Args:
        path: Target file path
        content: Text content to write
        encoding: Text encoding (default: utf-8)

    Raises:
        AtomicWriteError: If write fails
    """
    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise AtomicWriteError(f"Failed to write {path}: {e}") from e


def atomic_write_json(path: Path | str, data: dict[str, Any] | list[Any], indent: int = 2) -> None:
    """Serialize ``data`` as JSON and write it atomically.

    Raises:
        AtomicWriteError: If serialization or the write fails
    """
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise AtomicWriteError(f"Failed to serialize JSON for {path}: {e}") from e
    atomic_write_text(path, content + "\n")


def atomic_write_yaml(path: Path | str, data: dict[str, Any]) -> None:
    """Serialize ``data`` as block-style YAML and write it atomically."""
    try:
        content = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
    except yaml.YAMLError as e:
        raise AtomicWriteError(f"Failed to serialize YAML for {path}: {e}") from e
    atomic_write_text(path, content)


def read_json(path: Path | str) -> tuple[dict | list | None, str | None]:
    """Read a JSON file.

    Returns:
        Tuple of (data, error_message). A missing file yields ``(None, None)``;
        an empty or unparseable file yields ``(None, <reason>)``.
    """
    path = Path(path)
    if not path.exists():
        return None, None

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        return None, f"Failed to read file: {e}"

    if not content.strip():
        return None, "File is empty (0 bytes)"

    try:
        return json.loads(content), None
    except json.JSONDecodeError as e:
        return None, f"Invalid JSON: {e}"


def read_yaml(path: Path | str) -> tuple[dict | None, str | None]:
    """Read a YAML mapping, with the same contract as :func:`read_json`."""
    path = Path(path)
    if not path.exists():
        return None, None

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        return None, f"Invalid YAML: {e}"

    if data is None:
        return None, "File is empty"
    if not isinstance(data, dict):
        return None, f"Expected a mapping, got {type(data).__name__}"
    return data, None
