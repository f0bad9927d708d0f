"""Process execution provider for agent subprocesses.

Agents run in their own session (process group) so that termination reaches
every child they start. A daemon waiter thread records the exit status in an
exit descriptor the moment the child exits; the orchestrator itself only
ever polls files and signals pids, so it can be restarted while agents keep
running.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from haven.atomic_io import atomic_write_json
from haven.agents.records import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessHandle:
    pid: int
    command: tuple[str, ...]


@dataclass(frozen=True)
class TerminateResult:
    was_alive: bool
    signal: str | None = None


class ProcessProvider(Protocol):
    def launch(
        self,
        command: list[str],
        cwd: Path,
        env: dict[str, str],
        log_file: Path,
        exit_file: Path,
    ) -> ProcessHandle: ...

    def is_alive(self, pid: int) -> bool: ...

    def terminate(self, pid: int, grace_s: float) -> TerminateResult: ...


def pid_alive(pid: int) -> bool:
    """Signal-0 liveness probe. EPERM means the process exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal_group(pid: int, sig: signal.Signals) -> bool:
    """Send ``sig`` to the process group led by ``pid``, else to ``pid`` alone.

    Returns False if the process no longer exists.
    """
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.debug("No permission to signal group %d, signalling pid", pid)
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False


class LocalProcessProvider:
    """Runs agents as local child processes."""

    POLL_S = 0.2

    def __init__(self) -> None:
        self._procs: dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def launch(
        self,
        command: list[str],
        cwd: Path,
        env: dict[str, str],
        log_file: Path,
        exit_file: Path,
    ) -> ProcessHandle:
        """Start ``command`` with stdout/stderr appended to ``log_file``.

        Raises:
            OSError: If the executable cannot be started.
        """
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "ab") as log:
            proc = subprocess.Popen(
                command,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        with self._lock:
            self._procs[proc.pid] = proc
        waiter = threading.Thread(
            target=self._wait_and_record,
            args=(proc, exit_file),
            name=f"haven-waiter-{proc.pid}",
            daemon=True,
        )
        waiter.start()
        logger.info("Launched pid %d: %s", proc.pid, " ".join(command))
        return ProcessHandle(pid=proc.pid, command=tuple(command))

    def _wait_and_record(self, proc: subprocess.Popen, exit_file: Path) -> None:
        returncode = proc.wait()
        exit_code = returncode if returncode >= 0 else None
        exit_signal = -returncode if returncode < 0 else None
        try:
            atomic_write_json(
                exit_file,
                {"pid": proc.pid, "exit_code": exit_code, "exit_signal": exit_signal, "ended_at": utc_now()},
            )
        finally:
            # the exit descriptor is on disk before the pid stops counting as alive
            with self._lock:
                self._procs.pop(proc.pid, None)
        logger.info("pid %d exited (code=%s, signal=%s)", proc.pid, exit_code, exit_signal)

    def is_alive(self, pid: int) -> bool:
        with self._lock:
            if pid in self._procs:
                return True
        return pid_alive(pid)

    def terminate(self, pid: int, grace_s: float) -> TerminateResult:
        """SIGTERM the agent's process group, then SIGKILL after ``grace_s``.

        A pid that is already gone is reported with ``was_alive=False``.
        """
        if not self.is_alive(pid):
            return TerminateResult(was_alive=False)
        if not _signal_group(pid, signal.SIGTERM):
            return TerminateResult(was_alive=False)

        deadline = time.monotonic() + grace_s
        while time.monotonic() < deadline:
            if not self.is_alive(pid):
                return TerminateResult(was_alive=True, signal="SIGTERM")
            time.sleep(self.POLL_S)

        _signal_group(pid, signal.SIGKILL)
        for _ in range(10):
            if not self.is_alive(pid):
                break
            time.sleep(self.POLL_S)
        return TerminateResult(was_alive=True, signal="SIGKILL")
