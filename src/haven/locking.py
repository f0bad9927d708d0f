"""Advisory file locks for the haven state directory.

Two kinds of lock are used by the orchestrator:

- Record locks (``locks/record-<TASK>.lock``) serialize read-modify-write
  cycles on a single agent record.
- Merge locks (``locks/merge-<branch>.lock``) serialize merges into a shared
  target branch so that two reaps on the same host never interleave their
  checkout/merge/restore sequences.

Locks are process-safe via fcntl and thread-safe via a threading.Lock wrapper.

Example usage:
    locks = HavenLocks(haven_dir)
    with locks.merge_lock("main"):
        ...
"""

from __future__ import annotations

import fcntl
import os
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator


class LockError(Exception):
    """Base exception for locking errors."""


class LockAcquisitionError(LockError):
    """Raised when a lock cannot be acquired within the timeout."""


class LockNotHeldError(LockError):
    """Raised when attempting to release a lock that is not held."""


@dataclass
class LockInfo:
    """Information about a held lock."""

    path: Path
    acquired_at: float
    process_id: int
    thread_id: int


class FileLock:
    """Exclusive cross-process lock on a single file.

    The lock file is created on first use. Acquisition either blocks forever
    (``timeout=None``) or polls with ``LOCK_NB`` until the timeout expires.
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._fd: int | None = None
        self._thread_lock = threading.Lock()
        self._acquired_at: float | None = None

    def acquire(self, timeout: float | None = None) -> LockInfo:
        """Acquire the lock.

        Args:
            timeout: Maximum time to wait (seconds). None means wait forever.

        Returns:
            LockInfo describing the held lock.

        Raises:
            LockAcquisitionError: If the timeout expires first.
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        if not self._thread_lock.acquire(timeout=-1 if timeout is None else timeout):
            raise LockAcquisitionError(f"Timeout acquiring thread lock on {self.lock_path}")

        try:
            self._fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT)
            if timeout is None:
                fcntl.flock(self._fd, fcntl.LOCK_EX)
            else:
                start = time.monotonic()
                while True:
                    try:
                        fcntl.flock(self._fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        elapsed = time.monotonic() - start
                        if elapsed >= timeout:
                            raise LockAcquisitionError(
                                f"Timeout acquiring lock on {self.lock_path} after {timeout:.2f}s"
                            ) from None
                        time.sleep(min(0.05, timeout - elapsed))
        except BaseException:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None
            self._thread_lock.release()
            raise

        self._acquired_at = time.monotonic()
        return LockInfo(
            path=self.lock_path,
            acquired_at=self._acquired_at,
            process_id=os.getpid(),
            thread_id=threading.get_ident(),
        )

    def release(self) -> None:
        """Release the lock.

        Raises:
            LockNotHeldError: If the lock is not currently held.
        """
        if self._fd is None:
            raise LockNotHeldError(f"Lock not held: {self.lock_path}")

        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
        finally:
            self._fd = None
            self._acquired_at = None
            self._thread_lock.release()

    @property
    def is_locked(self) -> bool:
        return self._fd is not None

    @contextmanager
    def hold(self, timeout: float | None = None) -> Iterator[LockInfo]:
        info = self.acquire(timeout=timeout)
        try:
            yield info
        finally:
            self.release()


def _lock_name(value: str) -> str:
    """Turn a task id or branch name into a safe lock file stem."""
    return re.sub(r"[^A-Za-z0-9._-]+", "_", value)


class HavenLocks:
    """Named lock registry rooted at ``<haven>/locks``."""

    LOCKS_DIR = "locks"
    DEFAULT_RECORD_TIMEOUT = 30.0
    DEFAULT_MERGE_TIMEOUT = 300.0

    def __init__(self, haven_dir: Path | str) -> None:
        self.locks_dir = Path(haven_dir) / self.LOCKS_DIR
        self._locks: dict[str, FileLock] = {}
        self._mutex = threading.Lock()

    def _get(self, name: str) -> FileLock:
        with self._mutex:
            if name not in self._locks:
                self._locks[name] = FileLock(self.locks_dir / f"{name}.lock")
            return self._locks[name]

    @contextmanager
    def record_lock(self, task_id: str, timeout: float | None = None) -> Iterator[LockInfo]:
        """Serialize updates to one agent record."""
        lock = self._get(f"record-{_lock_name(task_id)}")
        with lock.hold(timeout=self.DEFAULT_RECORD_TIMEOUT if timeout is None else timeout) as info:
            yield info

    @contextmanager
    def merge_lock(self, target_branch: str, timeout: float | None = None) -> Iterator[LockInfo]:
        """Serialize merges into ``target_branch``."""
        lock = self._get(f"merge-{_lock_name(target_branch)}")
        with lock.hold(timeout=self.DEFAULT_MERGE_TIMEOUT if timeout is None else timeout) as info:
            yield info
