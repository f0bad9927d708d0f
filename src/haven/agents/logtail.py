"""Follow an agent's log file and fan new lines out to subscribers.

The tailer polls the file size; when it grows, only the new bytes are read
and split into lines. A trailing partial line is held back as bytes until its
newline arrives, so multi-byte characters split across reads decode intact.
A truncated file is re-read from the start. Late subscribers can ask for the
last *n* lines before following.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from pathlib import Path

from haven.agents.events import EventBus

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


def read_last_lines(path: Path, n: int) -> list[str]:
    """Last ``n`` complete lines of ``path`` (fewer if the file is shorter)."""
    if n <= 0 or not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=n)]


class LogTailer:
    """Polls one log file and pushes complete lines to subscribers.

    Args:
        path: Log file to follow (may not exist yet).
        task_id: Task the log belongs to; used for ``agent:log`` events.
        bus: Optional event bus receiving an ``agent:log`` event per line.
        poll_interval: Seconds between size checks in the background thread.
        from_start: Deliver existing content on the first poll instead of
            starting at the current end of file.
    """

    def __init__(
        self,
        path: Path,
        task_id: str | None = None,
        bus: EventBus | None = None,
        poll_interval: float = 0.5,
        from_start: bool = False,
    ) -> None:
        self.path = Path(path)
        self.task_id = task_id
        self.bus = bus
        self.poll_interval = poll_interval
        self._position = 0 if from_start or not self.path.exists() else self.path.stat().st_size
        self._buffer = b""
        self._subscribers: list[LineCallback] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def subscribe(self, callback: LineCallback, last_n: int = 0) -> Callable[[], None]:
        """Add a subscriber, first replaying the last ``last_n`` lines to it."""
        with self._lock:
            for line in self._lines_before_position(last_n):
                callback(line)
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _lines_before_position(self, n: int) -> list[str]:
        """Last ``n`` complete lines already consumed by the tailer."""
        if n <= 0 or self._position == 0 or not self.path.exists():
            return []
        with self.path.open("rb") as f:
            head = f.read(self._position).decode("utf-8", errors="replace")
        # the last element is either empty or a partial line still in the buffer
        return head.split("\n")[:-1][-n:]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def poll(self) -> list[str]:
        """Read whatever was appended since the last poll and deliver it."""
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return []

        with self._lock:
            if size < self._position:
                logger.debug("Log %s truncated, restarting from the beginning", self.path)
                self._position = 0
                self._buffer = b""
            if size == self._position:
                return []
            with self.path.open("rb") as f:
                f.seek(self._position)
                chunk = f.read(size - self._position)
            self._position += len(chunk)
            *raw, self._buffer = (self._buffer + chunk).split(b"\n")
            lines = [line.decode("utf-8", errors="replace") for line in raw]
            subscribers = list(self._subscribers)

        for line in lines:
            for callback in subscribers:
                try:
                    callback(line)
                except Exception:
                    logger.exception("Log subscriber raised for %s", self.path)
            if self.bus is not None:
                self.bus.emit("agent:log", self.task_id, line=line)
        return lines

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            self.poll()
        self.poll()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"haven-tail-{self.path.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> LogTailer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
