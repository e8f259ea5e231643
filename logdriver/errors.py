"""Exception types and the publish-failure observation buffer."""

import threading
from collections import deque
from dataclasses import asdict, dataclass


class LogDriverError(Exception):
    """Base class for all log driver errors."""


class FrameError(LogDriverError):
    """Raised when an input frame is truncated, oversized or undecodable."""


class RecordDecodeError(LogDriverError, ValueError):
    """Raised when a stored JSON record cannot be turned back into a Record."""


class TopicNotFoundError(LogDriverError):
    """Raised when a topic has no partition metadata at read-open time."""


class WorkerShutdownError(LogDriverError):
    """Raised when partition workers are still alive after the shutdown bound."""

    def __init__(self, partitions: list[int]):
        self.partitions = partitions
        super().__init__(
            f"Workers for partitions {partitions} did not stop in time"
        )


class DriverError(LogDriverError):
    """Raised for invalid logging lifecycle requests."""


@dataclass(frozen=True)
class PublishFailure:
    topic: str
    container_id: str
    error: str
    failed_at: float


class PublishErrorTracker:
    """Keeps the most recent publish failures and a running total.

    Served by the plugin's status endpoint so an operator can see which
    containers are losing lines without grepping logs.
    """

    def __init__(self, max_size: int = 100):
        self._failures: deque[PublishFailure] = deque(maxlen=max_size)
        self._total = 0
        self._lock = threading.Lock()

    def add(self, failure: PublishFailure):
        with self._lock:
            self._failures.append(failure)
            self._total += 1

    def recent(self, n: int = 10) -> list[dict]:
        """Return up to ``n`` newest failures, oldest first."""
        with self._lock:
            failures = list(self._failures)[-n:] if n > 0 else []
        return [asdict(f) for f in failures]

    @property
    def total(self) -> int:
        """Failures seen since start, including those evicted from the buffer."""
        with self._lock:
            return self._total
