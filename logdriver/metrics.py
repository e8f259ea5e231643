"""Thread-safe metrics collection and periodic reporting."""

import logging
import threading

logger = logging.getLogger(__name__)


class Metrics:
    """Thread-safe counters shared by the write and read paths."""

    def __init__(self):
        self._lock = threading.Lock()
        self._published = 0
        self._failed = 0
        self._dropped = 0
        self._decode_errors = 0

    def record_published(self):
        """Record a send acknowledged by the broker."""
        with self._lock:
            self._published += 1

    def record_failed(self):
        """Record a send that failed."""
        with self._lock:
            self._failed += 1

    def record_dropped(self):
        """Record a read-path record filtered out for another container."""
        with self._lock:
            self._dropped += 1

    def record_decode_error(self):
        with self._lock:
            self._decode_errors += 1

    def snapshot(self) -> dict:
        """Read all counters without resetting them."""
        with self._lock:
            return self._counters()

    def snapshot_and_reset(self) -> dict:
        """Atomically read all counters and reset them to zero."""
        with self._lock:
            snapshot = self._counters()
            self._published = 0
            self._failed = 0
            self._dropped = 0
            self._decode_errors = 0
            return snapshot

    def _counters(self) -> dict:
        return {
            "published": self._published,
            "failed": self._failed,
            "dropped": self._dropped,
            "decode_errors": self._decode_errors,
        }


class MetricsReporter:
    """Background thread that periodically logs metrics summaries."""

    def __init__(
        self,
        metrics: Metrics,
        interval: float,
        shutdown_event: threading.Event,
    ):
        self._metrics = metrics
        self._interval = interval
        self._shutdown = shutdown_event
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the reporter thread."""
        self._thread = threading.Thread(target=self._report_loop, daemon=True)
        self._thread.start()

    def stop(self):
        """Wait for the reporter to exit once shutdown is signalled."""
        if self._thread:
            self._thread.join(timeout=5)

    def _report_loop(self):
        while not self._shutdown.is_set():
            self._shutdown.wait(self._interval)
            if self._shutdown.is_set():
                break

            snapshot = self._metrics.snapshot_and_reset()
            logger.info(
                "[metrics] published=%d failed=%d dropped=%d decode_errors=%d",
                snapshot["published"],
                snapshot["failed"],
                snapshot["dropped"],
                snapshot["decode_errors"],
            )
