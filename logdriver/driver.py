"""Log driver facade: binds container streams to topics and serves reads."""

import io
import logging
import select
import socket
import threading
from typing import Callable, Optional

from logdriver.aggregator import LineAggregator
from logdriver.config import Config
from logdriver.errors import DriverError, FrameError, PublishErrorTracker
from logdriver.fanin import LogReader, PartitionFanIn
from logdriver.framing import FrameReader
from logdriver.metrics import Metrics
from logdriver.models import ContainerInfo, RawEntry, ReadConfig, Record, build_record
from logdriver.publisher import RecordPublisher
from logdriver.topics import resolve_tag, resolve_topic

logger = logging.getLogger(__name__)

# Per-container --log-opt keys that override the driver-wide defaults.
OPT_TOPIC = "topic"
OPT_TAG = "tag"
OPT_KEY_STRATEGY = "key_strategy"

STOP_POLL_INTERVAL = 0.1


def open_fifo(path: str):
    """Open the runtime's log FIFO for unbuffered binary reads."""
    return open(path, "rb", buffering=0)


class StoppableStream:
    """Read-only view of a pipe that reports end of stream once stopped.

    After ``stop`` is set, reads keep returning whatever the pipe already
    holds and return ``b""`` as soon as nothing more is immediately readable.
    Streams without a selectable descriptor are read directly.
    """

    def __init__(self, stream, stop_event: threading.Event, poll_interval: float = STOP_POLL_INTERVAL):
        self._stream = stream
        self._stop = stop_event
        self._poll_interval = poll_interval

    @property
    def closed(self) -> bool:
        return self._stream.closed

    def read(self, size: int = -1) -> bytes:
        while not self._readable():
            if self._stop.is_set():
                return b""
        return self._stream.read(size)

    def close(self):
        self._stream.close()

    def _readable(self) -> bool:
        try:
            fd = self._stream.fileno()
        except (AttributeError, io.UnsupportedOperation):
            return True
        timeout = 0 if self._stop.is_set() else self._poll_interval
        readable, _, _ = select.select([fd], [], [], timeout)
        return bool(readable)


class StreamPair:
    """One container's input stream, its destination and its aggregation state.

    The consume loop runs on its own thread, reading frames sequentially and
    handing every completed line to the publisher without waiting for
    acknowledgement. Whatever is still buffered when the stream ends is
    flushed exactly once, before ``stop`` returns.
    """

    def __init__(
        self,
        file: str,
        info: ContainerInfo,
        topic: str,
        tag: str,
        publisher: RecordPublisher,
        hostname: str,
        opener: Callable = open_fifo,
        max_frame_size: int = 1_000_000,
    ):
        self.file = file
        self.info = info
        self.topic = topic
        self.tag = tag
        self.aggregator = LineAggregator()
        self._publisher = publisher
        self._hostname = hostname
        self._opener = opener
        self._max_frame_size = max_frame_size
        self._stream = None
        self._stream_lock = threading.Lock()
        # Guards the aggregator so the final flush happens once, on whichever
        # thread gets there first.
        self._state_lock = threading.Lock()
        self._last_entry: RawEntry | None = None
        self._finished = False
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def finished(self) -> bool:
        return self._finished

    def start(self):
        self._thread = threading.Thread(
            target=self.consume,
            name=f"stream-{self.info.container_id[:12] or self.file}",
            daemon=True,
        )
        self._thread.start()

    def consume(self):
        """Read, aggregate and publish until the stream ends or stop is requested."""
        try:
            stream = self._open()
            for entry in FrameReader(stream, self._max_frame_size):
                with self._state_lock:
                    if self._finished:
                        break
                    self._last_entry = entry
                    line = self.aggregator.process(entry)
                    if line is not None:
                        self._publish(entry, line)
        except FrameError as e:
            logger.error("Corrupt frame on %s, stopping stream: %s", self.file, e)
        except (OSError, ValueError) as e:
            logger.warning("Stream %s closed while reading: %s", self.file, e)
        finally:
            self._finish()
            self._close_stream()
            logger.info("Stopped consuming %s for container %s", self.file, self.info.container_id)

    def stop(self, timeout: float = 10.0):
        """Drain what the pipe holds, flush the aggregator and end the loop.

        If the loop is still blocked after ``timeout`` (a writer that never
        connected, or one that keeps the pipe full) the flush happens here
        and anything the loop reads later is discarded.
        """
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.error(
                    "Consume loop for %s still running after %.1fs, flushing from stop",
                    self.file, timeout,
                )
        self._finish()

    def _finish(self):
        with self._state_lock:
            if self._finished:
                return
            self._finished = True
            line = self.aggregator.flush()
            if line is not None and self._last_entry is not None:
                self._publish(self._last_entry, line)

    def _publish(self, entry: RawEntry, line: bytes):
        record = build_record(entry, line, self.info, self._hostname)
        self._publisher.publish(record)

    def _open(self):
        with self._stream_lock:
            if self._stream is None:
                self._stream = StoppableStream(self._opener(self.file), self._stopping)
            return self._stream

    def _close_stream(self):
        with self._stream_lock:
            if self._stream is not None:
                try:
                    self._stream.close()
                except OSError as e:
                    logger.debug("Error closing %s: %s", self.file, e)
                self._stream = None


class LogDriver:
    """Tracks active stream pairs and opens readers over stored logs."""

    def __init__(
        self,
        config: Config,
        producer,
        fan_in: PartitionFanIn,
        hostname: Optional[str] = None,
        metrics: Optional[Metrics] = None,
        error_tracker: Optional[PublishErrorTracker] = None,
        opener: Callable = open_fifo,
        on_publish_error: Optional[Callable[[Record, Exception], None]] = None,
    ):
        self._config = config
        self._producer = producer
        self._fan_in = fan_in
        self._hostname = hostname if hostname is not None else socket.gethostname()
        self.metrics = metrics or Metrics()
        self.errors = error_tracker or PublishErrorTracker(config.error_buffer_size)
        self._opener = opener
        self._on_publish_error = on_publish_error
        self._pairs: dict[str, StreamPair] = {}
        self._lock = threading.Lock()

    @property
    def hostname(self) -> str:
        return self._hostname

    def start_logging(self, file: str, info: ContainerInfo) -> StreamPair:
        """Bind a container's log stream to its resolved topic and start consuming it.

        ``--log-opt`` values ``topic``, ``tag`` and ``key_strategy`` replace the
        driver defaults for this container; ``LOG_TOPIC``/``LOG_TAG`` in the
        container's environment still take precedence over both.

        Raises:
            DriverError: If the file is already being consumed or a log option
                is invalid.
        """
        topic = self._topic_for(info)
        tag = resolve_tag(info.log_config.get(OPT_TAG) or self._config.tag, info)
        key_strategy = info.log_config.get(OPT_KEY_STRATEGY) or self._config.key_strategy
        try:
            publisher = RecordPublisher(
                self._producer,
                topic,
                key_strategy=key_strategy,
                tag=tag,
                metrics=self.metrics,
                error_tracker=self.errors,
                on_error=self._on_publish_error,
            )
        except ValueError as e:
            raise DriverError(f"Invalid log option for {file}: {e}") from e
        pair = StreamPair(
            file,
            info,
            topic,
            tag,
            publisher,
            self._hostname,
            opener=self._opener,
            max_frame_size=self._config.max_frame_size,
        )

        with self._lock:
            if file in self._pairs:
                raise DriverError(f"Logger for {file} already exists")
            self._pairs[file] = pair

        logger.info(
            "Start logging %s for container %s -> topic=%s tag=%s key_strategy=%s",
            file, info.container_id, topic, tag, key_strategy,
        )
        pair.start()
        return pair

    def stop_logging(self, file: str):
        """Stop consuming ``file``. Buffered partial data is published before this returns."""
        with self._lock:
            pair = self._pairs.pop(file, None)
        if pair is None:
            logger.warning("Stop requested for unknown stream %s", file)
            return
        pair.stop(self._config.shutdown_timeout)
        logger.info("Stop logging %s", file)

    def read_logs(self, info: ContainerInfo, read_config: ReadConfig) -> LogReader:
        """Open a framed reader over the container's stored logs."""
        return self._fan_in.open_reader(self._topic_for(info), info, read_config)

    def capabilities(self) -> dict:
        return {"ReadLogs": True}

    def active_streams(self) -> list[str]:
        with self._lock:
            return sorted(self._pairs)

    def status(self, recent: int = 10) -> dict:
        """Counters, active streams and the newest publish failures."""
        snapshot = self.metrics.snapshot()
        snapshot["active_streams"] = self.active_streams()
        snapshot["total_publish_failures"] = self.errors.total
        snapshot["recent_errors"] = self.errors.recent(recent)
        return snapshot

    def shutdown(self):
        """Stop every stream and flush outstanding sends."""
        with self._lock:
            pairs = list(self._pairs.values())
            self._pairs.clear()
        for pair in pairs:
            pair.stop(self._config.shutdown_timeout)
        self._producer.flush(timeout=self._config.shutdown_timeout)
        self._producer.close(timeout=self._config.shutdown_timeout)
        logger.info("Driver shut down, %d streams stopped", len(pairs))

    def _topic_for(self, info: ContainerInfo) -> str:
        return resolve_topic(info.log_config.get(OPT_TOPIC) or self._config.topic, info)
