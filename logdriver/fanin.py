"""Multi-partition read path: one worker per partition, fanned into one stream.

Each worker owns its own consumer, assigned to exactly one partition and
positioned at that partition's start offset. Workers decode stored records,
keep only those belonging to the requested container, re-frame them and put
the frames on a single bounded queue. A LogReader is the one consumer of
that queue.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from kafka import TopicPartition
from kafka.errors import KafkaError

from logdriver.errors import RecordDecodeError, TopicNotFoundError, WorkerShutdownError
from logdriver.framing import encode_entry
from logdriver.metrics import Metrics
from logdriver.models import ContainerInfo, ReadConfig, record_from_json, record_to_entry
from logdriver.offsets import compute_start_offsets, fetch_partition_bounds

logger = logging.getLogger(__name__)

_WORKER_DONE = object()
_READER_CLOSED = object()


@dataclass(frozen=True)
class PartitionCursor:
    partition: int
    start_offset: int
    stop_offset: int


class _PartitionWorker:
    """Consumes one partition and feeds matching frames into the shared sink."""

    def __init__(
        self,
        topic: str,
        cursor: PartitionCursor,
        container_id: str,
        read_config: ReadConfig,
        consumer_factory: Callable,
        sink: queue.Queue,
        stop_event: threading.Event,
        poll_timeout_ms: int,
        metrics: Metrics,
    ):
        self._topic = topic
        self._cursor = cursor
        self._container_id = container_id
        self._read_config = read_config
        self._consumer_factory = consumer_factory
        self._sink = sink
        self._stop = stop_event
        self._poll_timeout_ms = poll_timeout_ms
        self._metrics = metrics

    def run(self):
        consumer = None
        try:
            consumer = self._consumer_factory()
            tp = TopicPartition(self._topic, self._cursor.partition)
            consumer.assign([tp])
            consumer.seek(tp, self._cursor.start_offset)
            self._consume(consumer, tp)
        except KafkaError as e:
            logger.error(
                "Worker for %s[%d] failed: %s",
                self._topic, self._cursor.partition, e,
            )
        finally:
            if consumer is not None:
                consumer.close()
            logger.debug("Worker for %s[%d] exited", self._topic, self._cursor.partition)
            self._put(_WORKER_DONE)

    def _consume(self, consumer, tp: TopicPartition):
        position = self._cursor.start_offset
        while not self._stop.is_set():
            if self._caught_up(position):
                return
            batches = consumer.poll(timeout_ms=self._poll_timeout_ms)
            for message in batches.get(tp, ()):
                position = message.offset + 1
                frame = self._convert(message.value)
                if frame is not None and not self._put(frame):
                    return
                if self._caught_up(position):
                    return

    def _caught_up(self, position: int) -> bool:
        return not self._read_config.follow and position >= self._cursor.stop_offset

    def _convert(self, value) -> bytes | None:
        try:
            record = record_from_json(value)
        except RecordDecodeError as e:
            self._metrics.record_decode_error()
            logger.warning(
                "Skipping undecodable record in %s[%d]: %s",
                self._topic, self._cursor.partition, e,
            )
            return None
        if record.container_id != self._container_id:
            self._metrics.record_dropped()
            return None
        if not self._read_config.in_window(record.timestamp):
            return None
        return encode_entry(record_to_entry(record))

    def _put(self, item) -> bool:
        """Block until the sink accepts the item. Returns False once stopped."""
        timeout = self._poll_timeout_ms / 1000
        while not self._stop.is_set():
            try:
                self._sink.put(item, timeout=timeout)
                return True
            except queue.Full:
                continue
        return False


class LogReader:
    """Readable framed stream drawing from the workers' shared queue.

    ``read`` blocks until some worker has produced a frame. The stream ends
    when every worker has finished (non-follow reads) or the reader is closed.
    """

    def __init__(
        self,
        sink: queue.Queue,
        workers: dict[int, threading.Thread],
        stop_event: threading.Event,
        shutdown_timeout: float,
    ):
        self._sink = sink
        self._workers = workers
        self._stop = stop_event
        self._shutdown_timeout = shutdown_timeout
        self._finished = 0
        self._buffer = b""
        self._eof = False
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def partitions(self) -> list[int]:
        return sorted(self._workers)

    def next_frame(self, timeout: Optional[float] = None) -> bytes | None:
        """Return the next whole frame, or None at end of stream.

        With a ``timeout``, returns ``b""`` if no frame arrived in time so the
        caller can check on its client between frames.
        """
        while not self._eof:
            if self._closed or self._finished >= len(self._workers):
                self._eof = True
                break
            try:
                item = self._sink.get(timeout=timeout)
            except queue.Empty:
                return b""
            if item is _WORKER_DONE:
                self._finished += 1
                continue
            if item is _READER_CLOSED:
                self._eof = True
                break
            return item
        return None

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes; a negative size reads to end of stream."""
        if self._closed:
            raise ValueError("I/O operation on closed reader")
        if size is None or size < 0:
            chunks = [self._buffer]
            self._buffer = b""
            for frame in self:
                chunks.append(frame)
            return b"".join(chunks)

        if not self._buffer:
            frame = self.next_frame()
            if frame is None:
                return b""
            self._buffer = frame
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def __iter__(self):
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame

    def close(self):
        """Stop every worker and wait for all of them to exit.

        Raises:
            WorkerShutdownError: If any worker is still alive after the
                shutdown timeout.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self._stop.set()
        deadline = time.monotonic() + self._shutdown_timeout
        for thread in self._workers.values():
            thread.join(max(0.0, deadline - time.monotonic()))

        self._drain()
        try:
            self._sink.put_nowait(_READER_CLOSED)
        except queue.Full:
            pass

        alive = [p for p, t in sorted(self._workers.items()) if t.is_alive()]
        if alive:
            logger.error("Partition workers %s did not stop within %.1fs", alive, self._shutdown_timeout)
            raise WorkerShutdownError(alive)
        logger.debug("Reader closed, %d workers stopped", len(self._workers))

    def _drain(self):
        while True:
            try:
                self._sink.get_nowait()
            except queue.Empty:
                return

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class PartitionFanIn:
    """Opens per-container readers over every partition of a topic."""

    def __init__(
        self,
        consumer_factory: Callable,
        poll_timeout_ms: int = 500,
        queue_size: int = 1000,
        shutdown_timeout: float = 10.0,
        metrics: Optional[Metrics] = None,
    ):
        self._consumer_factory = consumer_factory
        self._poll_timeout_ms = poll_timeout_ms
        self._queue_size = queue_size
        self._shutdown_timeout = shutdown_timeout
        self._metrics = metrics or Metrics()

    def open_reader(self, topic: str, info: ContainerInfo, read_config: ReadConfig) -> LogReader:
        """Start one worker per partition and return the merged stream.

        Raises:
            TopicNotFoundError: If the topic has no partition metadata.
        """
        cursors = self._plan(topic, read_config)

        sink: queue.Queue = queue.Queue(maxsize=self._queue_size)
        stop_event = threading.Event()
        workers: dict[int, threading.Thread] = {}
        for cursor in cursors:
            worker = _PartitionWorker(
                topic,
                cursor,
                info.container_id,
                read_config,
                self._consumer_factory,
                sink,
                stop_event,
                self._poll_timeout_ms,
                self._metrics,
            )
            thread = threading.Thread(
                target=worker.run,
                name=f"partition-{topic}-{cursor.partition}",
                daemon=True,
            )
            workers[cursor.partition] = thread

        for thread in workers.values():
            thread.start()

        logger.info(
            "Reading %s for container %s: partitions=%s tail=%d follow=%s",
            topic, info.container_id, sorted(workers), read_config.tail, read_config.follow,
        )
        return LogReader(sink, workers, stop_event, self._shutdown_timeout)

    def _plan(self, topic: str, read_config: ReadConfig) -> list[PartitionCursor]:
        """Compute one cursor per partition from the topic's current metadata."""
        consumer = self._consumer_factory()
        try:
            partitions = consumer.partitions_for_topic(topic)
            if not partitions:
                raise TopicNotFoundError(f"No partition metadata for topic {topic!r}")
            partitions = sorted(partitions)
            oldest, high = fetch_partition_bounds(consumer, topic, partitions)
        finally:
            consumer.close()

        starts = compute_start_offsets(oldest, high, read_config.tail)
        return [PartitionCursor(p, starts[p], high[p]) for p in partitions]
