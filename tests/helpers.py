"""In-memory Kafka stand-ins and framing helpers shared by the test suite."""

import io
import threading
import time
from types import SimpleNamespace

from kafka import TopicPartition

from logdriver.framing import encode_entry
from logdriver.models import RawEntry, Record, record_to_json


class FakeFuture:
    """Stands in for the producer's send future; completed by the test."""

    def __init__(self):
        self._callbacks = []
        self._errbacks = []

    def add_callback(self, fn, *args):
        self._callbacks.append((fn, args))
        return self

    def add_errback(self, fn, *args):
        self._errbacks.append((fn, args))
        return self

    def succeed(self, metadata):
        for fn, args in self._callbacks:
            fn(*args, metadata)

    def fail(self, exc):
        for fn, args in self._errbacks:
            fn(*args, exc)


class RecordingProducer:
    """Captures every send instead of talking to a broker."""

    def __init__(self):
        self.sent: list[dict] = []
        self.futures: list[FakeFuture] = []
        self.flushed = False
        self.closed = False
        self._lock = threading.Lock()

    def send(self, topic, value=None, key=None, headers=None):
        future = FakeFuture()
        with self._lock:
            self.sent.append({"topic": topic, "value": value, "key": key, "headers": headers})
            self.futures.append(future)
        return future

    def flush(self, timeout=None):
        self.flushed = True

    def close(self, timeout=None):
        self.closed = True


class FakeCluster:
    """Topic -> partition -> list of stored values, with retention offsets."""

    def __init__(self):
        self.topics: dict[str, dict[int, list]] = {}
        self.beginning: dict[tuple[str, int], int] = {}
        self.consumers: list["FakeConsumer"] = []
        self._lock = threading.Lock()

    def create_topic(self, topic: str, partitions):
        self.topics[topic] = {p: [] for p in partitions}

    def append(self, topic: str, partition: int, value):
        self.topics[topic][partition].append(value)

    def retain_from(self, topic: str, partition: int, offset: int):
        """Pretend everything before ``offset`` has been deleted by retention."""
        self.beginning[(topic, partition)] = offset

    def consumer(self) -> "FakeConsumer":
        consumer = FakeConsumer(self)
        with self._lock:
            self.consumers.append(consumer)
        return consumer


class FakeConsumer:
    """Implements the subset of the consumer API the read path relies on."""

    def __init__(self, cluster: FakeCluster, max_records: int = 10):
        self._cluster = cluster
        self._max_records = max_records
        self.assigned: list[TopicPartition] = []
        self.positions: dict[TopicPartition, int] = {}
        self.seeks: dict[TopicPartition, int] = {}
        self.closed = False

    def partitions_for_topic(self, topic):
        partitions = self._cluster.topics.get(topic)
        if partitions is None:
            return None
        return set(partitions)

    def beginning_offsets(self, tps):
        return {tp: self._cluster.beginning.get((tp.topic, tp.partition), 0) for tp in tps}

    def end_offsets(self, tps):
        return {tp: len(self._cluster.topics[tp.topic][tp.partition]) for tp in tps}

    def assign(self, tps):
        self.assigned = list(tps)

    def seek(self, tp, offset):
        self.seeks[tp] = offset
        self.positions[tp] = offset

    def poll(self, timeout_ms=0):
        result = {}
        for tp in self.assigned:
            log = self._cluster.topics[tp.topic][tp.partition]
            start = self.positions.get(tp, 0)
            batch = [
                SimpleNamespace(topic=tp.topic, partition=tp.partition, offset=offset, value=log[offset])
                for offset in range(start, min(len(log), start + self._max_records))
            ]
            if batch:
                result[tp] = batch
                self.positions[tp] = batch[-1].offset + 1
        if not result:
            time.sleep(timeout_ms / 1000)
        return result

    def close(self):
        self.closed = True


def make_entry(line, partial=False, source="stdout", time_nano=1_700_000_000_123_456_789) -> RawEntry:
    if isinstance(line, str):
        line = line.encode("utf-8")
    return RawEntry(line=line, source=source, partial=partial, time_nano=time_nano)


def frame_stream(entries) -> io.BytesIO:
    """Concatenate framed entries into a readable binary stream."""
    return io.BytesIO(b"".join(encode_entry(e) for e in entries))


def stored_record(line, container_id, timestamp=1_700_000_000_000_000_001, source="stdout", partial=False) -> bytes:
    return record_to_json(Record(
        line=line,
        source=source,
        partial=partial,
        timestamp=timestamp,
        container_id=container_id,
    ))


