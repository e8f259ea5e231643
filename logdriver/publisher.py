"""Fire-and-forget publishing of records to a Kafka topic."""

import logging
import time
from typing import Callable, Optional

from kafka.errors import KafkaError

from logdriver.errors import PublishErrorTracker, PublishFailure
from logdriver.metrics import Metrics
from logdriver.models import Record, format_timestamp, record_to_json

logger = logging.getLogger(__name__)

KEY_BY_TIMESTAMP = "key_by_timestamp"
KEY_BY_CONTAINER_ID = "key_by_container_id"
KEY_NONE = "none"
KEY_STRATEGIES = (KEY_BY_TIMESTAMP, KEY_BY_CONTAINER_ID, KEY_NONE)

TAG_HEADER = "tag"


def partition_key(record: Record, strategy: str) -> bytes | None:
    """Derive the message key for a record under the given strategy."""
    if strategy == KEY_BY_TIMESTAMP:
        return format_timestamp(record.timestamp).encode("utf-8")
    if strategy == KEY_BY_CONTAINER_ID:
        return record.container_id.encode("utf-8")
    if strategy == KEY_NONE:
        return None
    raise ValueError(f"Unknown key strategy: {strategy!r}")


class RecordPublisher:
    """Sends one record per aggregated line without waiting for acknowledgement.

    Completion is reported through the send future's callbacks into the
    metrics counters, the error tracker and an optional ``on_error`` policy
    hook. Nothing is retried here.
    """

    def __init__(
        self,
        producer,
        topic: str,
        key_strategy: str = KEY_BY_TIMESTAMP,
        tag: str = "",
        metrics: Optional[Metrics] = None,
        error_tracker: Optional[PublishErrorTracker] = None,
        on_error: Optional[Callable[[Record, Exception], None]] = None,
    ):
        if key_strategy not in KEY_STRATEGIES:
            raise ValueError(f"Unknown key strategy: {key_strategy!r}")
        self._producer = producer
        self._topic = topic
        self._key_strategy = key_strategy
        self._headers = [(TAG_HEADER, tag.encode("utf-8"))] if tag else None
        self._metrics = metrics or Metrics()
        self._errors = error_tracker or PublishErrorTracker()
        self._on_error = on_error

    @property
    def topic(self) -> str:
        return self._topic

    def publish(self, record: Record):
        """Enqueue an asynchronous send and return its future.

        Returns None when the producer rejects the send outright; the failure
        is reported the same way as an asynchronous one.
        """
        try:
            future = self._producer.send(
                self._topic,
                value=record_to_json(record),
                key=partition_key(record, self._key_strategy),
                headers=self._headers,
            )
        except KafkaError as e:
            self._on_failure(record, e)
            return None
        future.add_callback(self._on_success)
        future.add_errback(self._on_failure, record)
        return future

    def flush(self, timeout: Optional[float] = None):
        """Block until every pending send has completed."""
        self._producer.flush(timeout=timeout)

    def _on_success(self, metadata):
        self._metrics.record_published()
        logger.debug(
            "Published to %s[%s] at offset %s",
            metadata.topic, metadata.partition, metadata.offset,
        )

    def _on_failure(self, record: Record, exc: Exception):
        self._metrics.record_failed()
        self._errors.add(PublishFailure(
            topic=self._topic,
            container_id=record.container_id,
            error=str(exc),
            failed_at=time.time(),
        ))
        logger.error("Failed to publish record to %s: %s", self._topic, exc)
        if self._on_error is not None:
            self._on_error(record, exc)
