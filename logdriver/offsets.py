"""Per-partition start offsets for a tail request."""

from kafka import TopicPartition


def compute_start_offsets(
    oldest: dict[int, int],
    high_watermarks: dict[int, int],
    tail: int = 0,
) -> dict[int, int]:
    """Map each partition to the offset its reader should start from.

    A tail of zero or less starts every partition at its oldest retained
    offset. A positive tail N starts at ``high - N``, never before the
    oldest retained offset and never negative. Partitions are handled
    independently.
    """
    starts: dict[int, int] = {}
    for partition, first in oldest.items():
        first = max(first, 0)
        if tail <= 0:
            starts[partition] = first
            continue
        high = high_watermarks.get(partition, first)
        starts[partition] = max(high - tail, first)
    return starts


def fetch_partition_bounds(consumer, topic: str, partitions) -> tuple[dict[int, int], dict[int, int]]:
    """Return (oldest, high watermark) offsets keyed by partition number."""
    tps = [TopicPartition(topic, p) for p in partitions]
    beginning = consumer.beginning_offsets(tps)
    end = consumer.end_offsets(tps)
    oldest = {tp.partition: beginning[tp] for tp in tps}
    high = {tp.partition: end[tp] for tp in tps}
    return oldest, high
