"""Reassembles log lines the runtime split across several partial entries."""

from enum import Enum

from logdriver.models import RawEntry

LINE_FEED = b"\n"


class AggregationState(Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


class LineAggregator:
    """Two-state line reassembler.

    While INACTIVE, an entry's ``partial`` flag decides whether it is emitted
    as-is or opens a new buffer. Once ACTIVE, the flag of incoming entries is
    ignored and only a trailing line-feed on the accumulated buffer completes
    the line, so fragments marked "complete" mid-line are not lost.
    """

    def __init__(self):
        self._state = AggregationState.INACTIVE
        self._buffer = b""

    @property
    def state(self) -> AggregationState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state is AggregationState.ACTIVE

    def process(self, entry: RawEntry) -> bytes | None:
        """Feed one entry. Returns a completed line, or None if still buffering."""
        if self._state is AggregationState.INACTIVE:
            if not entry.partial:
                return entry.line
            self._buffer = entry.line
            self._state = AggregationState.ACTIVE
            return None

        self._buffer += entry.line
        if self._buffer.endswith(LINE_FEED):
            return self._take()
        return None

    def flush(self) -> bytes | None:
        """Emit whatever is buffered at end of stream, terminated or not."""
        if self._state is AggregationState.INACTIVE:
            return None
        return self._take()

    def _take(self) -> bytes:
        line = self._buffer
        self._buffer = b""
        self._state = AggregationState.INACTIVE
        return line
