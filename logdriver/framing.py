"""Wire framing: 4-byte big-endian length prefix + protobuf LogEntry payload.

The LogEntry message matches the container runtime's log-driver protocol:

  message LogEntry {
    string source = 1;
    int64 time_nano = 2;
    bytes line = 3;
    bool partial = 4;
    PartialLogEntryMetadata partial_log_metadata = 5;
  }

The message class is built from a descriptor at import time.
"""

import struct

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from logdriver.errors import FrameError
from logdriver.models import RawEntry

HEADER_SIZE = 4
HEADER_FORMAT = "!I"  # 4-byte uint32 big-endian
DEFAULT_MAX_FRAME_SIZE = 1_000_000

_Field = descriptor_pb2.FieldDescriptorProto


def _build_log_entry_class():
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="logdriver/entry.proto",
        package="logdriver",
        syntax="proto3",
    )

    metadata = file_proto.message_type.add(name="PartialLogEntryMetadata")
    metadata.field.add(name="last", number=1, type=_Field.TYPE_BOOL, label=_Field.LABEL_OPTIONAL)
    metadata.field.add(name="id", number=2, type=_Field.TYPE_STRING, label=_Field.LABEL_OPTIONAL)
    metadata.field.add(name="ordinal", number=3, type=_Field.TYPE_INT32, label=_Field.LABEL_OPTIONAL)

    entry = file_proto.message_type.add(name="LogEntry")
    entry.field.add(name="source", number=1, type=_Field.TYPE_STRING, label=_Field.LABEL_OPTIONAL)
    entry.field.add(name="time_nano", number=2, type=_Field.TYPE_INT64, label=_Field.LABEL_OPTIONAL)
    entry.field.add(name="line", number=3, type=_Field.TYPE_BYTES, label=_Field.LABEL_OPTIONAL)
    entry.field.add(name="partial", number=4, type=_Field.TYPE_BOOL, label=_Field.LABEL_OPTIONAL)
    entry.field.add(
        name="partial_log_metadata",
        number=5,
        type=_Field.TYPE_MESSAGE,
        label=_Field.LABEL_OPTIONAL,
        type_name=".logdriver.PartialLogEntryMetadata",
    )

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("logdriver.LogEntry"))


LogEntry = _build_log_entry_class()


def encode_entry(entry: RawEntry) -> bytes:
    """Encode a RawEntry into a framed message: [length][LogEntry payload]."""
    message = LogEntry(
        source=entry.source,
        time_nano=entry.time_nano,
        line=entry.line,
        partial=entry.partial,
    )
    payload = message.SerializeToString()
    return struct.pack(HEADER_FORMAT, len(payload)) + payload


def decode_entry(payload: bytes) -> RawEntry:
    """Decode a LogEntry payload (without its length prefix).

    Raises:
        FrameError: If the payload is not a valid LogEntry.
    """
    message = LogEntry()
    try:
        message.ParseFromString(payload)
    except DecodeError as e:
        raise FrameError(f"Invalid LogEntry payload: {e}") from e
    return RawEntry(
        line=bytes(message.line),
        source=message.source,
        partial=message.partial,
        time_nano=message.time_nano,
    )


def read_exact(stream, n: int) -> bytes:
    """Read exactly n bytes from a binary stream.

    Returns fewer bytes only when the stream ends first.
    """
    data = b""
    while len(data) < n:
        chunk = stream.read(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


class FrameReader:
    """Reads length-prefixed LogEntry frames from a binary stream."""

    def __init__(self, stream, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE):
        self._stream = stream
        self._max_frame_size = max_frame_size

    def read_entry(self) -> RawEntry | None:
        """Return the next entry, or None on a clean end of stream.

        Raises:
            FrameError: On a truncated header or payload, an oversized frame,
                or an undecodable payload.
        """
        header = read_exact(self._stream, HEADER_SIZE)
        if not header:
            return None
        if len(header) != HEADER_SIZE:
            raise FrameError(f"Truncated frame header: got {len(header)} of {HEADER_SIZE} bytes")

        (length,) = struct.unpack(HEADER_FORMAT, header)
        if length > self._max_frame_size:
            raise FrameError(f"Frame of {length} bytes exceeds limit of {self._max_frame_size}")

        payload = read_exact(self._stream, length)
        if len(payload) != length:
            raise FrameError(f"Truncated frame payload: got {len(payload)} of {length} bytes")
        return decode_entry(payload)

    def __iter__(self):
        while True:
            entry = self.read_entry()
            if entry is None:
                return
            yield entry
