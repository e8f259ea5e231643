"""Log entry, record and request models plus the record JSON codec."""

import calendar
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from logdriver.errors import RecordDecodeError

NANOS_PER_SECOND = 1_000_000_000

_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(\d{1,9}))?"
    r"(Z|[+-]\d{2}:\d{2})$"
)

# Go's zero time.Time, sent by Docker for an unset Since/Until.
_ZERO_TIME_PREFIX = "0001-01-01T00:00:00"


@dataclass
class RawEntry:
    """One framed input unit as produced by the container runtime."""

    line: bytes = b""
    source: str = ""
    partial: bool = False
    time_nano: int = 0


@dataclass(frozen=True)
class ContainerInfo:
    container_id: str = ""
    container_name: str = ""
    container_image_name: str = ""
    container_image_id: str = ""
    container_env: tuple[str, ...] = ()
    log_config: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, info: dict) -> "ContainerInfo":
        """Build from the runtime's ``Info`` JSON object."""
        return cls(
            container_id=info.get("ContainerID") or "",
            container_name=(info.get("ContainerName") or "").lstrip("/"),
            container_image_name=info.get("ContainerImageName") or "",
            container_image_id=info.get("ContainerImageID") or "",
            container_env=tuple(info.get("ContainerEnv") or ()),
            log_config=dict(info.get("Config") or {}),
        )


@dataclass
class Record:
    """Wire form of one aggregated line as stored in the topic."""

    line: str
    source: str
    partial: bool
    timestamp: int
    container_id: str = ""
    container_name: str = ""
    container_image_name: str = ""
    container_image_id: str = ""
    hostname: str = ""


@dataclass(frozen=True)
class ReadConfig:
    tail: int = 0
    follow: bool = True
    since_nano: Optional[int] = None
    until_nano: Optional[int] = None

    @classmethod
    def from_dict(cls, config: dict) -> "ReadConfig":
        """Build from the runtime's ``ReadConfig`` JSON object."""
        return cls(
            tail=int(config.get("Tail") or 0),
            follow=bool(config.get("Follow", False)),
            since_nano=_optional_time(config.get("Since")),
            until_nano=_optional_time(config.get("Until")),
        )

    def in_window(self, time_nano: int) -> bool:
        if self.since_nano is not None and time_nano < self.since_nano:
            return False
        if self.until_nano is not None and time_nano > self.until_nano:
            return False
        return True


def _optional_time(value) -> Optional[int]:
    if not value:
        return None
    if not isinstance(value, str):
        raise RecordDecodeError(f"Invalid timestamp: {value!r}")
    if value.startswith(_ZERO_TIME_PREFIX):
        return None
    return parse_timestamp(value)


def format_timestamp(time_nano: int) -> str:
    """Format nanoseconds since the epoch as RFC 3339 UTC with 9 fraction digits."""
    seconds, nanos = divmod(time_nano, NANOS_PER_SECOND)
    base = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return f"{base.strftime('%Y-%m-%dT%H:%M:%S')}.{nanos:09d}Z"


def parse_timestamp(value: str) -> int:
    """Parse an RFC 3339 timestamp into exact nanoseconds since the epoch.

    Accepts 0-9 fraction digits and either ``Z`` or a ``+HH:MM`` offset.

    Raises:
        RecordDecodeError: If the value is not a valid timestamp.
    """
    match = _TIMESTAMP_RE.match(value)
    if match is None:
        raise RecordDecodeError(f"Invalid timestamp: {value!r}")
    base, fraction, offset = match.groups()
    try:
        parsed = datetime.strptime(base, "%Y-%m-%dT%H:%M:%S")
    except ValueError as e:
        raise RecordDecodeError(f"Invalid timestamp: {value!r}") from e

    seconds = calendar.timegm(parsed.timetuple())
    if offset != "Z":
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = offset[1:].split(":")
        seconds -= sign * (int(hours) * 3600 + int(minutes) * 60)
    nanos = int(fraction.ljust(9, "0")) if fraction else 0
    return seconds * NANOS_PER_SECOND + nanos


def record_to_json(record: Record) -> bytes:
    """Serialize a Record to compact UTF-8 JSON."""
    doc = {
        "line": record.line,
        "source": record.source,
        "partial": record.partial,
        "timestamp": format_timestamp(record.timestamp),
        "containerId": record.container_id,
        "containerName": record.container_name,
        "containerImageName": record.container_image_name,
        "containerImageId": record.container_image_id,
        "hostname": record.hostname,
    }
    return json.dumps(doc, separators=(",", ":")).encode("utf-8")


def record_from_json(data: bytes) -> Record:
    """Decode a stored JSON value into a Record.

    Raises:
        RecordDecodeError: If the value is not a JSON object with a valid
            ``timestamp`` and string ``line``.
    """
    try:
        doc = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as e:
        raise RecordDecodeError(f"Invalid record JSON: {e}") from e
    if not isinstance(doc, dict):
        raise RecordDecodeError("Record JSON is not an object")

    line = doc.get("line", "")
    timestamp = doc.get("timestamp")
    if not isinstance(line, str) or not isinstance(timestamp, str):
        raise RecordDecodeError("Record is missing line or timestamp")

    return Record(
        line=line,
        source=str(doc.get("source") or ""),
        partial=bool(doc.get("partial", False)),
        timestamp=parse_timestamp(timestamp),
        container_id=str(doc.get("containerId") or ""),
        container_name=str(doc.get("containerName") or ""),
        container_image_name=str(doc.get("containerImageName") or ""),
        container_image_id=str(doc.get("containerImageId") or ""),
        hostname=str(doc.get("hostname") or ""),
    )


def build_record(entry: RawEntry, line: bytes, info: ContainerInfo, hostname: str) -> Record:
    """Decorate an aggregated line with container identity and hostname."""
    return Record(
        line=line.decode("utf-8", errors="replace"),
        source=entry.source,
        partial=entry.partial,
        timestamp=entry.time_nano,
        container_id=info.container_id,
        container_name=info.container_name,
        container_image_name=info.container_image_name,
        container_image_id=info.container_image_id,
        hostname=hostname,
    )


def record_to_entry(record: Record) -> RawEntry:
    """Convert a stored Record back into a RawEntry, re-terminating its line.

    JSON can carry lone surrogates that have no UTF-8 form; those are replaced.
    """
    line = record.line.encode("utf-8", errors="replace")
    if not line.endswith(b"\n"):
        line += b"\n"
    return RawEntry(
        line=line,
        source=record.source,
        partial=record.partial,
        time_nano=record.timestamp,
    )
