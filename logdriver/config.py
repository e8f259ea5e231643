"""Configuration module — frozen dataclass loaded from YAML, env vars and CLI args."""

import os
import sys
from dataclasses import dataclass, fields

import yaml

from logdriver.publisher import KEY_BY_TIMESTAMP, KEY_STRATEGIES

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Field name -> environment variable.
ENV_VARS = {
    "brokers": "KAFKA_BROKER_ADDR",
    "topic": "LOG_TOPIC",
    "tag": "LOG_TAG",
    "key_strategy": "KEY_STRATEGY",
    "log_level": "LOG_LEVEL",
    "socket_path": "PLUGIN_SOCKET",
    "max_frame_size": "MAX_FRAME_SIZE",
    "poll_timeout_ms": "POLL_TIMEOUT_MS",
    "shutdown_timeout": "SHUTDOWN_TIMEOUT",
    "queue_size": "READ_QUEUE_SIZE",
    "error_buffer_size": "ERROR_BUFFER_SIZE",
    "metrics_interval": "METRICS_INTERVAL",
}


@dataclass(frozen=True)
class Config:
    brokers: str = "localhost:9092"
    topic: str = "dockerlogs"
    tag: str = ""
    key_strategy: str = KEY_BY_TIMESTAMP
    log_level: str = "INFO"
    socket_path: str = "/run/docker/plugins/kafka-logdriver.sock"
    max_frame_size: int = 1_000_000
    poll_timeout_ms: int = 500
    shutdown_timeout: float = 10.0
    queue_size: int = 1000
    error_buffer_size: int = 100
    metrics_interval: int = 0

    def __post_init__(self):
        if self.key_strategy not in KEY_STRATEGIES:
            raise ValueError(
                f"key_strategy must be one of {KEY_STRATEGIES}, got {self.key_strategy!r}"
            )
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}"
            )

    @property
    def broker_list(self) -> list[str]:
        return [b.strip() for b in self.brokers.split(",") if b.strip()]


_FIELD_TYPES = {f.name: f.type for f in fields(Config)}


def _coerce(key: str, value) -> object:
    """Convert a raw YAML/env/CLI value to the field's declared type."""
    kind = _FIELD_TYPES[key]
    if kind is int:
        return int(value)
    if kind is float:
        return float(value)
    value = str(value)
    if key == "log_level":
        return value.upper()
    return value


def _load_file(path: str) -> dict:
    """Read known keys from a YAML config file; a missing file yields {}."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {k: _coerce(k, v) for k, v in data.items() if k in _FIELD_TYPES}


def load_config(argv: list[str] | None = None) -> Config:
    """Build Config from defaults <- YAML file <- env vars <- CLI args (highest priority)."""
    if argv is None:
        argv = sys.argv[1:]

    kwargs: dict = {}
    config_path = os.environ.get("CONFIG_PATH")
    if config_path:
        kwargs.update(_load_file(config_path))

    for key, env_name in ENV_VARS.items():
        if env_name in os.environ:
            kwargs[key] = _coerce(key, os.environ[env_name])

    # CLI arg overrides (simple --key=value or --key value parsing)
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg.startswith("--"):
            if "=" in arg:
                key, value = arg[2:].split("=", 1)
            elif i + 1 < len(argv) and not argv[i + 1].startswith("--"):
                key = arg[2:]
                value = argv[i + 1]
                i += 1
            else:
                key, value = arg[2:], ""

            key = key.replace("-", "_")
            if key in _FIELD_TYPES:
                kwargs[key] = _coerce(key, value)
        i += 1

    return Config(**kwargs)
