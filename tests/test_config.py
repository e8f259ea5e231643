"""Tests for config module."""

import pytest

from logdriver.config import ENV_VARS, Config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("CONFIG_PATH", *ENV_VARS.values()):
        monkeypatch.delenv(name, raising=False)


class TestConfigDefaults:
    def test_defaults(self):
        cfg = Config()
        assert cfg.brokers == "localhost:9092"
        assert cfg.topic == "dockerlogs"
        assert cfg.tag == ""
        assert cfg.key_strategy == "key_by_timestamp"
        assert cfg.log_level == "INFO"
        assert cfg.max_frame_size == 1_000_000
        assert cfg.poll_timeout_ms == 500
        assert cfg.shutdown_timeout == 10.0
        assert cfg.metrics_interval == 0

    def test_frozen(self):
        cfg = Config()
        with pytest.raises(AttributeError):
            cfg.topic = "other"

    def test_invalid_key_strategy(self):
        with pytest.raises(ValueError, match="key_strategy"):
            Config(key_strategy="random")

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="log_level"):
            Config(log_level="LOUD")

    def test_broker_list(self):
        assert Config(brokers="a:9092, b:9092,").broker_list == ["a:9092", "b:9092"]


class TestLoadConfigEnv:
    def test_env_vars(self, monkeypatch):
        monkeypatch.setenv("KAFKA_BROKER_ADDR", "kafka:9092")
        monkeypatch.setenv("LOG_TOPIC", "containers")
        monkeypatch.setenv("KEY_STRATEGY", "key_by_container_id")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("SHUTDOWN_TIMEOUT", "2.5")
        cfg = load_config([])
        assert cfg.brokers == "kafka:9092"
        assert cfg.topic == "containers"
        assert cfg.key_strategy == "key_by_container_id"
        assert cfg.log_level == "DEBUG"
        assert cfg.shutdown_timeout == 2.5

    def test_cli_overrides_env(self, monkeypatch):
        monkeypatch.setenv("LOG_TOPIC", "env-topic")
        cfg = load_config(["--topic", "cli-topic", "--poll-timeout-ms=50"])
        assert cfg.topic == "cli-topic"
        assert cfg.poll_timeout_ms == 50

    def test_unknown_cli_args_ignored(self):
        cfg = load_config(["--nope", "value"])
        assert cfg == Config()


class TestLoadConfigFile:
    def test_yaml_file(self, monkeypatch, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("topic: from-file\nqueue_size: 10\nunknown: 1\n")
        monkeypatch.setenv("CONFIG_PATH", str(path))
        cfg = load_config([])
        assert cfg.topic == "from-file"
        assert cfg.queue_size == 10

    def test_env_overrides_file(self, monkeypatch, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("topic: from-file\n")
        monkeypatch.setenv("CONFIG_PATH", str(path))
        monkeypatch.setenv("LOG_TOPIC", "from-env")
        assert load_config([]).topic == "from-env"

    def test_missing_file_uses_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "absent.yml"))
        assert load_config([]) == Config()
