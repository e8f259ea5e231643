"""Tests for the plugin HTTP API."""

import io
import socket

import pytest

from helpers import frame_stream, make_entry, stored_record
from logdriver.config import Config
from logdriver.driver import LogDriver
from logdriver.fanin import PartitionFanIn
from logdriver.framing import FrameReader
from logdriver import server
from logdriver.server import client_disconnected, create_app


@pytest.fixture
def driver(producer, cluster):
    fan_in = PartitionFanIn(cluster.consumer, poll_timeout_ms=20, shutdown_timeout=2.0)
    return LogDriver(Config(topic="logtopic", shutdown_timeout=2.0), producer, fan_in, hostname="h")


@pytest.fixture
def client(driver):
    app = create_app(driver)
    app.config["TESTING"] = True
    return app.test_client()


class TestHandshake:
    def test_activate(self, client):
        resp = client.post("/Plugin.Activate")
        assert resp.status_code == 200
        assert resp.get_json() == {"Implements": ["LogDriver"]}

    def test_capabilities(self, client):
        resp = client.post("/LogDriver.Capabilities")
        assert resp.get_json() == {"Cap": {"ReadLogs": True}}


class TestLoggingLifecycle:
    def test_start_and_stop(self, client, driver, producer, tmp_path):
        fifo = tmp_path / "c.fifo"
        fifo.write_bytes(frame_stream([make_entry("alpha")]).getvalue())
        body = {"File": str(fifo), "Info": {"ContainerID": "cid", "ContainerName": "/web"}}

        resp = client.post("/LogDriver.StartLogging", json=body)
        assert resp.status_code == 200
        assert resp.get_json() == {"Err": ""}

        resp = client.post("/LogDriver.StopLogging", json={"File": str(fifo)})
        assert resp.get_json() == {"Err": ""}
        assert len(producer.sent) == 1
        assert producer.sent[0]["topic"] == "logtopic"

    def test_start_twice_reports_error(self, client, driver, tmp_path):
        fifo = tmp_path / "c.fifo"
        fifo.write_bytes(b"")
        body = {"File": str(fifo), "Info": {}}
        client.post("/LogDriver.StartLogging", json=body)
        resp = client.post("/LogDriver.StartLogging", json=body)
        assert resp.status_code == 500
        assert "already exists" in resp.get_json()["Err"]
        driver.stop_logging(str(fifo))

    def test_start_without_file(self, client):
        resp = client.post("/LogDriver.StartLogging", json={"Info": {}})
        assert resp.status_code == 400
        assert resp.get_json()["Err"]

    def test_stop_without_body(self, client):
        resp = client.post("/LogDriver.StopLogging", data="not json")
        assert resp.status_code == 400


class TestReadLogs:
    def test_streams_frames(self, client, cluster):
        cluster.create_topic("logtopic", [0, 1])
        cluster.append("logtopic", 0, stored_record("alpha", "cid"))
        cluster.append("logtopic", 1, stored_record("beta", "cid"))
        cluster.append("logtopic", 1, stored_record("gamma", "someone-else"))

        body = {"Info": {"ContainerID": "cid"}, "Config": {"Tail": 0, "Follow": False}}
        resp = client.post("/LogDriver.ReadLogs", json=body)
        assert resp.status_code == 200
        assert resp.mimetype == "application/x-json-stream"

        entries = list(FrameReader(io.BytesIO(resp.data)))
        assert sorted(e.line for e in entries) == [b"alpha\n", b"beta\n"]

    def test_missing_topic(self, client):
        resp = client.post("/LogDriver.ReadLogs", json={"Info": {"ContainerID": "cid"}, "Config": {}})
        assert resp.status_code == 500
        assert "logtopic" in resp.get_json()["Err"]

    def test_invalid_since(self, client):
        body = {"Info": {}, "Config": {"Since": "not-a-time"}}
        resp = client.post("/LogDriver.ReadLogs", json=body)
        assert resp.status_code == 400

    def test_non_string_since_is_bad_request(self, client):
        body = {"Info": {}, "Config": {"Since": 12345}}
        resp = client.post("/LogDriver.ReadLogs", json=body)
        assert resp.status_code == 400
        assert "Invalid ReadLogs request" in resp.get_json()["Err"]

    def test_follow_stream_ends_when_client_goes_away(self, client, cluster, monkeypatch):
        monkeypatch.setattr(server, "DISCONNECT_CHECK_INTERVAL", 0.05)
        cluster.create_topic("logtopic", [0])
        cluster.append("logtopic", 0, stored_record("alpha", "cid"))

        ours, theirs = socket.socketpair()
        theirs.close()
        try:
            body = {"Info": {"ContainerID": "cid"}, "Config": {"Follow": True}}
            resp = client.post(
                "/LogDriver.ReadLogs", json=body, environ_overrides={"werkzeug.socket": ours}
            )
            entries = list(FrameReader(io.BytesIO(resp.data)))
        finally:
            ours.close()
        assert [e.line for e in entries] == [b"alpha\n"]


class TestClientDisconnected:
    def test_open_peer(self):
        a, b = socket.socketpair()
        try:
            assert client_disconnected(a) is False
        finally:
            a.close()
            b.close()

    def test_closed_peer(self):
        a, b = socket.socketpair()
        b.close()
        try:
            assert client_disconnected(a) is True
        finally:
            a.close()


class TestStats:
    def test_reports_counters_and_failures(self, client, driver, producer, tmp_path):
        fifo = tmp_path / "c.fifo"
        fifo.write_bytes(frame_stream([make_entry("alpha")]).getvalue())
        client.post("/LogDriver.StartLogging", json={"File": str(fifo), "Info": {"ContainerID": "cid"}})
        client.post("/LogDriver.StopLogging", json={"File": str(fifo)})
        producer.futures[0].fail(RuntimeError("broker down"))

        resp = client.get("/stats")
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["failed"] == 1
        assert data["recent_errors"][0]["error"] == "broker down"
        assert data["active_streams"] == []
