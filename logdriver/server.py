"""Plugin HTTP API spoken by the container runtime."""

import logging
import select
import socket

from flask import Flask, Response, jsonify, request, stream_with_context

from logdriver.driver import LogDriver
from logdriver.errors import LogDriverError
from logdriver.models import ContainerInfo, ReadConfig

logger = logging.getLogger(__name__)

STREAM_CONTENT_TYPE = "application/x-json-stream"

# How long a follow-mode ReadLogs waits for a frame before checking whether
# the client is still connected.
DISCONNECT_CHECK_INTERVAL = 1.0


def _error(message: str, status: int = 500):
    return jsonify({"Err": message}), status


def client_disconnected(sock) -> bool:
    """True once the peer has closed its end of the connection."""
    try:
        readable, _, _ = select.select([sock], [], [], 0)
        if not readable:
            return False
        return sock.recv(1, socket.MSG_PEEK) == b""
    except (OSError, ValueError):
        return True


def create_app(driver: LogDriver) -> Flask:
    """Flask application factory."""
    app = Flask(__name__)
    app.config["driver"] = driver

    def _body() -> dict | None:
        data = request.get_json(force=True, silent=True)
        return data if isinstance(data, dict) else None

    @app.route("/Plugin.Activate", methods=["POST"])
    def activate():
        return jsonify({"Implements": ["LogDriver"]})

    @app.route("/LogDriver.StartLogging", methods=["POST"])
    def start_logging():
        data = _body()
        if data is None or not data.get("File"):
            return _error("StartLogging requires a File", 400)
        try:
            driver.start_logging(data["File"], ContainerInfo.from_dict(data.get("Info") or {}))
        except LogDriverError as e:
            logger.error("StartLogging failed for %s: %s", data["File"], e)
            return _error(str(e))
        return jsonify({"Err": ""})

    @app.route("/LogDriver.StopLogging", methods=["POST"])
    def stop_logging():
        data = _body()
        if data is None or not data.get("File"):
            return _error("StopLogging requires a File", 400)
        driver.stop_logging(data["File"])
        return jsonify({"Err": ""})

    @app.route("/LogDriver.Capabilities", methods=["POST"])
    def capabilities():
        return jsonify({"Cap": driver.capabilities()})

    @app.route("/stats", methods=["GET"])
    def stats():
        return jsonify(driver.status())

    @app.route("/LogDriver.ReadLogs", methods=["POST"])
    def read_logs():
        data = _body()
        if data is None:
            return _error("ReadLogs requires a JSON body", 400)
        try:
            info = ContainerInfo.from_dict(data.get("Info") or {})
            read_config = ReadConfig.from_dict(data.get("Config") or {})
        except (TypeError, ValueError) as e:
            return _error(f"Invalid ReadLogs request: {e}", 400)

        try:
            reader = driver.read_logs(info, read_config)
        except LogDriverError as e:
            logger.error("ReadLogs failed for %s: %s", info.container_id, e)
            return _error(str(e))

        client_sock = request.environ.get("werkzeug.socket")

        def generate():
            try:
                while True:
                    frame = reader.next_frame(timeout=DISCONNECT_CHECK_INTERVAL)
                    if frame is None:
                        return
                    if frame:
                        yield frame
                    elif client_sock is not None and client_disconnected(client_sock):
                        logger.info("ReadLogs client for %s disconnected", info.container_id)
                        return
            finally:
                reader.close()

        return Response(stream_with_context(generate()), mimetype=STREAM_CONTENT_TYPE)

    return app
