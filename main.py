"""Entry point for the Kafka log driver plugin."""

import logging
import signal
import sys
import threading

from kafka import KafkaConsumer, KafkaProducer

from logdriver.config import load_config
from logdriver.driver import LogDriver
from logdriver.fanin import PartitionFanIn
from logdriver.metrics import Metrics, MetricsReporter
from logdriver.server import create_app


def main():
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        stream=sys.stderr,
    )
    logger = logging.getLogger(__name__)

    producer = KafkaProducer(bootstrap_servers=config.broker_list)

    def consumer_factory():
        return KafkaConsumer(
            bootstrap_servers=config.broker_list,
            enable_auto_commit=False,
            group_id=None,
        )

    metrics = Metrics()
    fan_in = PartitionFanIn(
        consumer_factory,
        poll_timeout_ms=config.poll_timeout_ms,
        queue_size=config.queue_size,
        shutdown_timeout=config.shutdown_timeout,
        metrics=metrics,
    )
    driver = LogDriver(config, producer, fan_in, metrics=metrics)
    app = create_app(driver)

    shutdown_event = threading.Event()
    reporter = None
    if config.metrics_interval > 0:
        reporter = MetricsReporter(metrics, config.metrics_interval, shutdown_event)
        reporter.start()

    def signal_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()
        raise SystemExit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(
        "Starting kafka log driver — brokers=%s, topic=%s, key_strategy=%s, socket=%s",
        config.brokers, config.topic, config.key_strategy, config.socket_path,
    )
    try:
        app.run(host=f"unix://{config.socket_path}", threaded=True)
    finally:
        shutdown_event.set()
        driver.shutdown()
        if reporter:
            reporter.stop()


if __name__ == "__main__":
    main()
