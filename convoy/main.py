#!/usr/bin/env python3
"""
=====================================================================
Convoy - Kubernetes Event Forwarder
=====================================================================
Entry point. Wires the informer, work queue, controller and sink
together, starts the metrics and health servers and runs until
SIGINT or SIGTERM.

Usage:
    convoy --config /etc/convoy/config.yml
    python -m convoy.main --kubeconfig ~/.kube/config

Author: Convoy Development Team
License: MIT
Version: 0.1.0
=====================================================================
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import timedelta

from prometheus_client import start_http_server

from convoy.config import Config
from convoy.controller import ConvoyController
from convoy.errors import ConfigError, SyncTimeoutError
from convoy.health import controller_readiness, start_health_server
from convoy.informer import EventInformer
from convoy.kube import build_core_api
from convoy.logging_utils import setup_json_logging
from convoy.metrics import ControllerMetrics
from convoy.ratelimit import default_controller_rate_limiter
from convoy.sinks import build_sink
from convoy.workqueue import RateLimitingQueue

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="convoy", description="Forward Kubernetes Events to a notification sink")
    parser.add_argument("--config", default=None, help="Path to the YAML config file (default: $CONVOY_CONFIG or config.yml)")
    parser.add_argument("--kubeconfig", default=None, help="Path to a kubeconfig (default: in-cluster, then ~/.kube/config)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_controller(config: Config, core_api, metrics: ControllerMetrics):
    """Create the informer, sink, queue and controller described by config."""
    informer = EventInformer(
        core_api,
        namespace=config.WATCH_NAMESPACE,
        resync_period_seconds=config.RESYNC_PERIOD,
        watch_timeout_seconds=config.WATCH_TIMEOUT,
    )
    sink = build_sink(config)
    queue = RateLimitingQueue(
        default_controller_rate_limiter(
            base_delay=config.BACKOFF_BASE_DELAY,
            max_delay=config.BACKOFF_MAX_DELAY,
            qps=config.QUEUE_QPS,
            burst=config.QUEUE_BURST,
        ),
        metrics=metrics,
    )
    controller = ConvoyController(
        informer,
        sink,
        metrics,
        queue=queue,
        workers=config.WORKERS,
        max_retries=config.MAX_RETRIES,
        stale_grace=timedelta(seconds=config.STALE_GRACE_SECONDS),
    )
    return informer, sink, controller


def main(argv=None) -> int:
    """Main service entry point."""
    args = parse_args(argv)

    # --- 1. Load Config ---
    try:
        config = Config(config_path=args.config)
    except ConfigError as e:
        setup_json_logging(service_name="convoy", version=__version__)
        logger.error(f"FATAL: Configuration error: {e}")
        return 1

    setup_json_logging(service_name="convoy", version=__version__, level=config.LOG_LEVEL)

    # --- 2. Build Components ---
    try:
        core_api = build_core_api(args.kubeconfig or config.KUBECONFIG)
    except Exception as e:
        logger.error(f"FATAL: Could not build Kubernetes client: {e}")
        return 1

    metrics = ControllerMetrics()
    try:
        informer, sink, controller = build_controller(config, core_api, metrics)
    except ConfigError as e:
        logger.error(f"FATAL: {e}")
        return 1

    # --- 3. Start Background Servers ---
    if config.METRICS_PORT > 0:
        start_http_server(config.METRICS_PORT, registry=metrics.registry)
        logger.info(f"Prometheus metrics server started on port {config.METRICS_PORT}")
    if config.HEALTH_PORT > 0:
        start_health_server(config.HEALTH_PORT, controller_readiness(informer, controller, config.POD_NAME))

    # --- 4. Register Signal Handlers ---
    stop_event = threading.Event()

    def graceful_shutdown(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.warning(f"{sig_name} received. Initiating graceful shutdown...")
        stop_event.set()

    signal.signal(signal.SIGTERM, graceful_shutdown)
    signal.signal(signal.SIGINT, graceful_shutdown)

    # --- 5. Run ---
    logger.info("=" * 70)
    logger.info(f"Convoy v{__version__} - Pod: {config.POD_NAME}")
    logger.info("=" * 70)
    logger.info(f"Namespace: {config.WATCH_NAMESPACE or 'all'}")
    logger.info(f"Sink: {config.SINK_TYPE}")
    logger.info(f"Workers: {config.WORKERS}")
    logger.info("=" * 70)

    exit_code = 0
    informer.start(stop_event)
    try:
        controller.run(stop_event, sync_timeout=config.SYNC_TIMEOUT or None)
    except SyncTimeoutError as e:
        logger.error(f"FATAL: {e}")
        exit_code = 1
    finally:
        informer.stop()
        sink.close()

    logger.info("Shutdown complete. Exiting.")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
