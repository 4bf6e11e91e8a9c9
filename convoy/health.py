#!/usr/bin/env python3
"""
Health check HTTP server.

    /healthz  200 while the process is up
    /readyz   200 once the informer cache has synced and workers run,
              503 otherwise
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Tuple

logger = logging.getLogger(__name__)

SERVICE_NAME = "convoy"


class HealthCheckHandler(BaseHTTPRequestHandler):
    """HTTP handler for liveness and readiness probes."""

    # Set by start_health_server()
    readiness_fn: Callable[[], Tuple[bool, Dict[str, Any]]] = None

    def do_GET(self):
        if self.path == '/healthz':
            self._respond(200, {"status": "healthy", "service": SERVICE_NAME})
        elif self.path == '/readyz':
            try:
                ready, details = self.readiness_fn()
                body = {"status": "ready" if ready else "not_ready", "service": SERVICE_NAME}
                body.update(details)
                self._respond(200 if ready else 503, body)
            except Exception as e:
                self._respond(503, {"status": "not_ready", "error": str(e)})
        else:
            self.send_response(404)
            self.end_headers()

    def _respond(self, status_code: int, body: Dict[str, Any]) -> None:
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        self.wfile.write(json.dumps(body).encode())

    def log_message(self, format, *args):
        pass  # Suppress default logging


def controller_readiness(informer, controller, pod_name: str) -> Callable[[], Tuple[bool, Dict[str, Any]]]:
    """Build a readiness function from the informer and controller state."""

    def readiness():
        synced = bool(informer.has_synced)
        running = bool(controller.running)
        return synced and running, {
            "pod": pod_name,
            "cache_synced": synced,
            "workers_running": running,
            "queue_depth": len(controller.queue),
        }

    return readiness


def start_health_server(port: int, readiness_fn, host: str = '0.0.0.0') -> ThreadingHTTPServer:
    """Start the health server on a daemon thread and return it."""
    handler = type("ConvoyHealthHandler", (HealthCheckHandler,), {"readiness_fn": staticmethod(readiness_fn)})
    server = ThreadingHTTPServer((host, port), handler)

    thread = threading.Thread(target=server.serve_forever, daemon=True, name="HealthCheckServer")
    thread.start()
    logger.info(f"Health check server started on port {server.server_address[1]}")
    return server
