#!/usr/bin/env python3
"""
Convoy - Logging Utilities

Structured JSON logging (NDJSON) or plain text logging, both carrying a
correlation id. Worker threads set the correlation id to the resource key
they are reconciling, so every log line about one key can be grepped
together.

Usage:
    from convoy.logging_utils import setup_json_logging, CorrelationID

    # At process startup
    logger = setup_json_logging(service_name="convoy", version="0.3.0")

    # In a worker
    CorrelationID.set("default/pod-a.17a3")
    logger.info("Dispatching event", extra={"sink": "slack"})

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level (default: INFO)
    POD_NAME: Kubernetes pod name for metadata

Author: Convoy Development Team
License: MIT
Version: 0.1.0
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict

TEXT_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"

# LogRecord attributes that are not user supplied `extra` fields
_RESERVED_ATTRS = frozenset([
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
])


class CorrelationID:
    """Thread-local storage for the current correlation id."""
    _storage = threading.local()

    @staticmethod
    def set(cid):
        CorrelationID._storage.id = cid

    @staticmethod
    def get():
        return getattr(CorrelationID._storage, 'id', 'system')

    @staticmethod
    def clear():
        CorrelationID._storage.id = 'system'


class CorrelationIdFilter(logging.Filter):
    """Automatically adds correlation ID to all log records."""
    def filter(self, record):
        if not getattr(record, "correlation_id", None):
            record.correlation_id = CorrelationID.get()
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formats each record as one JSON object per line.

    Fields: timestamp, level, message, logger, module, function, line,
    thread, service, version, pod_name, correlation_id, error (when an
    exception is attached) and any `extra` fields of the log call.
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": threading.get_ident(),
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in log_entry:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        try:
            return json.dumps(log_entry, default=str)
        except Exception as e:
            return json.dumps(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "level": "ERROR",
                    "message": f"Failed to serialize log record: {e}",
                    "service": self.service_name,
                    "correlation_id": "system",
                }
            )


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure the root logger for a Convoy process.

    Uses NDJSON when LOG_JSON_ENABLED is truthy, the text format otherwise.
    Idempotent: existing root handlers are replaced.

    Args:
        service_name: Name of the service (e.g., "convoy")
        version: Service version string
        level: Logging level, overridden by LOG_LEVEL

    Returns:
        The configured root logger
    """
    json_enabled = os.getenv("LOG_JSON_ENABLED", "false").lower() in (
        "true",
        "1",
        "yes",
        "on",
    )
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    handler.addFilter(CorrelationIdFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.info(
        f"{'JSON' if json_enabled else 'Standard'} logging enabled for "
        f"service={service_name} version={version}"
    )
    return logger
