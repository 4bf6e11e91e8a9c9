#!/usr/bin/env python3
"""
=====================================================================
Convoy Configuration
=====================================================================
Configuration comes from environment variables, optionally layered
over a YAML file. Environment variables win.

YAML layout (config.yml):

    kubeconfig: /home/me/.kube/config
    notifier:
      type: slack
      slack:
        token: xoxb-...
        channel: convoyk8s
      webhook:
        url: https://alerts.example.com/hook
    controller:
      namespace: ""          # empty watches all namespaces
      workers: 1
      max_retries: 0         # 0 retries forever
      stale_grace_seconds: 0
      sync_timeout: 0        # 0 waits until shutdown
      backoff:
        base_delay: 0.005
        max_delay: 1000
      queue:
        qps: 10
        burst: 100
=====================================================================
"""

import logging
import os
import uuid
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from convoy.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yml"

# Config attribute -> path inside the YAML document
FILE_KEYS: Dict[str, Tuple[str, ...]] = {
    'KUBECONFIG': ('kubeconfig',),
    'SINK_TYPE': ('notifier', 'type'),
    'SLACK_TOKEN': ('notifier', 'slack', 'token'),
    'SLACK_CHANNEL': ('notifier', 'slack', 'channel'),
    'SLACK_API_URL': ('notifier', 'slack', 'api_url'),
    'WEBHOOK_URL': ('notifier', 'webhook', 'url'),
    'SINK_TIMEOUT': ('notifier', 'timeout'),
    'WATCH_NAMESPACE': ('controller', 'namespace'),
    'WORKERS': ('controller', 'workers'),
    'MAX_RETRIES': ('controller', 'max_retries'),
    'STALE_GRACE_SECONDS': ('controller', 'stale_grace_seconds'),
    'SYNC_TIMEOUT': ('controller', 'sync_timeout'),
    'RESYNC_PERIOD': ('controller', 'resync_period'),
    'WATCH_TIMEOUT': ('controller', 'watch_timeout'),
    'BACKOFF_BASE_DELAY': ('controller', 'backoff', 'base_delay'),
    'BACKOFF_MAX_DELAY': ('controller', 'backoff', 'max_delay'),
    'QUEUE_QPS': ('controller', 'queue', 'qps'),
    'QUEUE_BURST': ('controller', 'queue', 'burst'),
    'METRICS_PORT': ('metrics', 'port'),
    'HEALTH_PORT': ('health', 'port'),
}


def load_config_file(path: Optional[str]) -> Dict[str, Any]:
    """
    Read a YAML config file.

    A missing file is only an error when the path was given explicitly;
    the default config.yml is optional.
    """
    explicit = path is not None
    path = path or DEFAULT_CONFIG_PATH
    if not os.path.exists(path):
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return {}

    try:
        with open(path, 'r') as f:
            document = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(document, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info(f"Loaded configuration file {path}")
    return document


def _lookup(document: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    node: Any = document
    for part in path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


class Config:
    """Controller configuration loaded from environment variables and YAML."""

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        self._env = os.environ if environ is None else environ
        path = config_path or self._env.get('CONVOY_CONFIG')
        self._file = load_config_file(path)

        try:
            # Service Identity
            self.POD_NAME = self._get('POD_NAME', f"convoy-{uuid.uuid4().hex[:6]}")
            self.LOG_LEVEL = str(self._get('LOG_LEVEL', 'INFO')).upper()
            self.METRICS_PORT = int(self._get('METRICS_PORT', 8090))
            self.HEALTH_PORT = int(self._get('HEALTH_PORT', 8091))

            # Kubernetes
            self.KUBECONFIG = self._get('KUBECONFIG', '') or None
            self.WATCH_NAMESPACE = self._get('WATCH_NAMESPACE', '') or None
            self.RESYNC_PERIOD = int(self._get('RESYNC_PERIOD', 600))
            self.WATCH_TIMEOUT = int(self._get('WATCH_TIMEOUT', 300))

            # Controller
            self.WORKERS = int(self._get('WORKERS', 1))
            self.MAX_RETRIES = int(self._get('MAX_RETRIES', 0))
            self.STALE_GRACE_SECONDS = float(self._get('STALE_GRACE_SECONDS', 0))
            self.SYNC_TIMEOUT = float(self._get('SYNC_TIMEOUT', 0))

            # Work queue backoff
            self.BACKOFF_BASE_DELAY = float(self._get('BACKOFF_BASE_DELAY', 0.005))
            self.BACKOFF_MAX_DELAY = float(self._get('BACKOFF_MAX_DELAY', 1000.0))
            self.QUEUE_QPS = float(self._get('QUEUE_QPS', 10))
            self.QUEUE_BURST = int(self._get('QUEUE_BURST', 100))

            # Notification sink
            self.SLACK_TOKEN = self._get('SLACK_TOKEN', '')
            self.SLACK_CHANNEL = self._get('SLACK_CHANNEL', 'convoyk8s')
            self.SLACK_API_URL = self._get('SLACK_API_URL', 'https://slack.com/api/chat.postMessage')
            self.WEBHOOK_URL = self._get('WEBHOOK_URL', '')
            self.SINK_TYPE = str(self._get('SINK_TYPE', 'slack' if self.SLACK_TOKEN else 'log')).lower()
            self.SINK_TIMEOUT = float(self._get('SINK_TIMEOUT', 10))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Configuration error: {e}") from e

        self._validate()

    def _get(self, name: str, default: Any) -> Any:
        if name in self._env and self._env[name] != '':
            return self._env[name]
        if name in FILE_KEYS:
            value = _lookup(self._file, FILE_KEYS[name])
            if value is not None:
                return value
        return default

    def _validate(self):
        """Validate critical configuration values."""
        for name in ('METRICS_PORT', 'HEALTH_PORT'):
            port = getattr(self, name)
            if port < 0 or port > 65535:
                raise ConfigError(f"{name} invalid: {port}")

        if self.WORKERS < 1:
            raise ConfigError(f"WORKERS must be >= 1: {self.WORKERS}")
        if self.MAX_RETRIES < 0:
            raise ConfigError(f"MAX_RETRIES cannot be negative: {self.MAX_RETRIES}")
        if self.STALE_GRACE_SECONDS < 0:
            raise ConfigError(f"STALE_GRACE_SECONDS cannot be negative: {self.STALE_GRACE_SECONDS}")
        if self.SYNC_TIMEOUT < 0:
            raise ConfigError(f"SYNC_TIMEOUT cannot be negative: {self.SYNC_TIMEOUT}")
        if self.BACKOFF_BASE_DELAY < 0:
            raise ConfigError(f"BACKOFF_BASE_DELAY cannot be negative: {self.BACKOFF_BASE_DELAY}")
        if self.BACKOFF_MAX_DELAY < self.BACKOFF_BASE_DELAY:
            raise ConfigError("BACKOFF_MAX_DELAY must be >= BACKOFF_BASE_DELAY")
        if self.QUEUE_QPS <= 0:
            raise ConfigError(f"QUEUE_QPS must be positive: {self.QUEUE_QPS}")
        if self.QUEUE_BURST < 1:
            raise ConfigError(f"QUEUE_BURST must be >= 1: {self.QUEUE_BURST}")
        if self.SINK_TIMEOUT <= 0:
            raise ConfigError(f"SINK_TIMEOUT must be positive: {self.SINK_TIMEOUT}")

        if self.SINK_TYPE == 'slack' and not self.SLACK_TOKEN:
            raise ConfigError("SLACK_TOKEN is required when SINK_TYPE is slack")
        if self.SINK_TYPE == 'webhook' and not self.WEBHOOK_URL:
            raise ConfigError("WEBHOOK_URL is required when SINK_TYPE is webhook")
        if self.SINK_TYPE not in ('slack', 'webhook', 'log'):
            raise ConfigError(f"Unknown SINK_TYPE: {self.SINK_TYPE}")

        logger.info(f"Configuration validated for controller: {self.POD_NAME}")
