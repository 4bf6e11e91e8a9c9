#!/usr/bin/env python3
"""
=====================================================================
Convoy Notification Sinks
=====================================================================
A sink accepts a WatchedEvent and delivers it somewhere. dispatch()
returns None on success and raises DispatchError on failure; the
controller treats every failure as retryable.

Sinks:
- SlackSink:   chat.postMessage via the Slack Web API
- WebhookSink: JSON POST of the event to any URL
- LogSink:     writes the event to the log (never fails)

Author: Convoy Development Team
License: MIT
Version: 0.1.0
=====================================================================
"""

import logging
import time
from typing import Any, Dict, Optional

import requests

from convoy.errors import ConfigError, DispatchError
from convoy.models import WatchedEvent

logger = logging.getLogger(__name__)

SLACK_API_URL = "https://slack.com/api/chat.postMessage"
RESPONSE_PREVIEW_LENGTH = 200

# Emoji prefix per Kubernetes event type
TYPE_ICONS = {
    "Warning": ":warning:",
    "Normal": ":information_source:",
}


def format_event(event: WatchedEvent) -> str:
    """One-line human readable summary of an event."""
    involved = event.involved_object
    target = "/".join(p for p in (involved.kind, involved.namespace, involved.name) if p) or event.key
    text = f"[{event.event_type}] {target}: {event.reason}"
    if event.message:
        text += f" - {event.message}"
    if event.count and event.count > 1:
        text += f" (x{event.count})"
    return text


class Sink:
    """Notification sink contract."""

    name = "sink"

    def dispatch(self, event: WatchedEvent) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class _HttpSink(Sink):
    """Shared request handling for HTTP based sinks."""

    def __init__(self, timeout: float = 10, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> requests.Response:
        start_time = time.time()
        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise DispatchError(f"{self.name} request timeout after {self.timeout}s", reason="timeout") from e
        except requests.exceptions.ConnectionError as e:
            raise DispatchError(f"{self.name} connection error: {e}", reason="connection") from e
        except requests.exceptions.RequestException as e:
            raise DispatchError(f"{self.name} request failed: {e}", reason="request") from e

        latency = time.time() - start_time
        if response.status_code == 429:
            raise DispatchError(f"{self.name} rate limited us (429)", reason="rate_limited")
        if response.status_code >= 300:
            raise DispatchError(
                f"{self.name} HTTP {response.status_code}: {response.text[:RESPONSE_PREVIEW_LENGTH]}",
                reason="http",
            )

        logger.debug(f"{self.name} accepted event (latency: {latency:.2f}s)")
        return response

    def close(self) -> None:
        self.session.close()


class SlackSink(_HttpSink):
    """Posts events to a Slack channel."""

    name = "slack"

    def __init__(
        self,
        token: str,
        channel: str,
        api_url: str = SLACK_API_URL,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        if not token:
            raise ConfigError("Slack token is required")
        if not channel:
            raise ConfigError("Slack channel is required")
        super().__init__(timeout=timeout, session=session)
        self.token = token
        self.channel = channel
        self.api_url = api_url

    def dispatch(self, event: WatchedEvent) -> None:
        icon = TYPE_ICONS.get(event.event_type, "")
        payload = {
            "channel": self.channel,
            "text": f"{icon} {format_event(event)}".strip(),
        }
        headers = {
            'Content-Type': 'application/json; charset=utf-8',
            'Authorization': f"Bearer {self.token}",
        }
        response = self._post(self.api_url, payload, headers)

        # The Web API answers 200 with ok=false on logical errors
        try:
            body = response.json()
        except ValueError as e:
            raise DispatchError(f"slack returned a non-JSON response: {e}", reason="bad_response") from e
        if not body.get("ok", False):
            raise DispatchError(f"slack API error: {body.get('error', 'unknown')}", reason="api")


class WebhookSink(_HttpSink):
    """POSTs the event as JSON to a URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        if not url:
            raise ConfigError("Webhook URL is required")
        super().__init__(timeout=timeout, session=session)
        self.url = url
        self.headers = {'Content-Type': 'application/json'}
        self.headers.update(headers or {})

    def dispatch(self, event: WatchedEvent) -> None:
        payload = event.to_dict()
        payload["summary"] = format_event(event)
        self._post(self.url, payload, self.headers)


class LogSink(Sink):
    """Writes events to the log."""

    name = "log"

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("convoy.events")

    def dispatch(self, event: WatchedEvent) -> None:
        level = logging.WARNING if event.event_type == "Warning" else logging.INFO
        self.log.log(level, format_event(event))


def build_sink(config) -> Sink:
    """Create the sink selected by config.SINK_TYPE."""
    sink_type = (config.SINK_TYPE or "").lower()
    if sink_type == "slack":
        return SlackSink(
            token=config.SLACK_TOKEN,
            channel=config.SLACK_CHANNEL,
            api_url=config.SLACK_API_URL,
            timeout=config.SINK_TIMEOUT,
        )
    if sink_type == "webhook":
        return WebhookSink(url=config.WEBHOOK_URL, timeout=config.SINK_TIMEOUT)
    if sink_type == "log":
        return LogSink()
    raise ConfigError(f"Unknown SINK_TYPE: {config.SINK_TYPE!r}")
