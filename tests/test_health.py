#!/usr/bin/env python3
"""Unit tests for the health check server."""

import json
from unittest.mock import Mock

import pytest
import requests

from convoy.health import controller_readiness, start_health_server

pytestmark = pytest.mark.unit


@pytest.fixture
def ready_state():
    return {"ready": True}


@pytest.fixture
def server(ready_state):
    srv = start_health_server(0, lambda: (ready_state["ready"], {"pod": "convoy-test-01"}), host="127.0.0.1")
    yield f"http://127.0.0.1:{srv.server_address[1]}"
    srv.shutdown()
    srv.server_close()


def test_healthz(server):
    resp = requests.get(f"{server}/healthz", timeout=2)
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_readyz_ready(server):
    resp = requests.get(f"{server}/readyz", timeout=2)
    assert resp.status_code == 200
    assert resp.json() == {"status": "ready", "service": "convoy", "pod": "convoy-test-01"}


def test_readyz_not_ready(server, ready_state):
    ready_state["ready"] = False
    resp = requests.get(f"{server}/readyz", timeout=2)
    assert resp.status_code == 503
    assert resp.json()["status"] == "not_ready"


def test_unknown_path(server):
    assert requests.get(f"{server}/metrics", timeout=2).status_code == 404


def test_readiness_failure_reports_not_ready():
    def broken():
        raise RuntimeError("boom")

    srv = start_health_server(0, broken, host="127.0.0.1")
    try:
        resp = requests.get(f"http://127.0.0.1:{srv.server_address[1]}/readyz", timeout=2)
        assert resp.status_code == 503
        assert json.loads(resp.text)["error"] == "boom"
    finally:
        srv.shutdown()
        srv.server_close()


class TestControllerReadiness:

    def test_ready_when_synced_and_running(self):
        informer = Mock(has_synced=True)
        controller = Mock(running=True, queue=[])

        ready, details = controller_readiness(informer, controller, "pod-1")()

        assert ready is True
        assert details == {"pod": "pod-1", "cache_synced": True, "workers_running": True, "queue_depth": 0}

    @pytest.mark.parametrize("synced,running", [(False, True), (True, False), (False, False)])
    def test_not_ready(self, synced, running):
        ready, _ = controller_readiness(Mock(has_synced=synced), Mock(running=running, queue=[]), "pod-1")()
        assert ready is False
