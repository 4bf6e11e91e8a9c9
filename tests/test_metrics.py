#!/usr/bin/env python3
"""Unit tests for ControllerMetrics."""

import pytest
from prometheus_client import CollectorRegistry

from convoy.metrics import ControllerMetrics

pytestmark = pytest.mark.unit


def test_counters_start_at_zero(metrics):
    assert metrics.value("convoy_events_queued_total") == 0
    assert metrics.value("convoy_events_processed_total") == 0
    assert metrics.value("convoy_events_dropped_total", {"reason": "stale"}) == 0


def test_increments(metrics):
    metrics.inc_queued()
    metrics.inc_queued()
    metrics.inc_processed()
    metrics.inc_dispatch_failure("timeout")
    metrics.inc_dropped("not_found")

    assert metrics.value("convoy_events_queued_total") == 2
    assert metrics.value("convoy_events_processed_total") == 1
    assert metrics.value("convoy_dispatch_failures_total", {"reason": "timeout"}) == 1
    assert metrics.value("convoy_events_dropped_total", {"reason": "not_found"}) == 1


def test_instances_are_independent():
    first = ControllerMetrics(registry=CollectorRegistry())
    second = ControllerMetrics(registry=CollectorRegistry())

    first.inc_processed()

    assert first.value("convoy_events_processed_total") == 1
    assert second.value("convoy_events_processed_total") == 0


def test_duplicate_registration_rejected(registry):
    ControllerMetrics(registry=registry)
    with pytest.raises(ValueError):
        ControllerMetrics(registry=registry)


def test_queue_series(metrics):
    metrics.set_queue_depth(7)
    metrics.observe_queue_latency(0.02)
    metrics.observe_work_duration(1.5)

    assert metrics.value("convoy_workqueue_depth") == 7
    assert metrics.value("convoy_workqueue_queue_duration_seconds_sum") == pytest.approx(0.02)
    assert metrics.value("convoy_workqueue_work_duration_seconds_count") == 1
