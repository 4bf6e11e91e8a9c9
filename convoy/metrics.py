#!/usr/bin/env python3
"""
=====================================================================
Convoy Prometheus Metrics
=====================================================================
Process-wide counters owned by an explicit object instead of module
globals. The controller and the work queue receive the same instance.

Counters:
- convoy_events_queued_total       incremented on every observed addition
- convoy_events_processed_total    incremented on every successful dispatch
- convoy_dispatch_failures_total   sink failures, by reason
- convoy_events_dropped_total      keys dropped without dispatch, by reason

Work queue series:
- convoy_workqueue_depth, convoy_workqueue_adds_total,
  convoy_workqueue_retries_total, convoy_workqueue_queue_duration_seconds,
  convoy_workqueue_work_duration_seconds

Author: Convoy Development Team
License: MIT
Version: 0.1.0
=====================================================================
"""

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

DURATION_BUCKETS = [0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]


class ControllerMetrics:
    """Holds every Convoy metric, registered on one CollectorRegistry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY

        self.events_queued = Counter(
            'convoy_events_queued_total',
            'Total events observed by the informer and queued',
            registry=self.registry,
        )
        self.events_processed = Counter(
            'convoy_events_processed_total',
            'Total events dispatched to the notification sink',
            registry=self.registry,
        )
        self.dispatch_failures = Counter(
            'convoy_dispatch_failures_total',
            'Total failed dispatch attempts',
            ['reason'],
            registry=self.registry,
        )
        self.events_dropped = Counter(
            'convoy_events_dropped_total',
            'Total keys removed from the queue without dispatch',
            ['reason'],  # malformed, not_found, stale, retries_exhausted
            registry=self.registry,
        )

        self.queue_depth = Gauge(
            'convoy_workqueue_depth',
            'Current number of keys ready in the work queue',
            registry=self.registry,
        )
        self.queue_adds = Counter(
            'convoy_workqueue_adds_total',
            'Total keys added to the work queue',
            registry=self.registry,
        )
        self.queue_retries = Counter(
            'convoy_workqueue_retries_total',
            'Total rate-limited re-adds handled by the work queue',
            registry=self.registry,
        )
        self.queue_latency = Histogram(
            'convoy_workqueue_queue_duration_seconds',
            'Time a key waits in the queue before a worker picks it up',
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.work_duration = Histogram(
            'convoy_workqueue_work_duration_seconds',
            'Time between get() and done() for a key',
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )

    # --- controller counters ---

    def inc_queued(self) -> None:
        self.events_queued.inc()

    def inc_processed(self) -> None:
        self.events_processed.inc()

    def inc_dispatch_failure(self, reason: str = "error") -> None:
        self.dispatch_failures.labels(reason=reason).inc()

    def inc_dropped(self, reason: str) -> None:
        self.events_dropped.labels(reason=reason).inc()

    # --- work queue hooks ---

    def on_queue_add(self) -> None:
        self.queue_adds.inc()

    def on_queue_retry(self) -> None:
        self.queue_retries.inc()

    def set_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def observe_queue_latency(self, seconds: float) -> None:
        self.queue_latency.observe(seconds)

    def observe_work_duration(self, seconds: float) -> None:
        self.work_duration.observe(seconds)

    def value(self, name: str, labels: Optional[dict] = None) -> float:
        """Current sample value from the registry (0.0 if never observed)."""
        sample = self.registry.get_sample_value(name, labels or {})
        return sample if sample is not None else 0.0
