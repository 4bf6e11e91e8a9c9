#!/usr/bin/env python3
"""
=====================================================================
Convoy Controller
=====================================================================
Watches Kubernetes Events and forwards new ones to a notification sink.

Pipeline:
    informer on_add(key) -> queue.add_rate_limited(key)
    worker: queue.get() -> informer.get(ns, name) -> staleness filter
            -> sink.dispatch(event)
            success: forget(key)      failure: add_rate_limited(key)
            always:  done(key)

Delivery is at-least-once: a failing dispatch is retried with per-key
exponential backoff until it succeeds (or MAX_RETRIES is reached when
configured). No per-item error ever stops a worker; only queue shutdown
does.

Author: Convoy Development Team
License: MIT
Version: 0.1.0
=====================================================================
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from convoy.errors import (
    CacheLookupError,
    DispatchError,
    MalformedKeyError,
    NotFoundError,
    SyncTimeoutError,
)
from convoy.informer import ResourceEventHandler
from convoy.logging_utils import CorrelationID
from convoy.metrics import ControllerMetrics
from convoy.models import split_meta_namespace_key
from convoy.sinks import Sink
from convoy.staleness import StalenessFilter, capture_reference, utc_now
from convoy.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

SYNC_POLL_INTERVAL = 0.1
WORKER_RESTART_DELAY = 1.0


class ConvoyController(ResourceEventHandler):
    """Reconciles Event keys from the work queue against the informer cache."""

    def __init__(
        self,
        informer,
        sink: Sink,
        metrics: ControllerMetrics,
        queue: Optional[RateLimitingQueue] = None,
        workers: int = 1,
        max_retries: int = 0,
        stale_grace: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            informer: Synchronizer exposing has_synced, add_event_handler()
                and get(namespace, name)
            sink: Notification sink
            metrics: Metrics object shared with the queue
            queue: Work queue (default: RateLimitingQueue with the default
                controller rate limiter)
            workers: Number of worker threads
            max_retries: Give up on a key after this many rate-limited adds
                (0 retries forever)
            stale_grace: Events created up to this long before startup are
                still dispatched
            clock: Wall clock used once to capture the reference instant
        """
        if workers < 1:
            raise ValueError(f"workers must be >= 1: {workers}")
        if max_retries < 0:
            raise ValueError(f"max_retries cannot be negative: {max_retries}")

        self.informer = informer
        self.sink = sink
        self.metrics = metrics
        self.queue = queue if queue is not None else RateLimitingQueue(metrics=metrics)
        self.workers = workers
        self.max_retries = max_retries
        self.staleness = StalenessFilter(capture_reference(clock), stale_grace)

        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._running = False

        informer.add_event_handler(self)
        logger.info(f"Controller created ({workers} workers, stale before {self.staleness.cutoff.isoformat()})")

    # =================================================================
    # EVENT HANDLER
    # =================================================================

    def on_add(self, key: str) -> None:
        """Called by the informer thread for every new Event. Never blocks."""
        if self.queue.shutting_down:
            return
        self.queue.add_rate_limited(key)
        self.metrics.inc_queued()

    # =================================================================
    # LIFECYCLE
    # =================================================================

    @property
    def running(self) -> bool:
        return self._running

    def run(self, stop_event: threading.Event, sync_timeout: Optional[float] = None) -> None:
        """
        Wait for the cache to sync, run workers until stop_event is set.

        Raises:
            SyncTimeoutError: if the cache did not sync before stop_event was
                set or sync_timeout elapsed. No worker is started.
        """
        try:
            logger.info("Waiting for cache sync")
            if not self.wait_for_cache_sync(stop_event, sync_timeout):
                raise SyncTimeoutError("Timeout waiting for caches to sync")
            logger.info("Caches are synced")

            self.start_workers()
            stop_event.wait()
            logger.info("Stopping controller")
        finally:
            self.shutdown()

    def wait_for_cache_sync(self, stop_event: threading.Event, timeout: Optional[float] = None) -> bool:
        """Poll informer.has_synced. Returns False on stop or timeout."""
        deadline = time.monotonic() + timeout if timeout else None
        while not self.informer.has_synced:
            if stop_event.is_set():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
            stop_event.wait(SYNC_POLL_INTERVAL)
        return True

    def start_workers(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            for i in range(self.workers):
                thread = threading.Thread(target=self._run_worker, name=f"convoy-worker-{i}", daemon=True)
                thread.start()
                self._threads.append(thread)
        logger.info(f"Started {self.workers} workers")

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Shut the queue down and wait for workers to exit. Idempotent."""
        self.queue.shut_down()
        with self._lock:
            threads, self._threads = self._threads, []
        for thread in threads:
            thread.join(timeout)
        if self._running:
            self._running = False
            logger.info("All workers stopped")

    def _run_worker(self) -> None:
        while True:
            try:
                while self.process_next_work_item():
                    pass
                return
            except Exception as e:
                logger.error(f"Worker crashed: {e}", exc_info=True)
                if self.queue.shutting_down:
                    return
                time.sleep(WORKER_RESTART_DELAY)

    # =================================================================
    # WORKER LOOP
    # =================================================================

    def process_next_work_item(self) -> bool:
        """Handle one key. Returns False once the queue is shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        CorrelationID.set(key)
        try:
            self._reconcile(key)
        finally:
            self.queue.done(key)
            CorrelationID.clear()
        return True

    def _reconcile(self, key) -> None:
        try:
            self.sync_handler(key)
        except MalformedKeyError as e:
            # Retrying can never fix the key
            logger.error(str(e))
            self.metrics.inc_dropped('malformed')
            self.queue.forget(key)
        except NotFoundError as e:
            logger.info(str(e))
            self.metrics.inc_dropped('not_found')
            self.queue.forget(key)
        except CacheLookupError as e:
            logger.warning(f"Cache lookup failed for {key}: {e}")
            self._retry(key)
        except DispatchError as e:
            logger.error(f"Failed to dispatch {key}: {e}")
            self.metrics.inc_dispatch_failure(e.reason)
            self._retry(key)
        except Exception as e:
            logger.error(f"Error syncing {key}: {e}", exc_info=True)
            self._retry(key)
        else:
            self.queue.forget(key)

    def _retry(self, key) -> None:
        requeues = self.queue.num_requeues(key)
        if self.max_retries and requeues > self.max_retries:
            logger.error(f"Dropping {key} after {requeues - 1} retries")
            self.metrics.inc_dropped('retries_exhausted')
            self.queue.forget(key)
            return
        self.queue.add_rate_limited(key)

    def sync_handler(self, key) -> bool:
        """
        Resolve `key` and dispatch it if it is fresh.

        Returns True if the event was dispatched, False if it was stale.

        Raises:
            MalformedKeyError, NotFoundError, CacheLookupError, DispatchError
        """
        namespace, name = split_meta_namespace_key(key)

        event = self.informer.get(namespace, name)
        if event is None:
            raise NotFoundError(key)

        # Only new events are dispatched, otherwise every restart would
        # replay the whole event history into the sink
        if self.staleness.is_stale(event.created):
            logger.debug(f"Skipping stale event {key} (created {event.created})")
            self.metrics.inc_dropped('stale')
            return False

        try:
            self.sink.dispatch(event)
        except DispatchError:
            raise
        except Exception as e:
            raise DispatchError(f"{type(e).__name__}: {e}") from e

        self.metrics.inc_processed()
        logger.info(f"Dispatched {key} ({event.event_type} {event.reason}) via {getattr(self.sink, 'name', type(self.sink).__name__)}")
        return True
