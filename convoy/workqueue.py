#!/usr/bin/env python3
"""
=====================================================================
Convoy Work Queue
=====================================================================
Rate-limited, deduplicating queue of resource keys.

Guarantees:
- A key is queued at most once; adding it again while queued is a no-op
- A key is held by at most one worker; adding it while in flight marks
  it dirty and it is re-queued when the worker calls done()
- Delayed keys (add_after / add_rate_limited) become ready when their
  delay elapses; a key waiting twice keeps the earlier ready time
- After shut_down() no key is handed out again and every get() returns
  (None, True); in-flight keys may still call done()

Usage:
    queue = RateLimitingQueue(ItemExponentialFailureRateLimiter(0.005, 1000))

    key, shutdown = queue.get()
    if shutdown:
        return
    try:
        process(key)
        queue.forget(key)
    except Exception:
        queue.add_rate_limited(key)
    finally:
        queue.done(key)

State lives in memory only and is lost on restart.

Author: Convoy Development Team
License: MIT
Version: 0.1.0
=====================================================================
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Dict, Hashable, List, Optional, Set, Tuple

from convoy.ratelimit import RateLimiter, default_controller_rate_limiter

logger = logging.getLogger(__name__)


class RateLimitingQueue:
    """Thread-safe work queue; callers never need their own locking."""

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        name: str = "convoy",
        metrics=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            rate_limiter: Computes delays for add_rate_limited()
                (default: default_controller_rate_limiter())
            name: Queue name used in log messages
            metrics: Optional ControllerMetrics receiving queue series
            clock: Monotonic clock in seconds
        """
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self.name = name
        self.metrics = metrics
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._waiting_ready_at: Dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._added_at: Dict[Hashable, float] = {}
        self._started_at: Dict[Hashable, float] = {}
        self._shutting_down = False

    # =================================================================
    # ADDING
    # =================================================================

    def add(self, key: Hashable) -> None:
        """Queue `key` for immediate processing."""
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue `key` once `delay` seconds have passed."""
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return
            # Already scheduled for immediate delivery
            if key in self._dirty:
                return

            ready_at = self._clock() + delay
            existing = self._waiting_ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return

            self._waiting_ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify_all()

    def add_rate_limited(self, key: Hashable) -> None:
        """Queue `key` after the delay its rate limiter assigns."""
        if self.shutting_down:
            return
        delay = self.rate_limiter.when(key)
        if self.metrics is not None:
            self.metrics.on_queue_retry()
        logger.debug(f"[{self.name}] {key} rate limited for {delay:.3f}s")
        self.add_after(key, delay)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down:
            return
        # An immediate add supersedes any pending delayed add
        self._waiting_ready_at.pop(key, None)

        if key in self._dirty:
            return

        if self.metrics is not None:
            self.metrics.on_queue_add()
        self._dirty.add(key)
        if key in self._processing:
            return

        self._queue.append(key)
        self._added_at.setdefault(key, self._clock())
        self._update_depth()
        self._cond.notify()

    def _promote_due_locked(self) -> None:
        """Move delayed keys whose time has come into the ready queue."""
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._waiting)
            if self._waiting_ready_at.get(key) != ready_at:
                continue  # superseded entry
            del self._waiting_ready_at[key]
            self._add_locked(key)

    def _next_ready_in_locked(self) -> Optional[float]:
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if self._waiting_ready_at.get(key) == ready_at:
                return max(0.0, ready_at - self._clock())
            heapq.heappop(self._waiting)
        return None

    # =================================================================
    # CONSUMING
    # =================================================================

    def get(self, timeout: Optional[float] = None) -> Tuple[Optional[Hashable], bool]:
        """
        Block until a key is ready or the queue shuts down.

        Returns:
            (key, False) for a ready key, (None, True) once shut down,
            (None, False) if `timeout` elapsed with nothing ready.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True

                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)

                    now = self._clock()
                    added = self._added_at.pop(key, now)
                    self._started_at[key] = now
                    if self.metrics is not None:
                        self.metrics.observe_queue_latency(now - added)
                    self._update_depth()
                    return key, False

                wait_for = self._next_ready_in_locked()
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, key: Hashable) -> None:
        """Mark processing of `key` finished; requeue it if it went dirty."""
        with self._cond:
            self._processing.discard(key)
            started = self._started_at.pop(key, None)
            if started is not None and self.metrics is not None:
                self.metrics.observe_work_duration(self._clock() - started)

            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._added_at.setdefault(key, self._clock())
                self._update_depth()
            self._cond.notify_all()

    def forget(self, key: Hashable) -> None:
        """Reset the failure count of `key`. In-flight/dirty state is untouched."""
        self.rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.rate_limiter.num_requeues(key)

    # =================================================================
    # SHUTDOWN
    # =================================================================

    def shut_down(self) -> None:
        """
        Stop handing out keys. Idempotent.

        Queued and delayed keys are discarded; blocked and future get() calls
        return (None, True). Workers may still call done() for in-flight keys.
        """
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            discarded = len(self._queue) + len(self._waiting_ready_at)
            in_flight = len(self._processing)
            self._queue.clear()
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._added_at.clear()
            self._dirty.clear()
            self._update_depth()
            self._cond.notify_all()

        logger.info(
            f"[{self.name}] Work queue shut down "
            f"(discarded {discarded} pending keys, {in_flight} in flight)"
        )

    def shut_down_with_drain(self, timeout: Optional[float] = None) -> bool:
        """Shut down, then wait until no key is in flight. Returns True if drained."""
        self.shut_down()
        with self._cond:
            return self._cond.wait_for(lambda: not self._processing, timeout)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # =================================================================
    # INTROSPECTION
    # =================================================================

    def __len__(self) -> int:
        """Number of keys ready for immediate processing."""
        with self._cond:
            return len(self._queue)

    def waiting_count(self) -> int:
        """Number of keys waiting for their delay to elapse."""
        with self._cond:
            return len(self._waiting_ready_at)

    def in_flight(self) -> Set[Hashable]:
        with self._cond:
            return set(self._processing)

    def _update_depth(self) -> None:
        if self.metrics is not None:
            self.metrics.set_queue_depth(len(self._queue))
