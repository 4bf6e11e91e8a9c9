#!/usr/bin/env python3
"""
=====================================================================
Convoy Rate Limiter Module
=====================================================================
Decides how long a resource key must wait before it is handed to a
worker again.

Provides:
- ItemExponentialFailureRateLimiter: per-key exponential backoff
  (delay = min(max_delay, base_delay * 2^failures))
- BucketRateLimiter: overall token bucket shared by all keys
- MaxOfRateLimiter: combines limiters, the longest delay wins

All limiters are thread-safe and in-memory only.

Author: Convoy Development Team
License: MIT
Version: 0.1.0
=====================================================================
"""

import logging
import threading
import time
from typing import Callable, Dict, Hashable

logger = logging.getLogger(__name__)

# Defaults match the client-go controller rate limiter
DEFAULT_BASE_DELAY = 0.005
DEFAULT_MAX_DELAY = 1000.0
DEFAULT_QPS = 10.0
DEFAULT_BURST = 100

# Refills are rounded to this many decimals so clock subtraction noise
# cannot leave the bucket a hair short of a whole token
TOKEN_PRECISION = 9


class RateLimiter:
    """Interface shared by all rate limiters."""

    def when(self, item: Hashable) -> float:
        """Return the delay in seconds before `item` may be processed again."""
        raise NotImplementedError

    def forget(self, item: Hashable) -> None:
        """Stop tracking `item` (its failures are reset)."""
        raise NotImplementedError

    def num_requeues(self, item: Hashable) -> int:
        """Return how many times `item` has been rate limited."""
        raise NotImplementedError


class ItemExponentialFailureRateLimiter(RateLimiter):
    """
    Per-item exponential backoff.

    Each call to when() returns base_delay * 2^failures (capped at max_delay)
    and then increments the item's failure count. forget() resets it to zero.

    Usage:
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)

        delay = limiter.when("default/pod-a")   # 0.005
        delay = limiter.when("default/pod-a")   # 0.010
        limiter.forget("default/pod-a")
        delay = limiter.when("default/pod-a")   # 0.005 again
    """

    def __init__(self, base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY):
        """
        Initialize the limiter.

        Args:
            base_delay: Delay in seconds for the first failure
            max_delay: Upper bound for any computed delay
        """
        if base_delay < 0:
            raise ValueError(f"base_delay cannot be negative: {base_delay}")
        if max_delay < base_delay:
            raise ValueError(f"max_delay ({max_delay}) must be >= base_delay ({base_delay})")

        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def backoff(self, failures: int) -> float:
        """Delay for a given failure count, without touching any state."""
        if self.base_delay == 0:
            return 0.0
        # 2^1024 overflows a float; anything that large is capped anyway
        if failures >= 1023:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2 ** failures))

    def when(self, item: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        return self.backoff(failures)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def tracked_count(self) -> int:
        """Number of items currently holding backoff state."""
        with self._lock:
            return len(self._failures)


class BucketRateLimiter(RateLimiter):
    """
    Token bucket shared by every item.

    Allows `burst` items through immediately, then refills at `qps` tokens per
    second. Each when() call reserves a token; when the bucket is empty the
    returned delay is the time until that reservation is covered.
    """

    def __init__(
        self,
        qps: float = DEFAULT_QPS,
        burst: int = DEFAULT_BURST,
        clock: Callable[[], float] = time.monotonic,
    ):
        if qps <= 0:
            raise ValueError(f"qps must be positive: {qps}")
        if burst < 1:
            raise ValueError(f"burst must be >= 1: {burst}")

        self.qps = float(qps)
        self.burst = int(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = round(min(float(self.burst), self._tokens + elapsed * self.qps), TOKEN_PRECISION)
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter(RateLimiter):
    """Returns the longest delay of all wrapped limiters."""

    def __init__(self, *limiters: RateLimiter):
        if not limiters:
            raise ValueError("MaxOfRateLimiter needs at least one limiter")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    qps: float = DEFAULT_QPS,
    burst: int = DEFAULT_BURST,
) -> RateLimiter:
    """
    Per-item exponential backoff combined with an overall token bucket.

    The bucket only matters under event storms; for a single failing key the
    exponential limiter dominates.
    """
    logger.debug(
        f"Rate limiter: exponential {base_delay}s..{max_delay}s, bucket {qps} qps burst {burst}"
    )
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps, burst),
    )
