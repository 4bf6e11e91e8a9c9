#!/usr/bin/env python3
"""
Unit tests for the work queue rate limiters.

Tests cover:
- Exponential backoff sequence and cap
- forget() resetting an item
- Float overflow protection for huge failure counts
- Token bucket burst and refill
- MaxOf combination and default controller limiter
"""

import pytest

from convoy.ratelimit import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    default_controller_rate_limiter,
)

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestItemExponentialFailureRateLimiter:
    """Tests for per-item exponential backoff"""

    def test_backoff_doubles_per_failure(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)

        delays = [limiter.when("default/pod-a") for _ in range(5)]

        assert delays == pytest.approx([0.005, 0.01, 0.02, 0.04, 0.08])
        assert limiter.num_requeues("default/pod-a") == 5

    def test_delays_are_monotonic_and_capped(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=1, max_delay=60)

        delays = [limiter.when("k/a") for _ in range(12)]

        assert delays == sorted(delays)
        assert max(delays) == 60
        assert delays[-1] == 60

    def test_items_are_tracked_independently(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.5, max_delay=100)

        limiter.when("ns/a")
        limiter.when("ns/a")

        assert limiter.when("ns/b") == 0.5
        assert limiter.when("ns/a") == 2.0

    def test_forget_resets_backoff(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)
        for _ in range(4):
            limiter.when("default/pod-a")

        limiter.forget("default/pod-a")

        assert limiter.num_requeues("default/pod-a") == 0
        assert limiter.when("default/pod-a") == 0.005
        assert limiter.tracked_count() == 1

    def test_forget_unknown_item_is_noop(self):
        limiter = ItemExponentialFailureRateLimiter()
        limiter.forget("never/seen")
        assert limiter.tracked_count() == 0

    def test_huge_failure_count_does_not_overflow(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)

        assert limiter.backoff(1022) == 1000
        assert limiter.backoff(5000) == 1000

    def test_zero_base_delay_never_waits(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=0, max_delay=0)

        assert [limiter.when("k/a") for _ in range(3)] == [0.0, 0.0, 0.0]
        assert limiter.num_requeues("k/a") == 3

    @pytest.mark.parametrize("base,maximum", [(-1, 10), (5, 1)])
    def test_invalid_delays_rejected(self, base, maximum):
        with pytest.raises(ValueError):
            ItemExponentialFailureRateLimiter(base_delay=base, max_delay=maximum)


class TestBucketRateLimiter:
    """Tests for the shared token bucket"""

    def test_burst_passes_immediately(self):
        clock = FakeClock()
        limiter = BucketRateLimiter(qps=10, burst=3, clock=clock)

        assert [limiter.when(f"k/{i}") for i in range(3)] == [0.0, 0.0, 0.0]

    def test_empty_bucket_delays_by_reservation(self):
        clock = FakeClock()
        limiter = BucketRateLimiter(qps=10, burst=1, clock=clock)

        assert limiter.when("k/a") == 0.0
        assert limiter.when("k/b") == pytest.approx(0.1)
        assert limiter.when("k/c") == pytest.approx(0.2)

    def test_bucket_refills_over_time(self):
        clock = FakeClock()
        limiter = BucketRateLimiter(qps=10, burst=1, clock=clock)
        limiter.when("k/a")

        clock.advance(0.1)

        assert limiter.when("k/b") == 0.0

    def test_many_small_refills_add_up_to_whole_tokens(self):
        clock = FakeClock(now=1000.3)
        limiter = BucketRateLimiter(qps=10, burst=1, clock=clock)

        for i in range(50):
            assert limiter.when(f"k/{i}") == 0.0
            for _ in range(4):
                clock.advance(0.025)

    def test_refill_never_exceeds_burst(self):
        clock = FakeClock()
        limiter = BucketRateLimiter(qps=10, burst=2, clock=clock)

        clock.advance(3600)

        assert limiter.when("k/a") == 0.0
        assert limiter.when("k/b") == 0.0
        assert limiter.when("k/c") > 0

    def test_forget_and_requeues_are_noops(self):
        limiter = BucketRateLimiter(qps=1, burst=1)
        limiter.when("k/a")
        limiter.forget("k/a")
        assert limiter.num_requeues("k/a") == 0

    @pytest.mark.parametrize("qps,burst", [(0, 10), (-1, 10), (10, 0)])
    def test_invalid_parameters_rejected(self, qps, burst):
        with pytest.raises(ValueError):
            BucketRateLimiter(qps=qps, burst=burst)


class TestMaxOfRateLimiter:
    """Tests for limiter composition"""

    def test_longest_delay_wins(self):
        clock = FakeClock()
        exponential = ItemExponentialFailureRateLimiter(base_delay=0.001, max_delay=10)
        bucket = BucketRateLimiter(qps=1, burst=1, clock=clock)
        limiter = MaxOfRateLimiter(exponential, bucket)

        assert limiter.when("k/a") == 0.001
        # bucket now empty: 1s beats 0.002s
        assert limiter.when("k/a") == pytest.approx(1.0)

    def test_forget_and_requeues_fan_out(self):
        exponential = ItemExponentialFailureRateLimiter(base_delay=0.001, max_delay=10)
        limiter = MaxOfRateLimiter(exponential, BucketRateLimiter(qps=100, burst=100))

        limiter.when("k/a")
        limiter.when("k/a")
        assert limiter.num_requeues("k/a") == 2

        limiter.forget("k/a")
        assert limiter.num_requeues("k/a") == 0

    def test_requires_a_limiter(self):
        with pytest.raises(ValueError):
            MaxOfRateLimiter()

    def test_default_controller_rate_limiter(self):
        limiter = default_controller_rate_limiter()

        assert isinstance(limiter, MaxOfRateLimiter)
        assert limiter.when("default/pod-a") == pytest.approx(0.005)
        assert limiter.when("default/pod-a") == pytest.approx(0.01)
        assert limiter.num_requeues("default/pod-a") == 2
