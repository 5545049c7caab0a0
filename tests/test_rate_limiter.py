"""Tests for the per-target rate limiter"""

import pytest

from harvester.scraper.config import RateLimitConfig
from harvester.scraper.core.rate_limiter import TargetRateLimiter


def make_limiter(clock, rpm=5, delay=0.0):
    return TargetRateLimiter(
        RateLimitConfig(requests_per_minute=rpm, delay_between_requests=delay),
        clock=clock,
        sleep=clock.sleep,
    )


class TestWindowBudget:
    def test_sixth_request_in_same_second_is_limited(self, clock):
        """Five requests fit the budget; the sixth marks the target limited"""
        limiter = make_limiter(clock)
        window_start = clock()

        results = [limiter.check_and_consume("t1") for _ in range(6)]

        assert results == [True] * 5 + [False]
        state = limiter.get_state("t1")
        assert state.is_limited is True
        assert state.reset_time == pytest.approx(window_start + 60.0)
        assert state.request_count == 5

    def test_window_resets_after_a_minute(self, clock):
        """A fresh window restores the budget"""
        limiter = make_limiter(clock)
        for _ in range(5):
            limiter.check_and_consume("t1")
        assert not limiter.check_and_consume("t1")

        clock.advance(61)

        assert limiter.check_and_consume("t1")
        assert not limiter.is_limited("t1")

    def test_denied_request_does_not_consume_budget(self, clock):
        """Denials leave the request count untouched"""
        limiter = make_limiter(clock, rpm=2)
        limiter.check_and_consume("t1")
        limiter.check_and_consume("t1")
        for _ in range(10):
            limiter.check_and_consume("t1")

        assert limiter.get_state("t1").request_count == 2
        assert limiter.get_state("t1").limited_count == 10

    def test_targets_are_independent(self, clock):
        """One target exhausting its budget does not affect another"""
        limiter = make_limiter(clock, rpm=1)
        assert limiter.check_and_consume("a")
        assert not limiter.check_and_consume("a")
        assert limiter.check_and_consume("b")

    def test_target_specific_config(self, clock):
        """configure() overrides the default budget for one target"""
        limiter = make_limiter(clock, rpm=1)
        limiter.configure("busy", RateLimitConfig(requests_per_minute=3, delay_between_requests=0))

        assert [limiter.check_and_consume("busy") for _ in range(4)] == [True, True, True, False]
        assert limiter.get_stats("busy")['remaining_requests'] == 0


class TestDelays:
    def test_minimum_delay_between_requests(self, clock):
        """A second request inside the minimum gap is refused"""
        limiter = make_limiter(clock, rpm=30, delay=2.0)
        assert limiter.check_and_consume("t1")
        assert not limiter.check_and_consume("t1")
        assert limiter.time_until_allowed("t1") == pytest.approx(2.0)

        clock.advance(2.0)
        assert limiter.check_and_consume("t1")

    def test_retry_after_blocks_target(self, clock):
        """A server Retry-After holds the target until it passes"""
        limiter = make_limiter(clock, rpm=30)
        limiter.apply_retry_after("t1", 10)

        assert limiter.is_limited("t1")
        assert not limiter.check_and_consume("t1")

        clock.advance(10)
        assert limiter.check_and_consume("t1")

    async def test_wait_until_allowed_sleeps_until_next_window(self, clock):
        """Waiting callers sleep until the window rolls over, then consume"""
        limiter = make_limiter(clock, rpm=1)
        await limiter.wait_until_allowed("t1")

        waited = await limiter.wait_until_allowed("t1")

        assert waited >= 60.0
        assert clock.sleeps
        assert limiter.get_state("t1").request_count == 1

    async def test_never_exceeds_budget_within_a_window(self, clock):
        """Request count in any window stays at or below requests_per_minute"""
        limiter = make_limiter(clock, rpm=3)
        for _ in range(10):
            await limiter.wait_until_allowed("t1")
            assert limiter.get_state("t1").request_count <= 3
