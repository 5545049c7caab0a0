"""Tests for the per-target circuit breaker"""

import pytest

from harvester.scraper.config import CircuitBreakerConfig
from harvester.scraper.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        "target",
        CircuitBreakerConfig(failure_threshold=5, failure_window=300, cooldown=600),
        clock=clock,
    )


class TestTripping:
    def test_five_failures_in_window_open_circuit(self, breaker, clock):
        """Five failures inside five minutes open the circuit"""
        for _ in range(5):
            breaker.record_failure()
            clock.advance(30)

        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_failures_spread_beyond_window_do_not_trip(self, breaker, clock):
        """Slow failures never accumulate into an open circuit"""
        for _ in range(8):
            breaker.record_failure()
            clock.advance(100)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()

    def test_success_only_decrements(self, breaker):
        """One success in a run of failures does not reset the count"""
        for _ in range(4):
            breaker.record_failure()
        breaker.record_success()

        assert breaker.failure_count == 3
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_retry_after_reports_remaining_cooldown(self, breaker, clock):
        """retry_after counts down the cooldown"""
        for _ in range(5):
            breaker.record_failure()
        clock.advance(100)
        assert breaker.retry_after == pytest.approx(500)


class TestRecovery:
    def _open(self, breaker):
        for _ in range(5):
            breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_half_open_after_cooldown_admits_one_trial(self, breaker, clock):
        """After the cooldown exactly one trial goes through"""
        self._open(breaker)
        clock.advance(600)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()
        assert not breaker.allow_request()

    def test_trial_success_closes(self, breaker, clock):
        """A successful trial closes the circuit and clears failures"""
        self._open(breaker)
        clock.advance(600)
        breaker.allow_request()
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_trial_failure_reopens_with_fresh_cooldown(self, breaker, clock):
        """A failed trial opens the circuit for another full cooldown"""
        self._open(breaker)
        clock.advance(600)
        breaker.allow_request()
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.retry_after == pytest.approx(600)

    def test_release_trial(self, breaker, clock):
        """A trial that ended without a result can be given back"""
        self._open(breaker)
        clock.advance(600)
        assert breaker.allow_request()
        breaker.release_trial()
        assert breaker.allow_request()

    def test_manual_reset(self, breaker):
        """reset() closes an open circuit"""
        self._open(breaker)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()


class TestRegistry:
    def test_breakers_are_per_target(self, clock):
        """Failures on one target leave others closed"""
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=2), clock=clock)
        registry.get("a").record_failure()
        registry.get("a").record_failure()

        assert registry.is_open("a")
        assert not registry.is_open("b")
        assert set(registry.open_circuits()) == {"a"}

    def test_reset_unknown_target(self, clock):
        """Resetting a target without a breaker reports False"""
        registry = CircuitBreakerRegistry(clock=clock)
        assert registry.reset("missing") is False

    def test_reset_all(self, clock):
        """reset_all closes every breaker"""
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock=clock)
        registry.get("a").record_failure()
        registry.get("b").record_failure()
        registry.reset_all()
        assert registry.open_circuits() == {}
        assert registry.get_all_stats()['a']['state'] == 'closed'
