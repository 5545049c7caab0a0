"""Tests for classification-driven retries"""

import pytest

from harvester.scraper.config import RetryConfig, CircuitBreakerConfig
from harvester.scraper.core.circuit_breaker import CircuitBreakerRegistry
from harvester.scraper.core.error_classifier import RecoveryAction
from harvester.scraper.core.retry_handler import (
    RetryContext,
    RetryHandler,
    apply_recovery_action,
    calculate_retry_delay,
)
from harvester.scraper.errors import (
    BlockedError,
    CaptchaError,
    CircuitBreakerTripped,
    ErrorType,
    NetworkError,
    ScrapeTimeoutError,
)


def make_handler(clock, max_retries=2, threshold=5, default_timeout=None):
    return RetryHandler(
        RetryConfig(max_retries=max_retries, base_delay=1.0, max_delay=10.0),
        circuit_breakers=CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=threshold), clock=clock
        ),
        default_timeout=default_timeout,
        sleep=clock.sleep,
        jitter=lambda: 0.0,
    )


class FlakyOperation:
    """Fails with the queued errors, then returns 'ok'"""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0
        self.contexts = []

    async def __call__(self, context: RetryContext):
        self.calls += 1
        self.contexts.append((context.attempt, context.timeout, context.should_rotate_session))
        if self.errors:
            raise self.errors.pop(0)
        return 'ok'


class TestDelay:
    def test_delay_is_monotonic_and_capped(self):
        """Backoff never shrinks and never passes max_delay"""
        delays = [calculate_retry_delay(n, base_delay=1.0, max_delay=10.0, jitter=0.5) for n in range(8)]
        assert delays == sorted(delays)
        assert all(d <= 10.0 for d in delays)
        assert delays[0] == 1.5
        assert delays[-1] == 10.0


class TestExecuteWithRetry:
    async def test_recovers_after_transient_failure(self, clock):
        """A network error followed by success returns the result"""
        handler = make_handler(clock)
        operation = FlakyOperation(NetworkError("connection reset"))

        assert await handler.execute_with_retry("t1", operation) == 'ok'
        assert operation.calls == 2
        assert clock.sleeps == [1.0]

    async def test_attempts_bounded_by_max_retries(self, clock):
        """Total attempts are max_retries + 1 and the last error carries the history"""
        handler = make_handler(clock, max_retries=2)
        operation = FlakyOperation(*[NetworkError(f"reset {i}") for i in range(5)])

        with pytest.raises(NetworkError) as exc_info:
            await handler.execute_with_retry("t1", operation)

        assert operation.calls == 3
        assert [a.attempt for a in exc_info.value.attempts] == [1, 2, 3]
        assert exc_info.value.attempts[-1].delay == 0.0
        assert len(clock.sleeps) == 2

    async def test_non_retryable_error_raises_immediately(self, clock):
        """A captcha stops the loop on the first attempt"""
        handler = make_handler(clock)
        operation = FlakyOperation(CaptchaError("challenge"))

        with pytest.raises(CaptchaError):
            await handler.execute_with_retry("t1", operation)

        assert operation.calls == 1
        assert clock.sleeps == []

    async def test_untyped_exception_is_converted(self, clock):
        """Foreign exceptions surface as typed scraping errors"""
        handler = make_handler(clock, max_retries=0)

        async def operation(context):
            raise ConnectionError("refused")

        with pytest.raises(NetworkError) as exc_info:
            await handler.execute_with_retry("t1", operation)
        assert exc_info.value.error_type == ErrorType.NETWORK

    async def test_open_circuit_short_circuits(self, clock):
        """An open breaker raises without invoking the operation"""
        handler = make_handler(clock, threshold=1)
        handler.circuit_breakers.get("t1").record_failure()
        operation = FlakyOperation()

        with pytest.raises(CircuitBreakerTripped) as exc_info:
            await handler.execute_with_retry("t1", operation)

        assert operation.calls == 0
        assert exc_info.value.target_id == "t1"
        assert exc_info.value.to_dict()['type'] == 'circuit_breaker_tripped'

    async def test_failures_trip_breaker_mid_loop(self, clock):
        """Once the breaker opens the remaining attempts are refused"""
        handler = make_handler(clock, max_retries=5, threshold=2)
        operation = FlakyOperation(*[NetworkError("reset") for _ in range(6)])

        with pytest.raises(CircuitBreakerTripped) as exc_info:
            await handler.execute_with_retry("t1", operation)

        assert operation.calls == 2
        assert isinstance(exc_info.value.last_error, NetworkError)

    async def test_success_recorded_on_breaker(self, clock):
        """Successful attempts decrement the breaker's failure count"""
        handler = make_handler(clock)
        await handler.execute_with_retry("t1", FlakyOperation(NetworkError("x")))
        assert handler.circuit_breakers.get("t1").failure_count == 0

    async def test_recovery_actions_reach_next_attempt(self, clock):
        """Timeout raises the timeout; blocked asks for a new session"""
        handler = make_handler(clock, max_retries=2, default_timeout=10.0)
        operation = FlakyOperation(ScrapeTimeoutError("slow"), BlockedError("403"))

        await handler.execute_with_retry("t1", operation)

        assert operation.contexts[0] == (0, 10.0, False)
        assert operation.contexts[1] == (1, 15.0, False)
        assert operation.contexts[2] == (2, 15.0, True)


class TestRecoveryActions:
    def test_increase_delay_accumulates(self):
        """Each rate-limit recovery adds to the extra delay"""
        context = RetryContext(target_id="t1")
        apply_recovery_action(RecoveryAction.INCREASE_DELAY, context)
        apply_recovery_action(RecoveryAction.INCREASE_DELAY, context)
        assert context.additional_delay == 2.0

    def test_increase_timeout_uses_default(self):
        """Without a current timeout the default is scaled"""
        context = RetryContext(target_id="t1")
        apply_recovery_action(RecoveryAction.INCREASE_TIMEOUT, context, default_timeout=20.0)
        assert context.timeout == 30.0

    def test_refresh_auth_flag(self):
        """Auth failures request a fresh login"""
        context = RetryContext(target_id="t1")
        apply_recovery_action(RecoveryAction.REFRESH_AUTH, context)
        assert context.should_refresh_auth
