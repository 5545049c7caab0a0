"""
Retry Logic with Exponential Backoff and Jitter

Wraps one logical operation against a target in a bounded retry loop.
The target's circuit breaker is consulted before every attempt, and the
classifier's recommended recovery action is applied to a shared
RetryContext that the next attempt reads.
"""

import time
import random
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Callable, Awaitable, TypeVar, Dict, Any, List

from ..config import RetryConfig
from ..errors import (
    AttemptRecord,
    CircuitBreakerTripped,
    ScrapingError,
    to_scraping_error,
)
from .circuit_breaker import CircuitBreakerRegistry
from .error_classifier import ErrorClassifier, ErrorClassification, RecoveryAction

logger = logging.getLogger(__name__)

T = TypeVar('T')

DELAY_INCREMENT = 1.0
TIMEOUT_MULTIPLIER = 1.5


@dataclass
class RetryContext:
    """
    Mutable state shared between attempts of one operation.
    Recovery actions write here; the operation reads it on the next attempt.
    """
    target_id: str
    attempt: int = 0
    timeout: Optional[float] = None
    additional_delay: float = 0.0
    should_rotate_session: bool = False
    should_refresh_auth: bool = False
    last_error: Optional[ScrapingError] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def calculate_retry_delay(
    retry_count: int,
    base_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.0,
) -> float:
    """
    min(base * multiplier^retry_count + jitter, max_delay).

    For a fixed jitter this is non-decreasing in retry_count and never
    exceeds max_delay.
    """
    delay = base_delay * (backoff_multiplier ** retry_count) + jitter
    return min(delay, max_delay)


def apply_recovery_action(
    action: RecoveryAction,
    context: RetryContext,
    default_timeout: Optional[float] = None,
):
    """Mutate the shared context for the next attempt"""
    if action == RecoveryAction.ROTATE_SESSION:
        context.should_rotate_session = True
    elif action == RecoveryAction.INCREASE_DELAY:
        context.additional_delay += DELAY_INCREMENT
    elif action == RecoveryAction.INCREASE_TIMEOUT:
        current = context.timeout or default_timeout
        if current:
            context.timeout = current * TIMEOUT_MULTIPLIER
    elif action == RecoveryAction.REFRESH_AUTH:
        context.should_refresh_auth = True


class RetryHandler:
    """
    Executes operations with classification-driven retries.

    Retries are strictly sequential: attempt N+1 starts only after
    attempt N's failure has been classified and its delay has passed.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        circuit_breakers: Optional[CircuitBreakerRegistry] = None,
        default_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = lambda: random.uniform(0, 1.0),
    ):
        self.config = config or RetryConfig()
        self.classifier = classifier or ErrorClassifier(self.config)
        self.circuit_breakers = circuit_breakers or CircuitBreakerRegistry()
        self.default_timeout = default_timeout
        self._sleep = sleep
        self._jitter = jitter

    @property
    def max_attempts(self) -> int:
        return self.config.max_retries + 1

    def get_delay(self, retry_count: int, classification: ErrorClassification) -> float:
        """Backoff from the classification's base delay"""
        base = classification.estimated_retry_delay or self.config.base_delay
        return calculate_retry_delay(
            retry_count=retry_count,
            base_delay=base,
            backoff_multiplier=self.config.backoff_multiplier,
            max_delay=self.config.max_delay,
            jitter=self._jitter(),
        )

    async def execute_with_retry(
        self,
        target_id: str,
        operation: Callable[[RetryContext], Awaitable[T]],
        context: Optional[RetryContext] = None,
    ) -> T:
        """
        Run operation(context) until it succeeds, a non-retryable error
        occurs, or attempts run out.

        Raises:
            CircuitBreakerTripped: if the target's circuit is open
            ScrapingError: the last error, with .attempts history
        """
        context = context or RetryContext(target_id=target_id, timeout=self.default_timeout)
        breaker = self.circuit_breakers.get(target_id)
        history: List[AttemptRecord] = []

        for attempt in range(self.max_attempts):
            if not breaker.allow_request():
                logger.warning(
                    f"[{target_id}] Circuit open, skipping attempt "
                    f"(retry in {breaker.retry_after:.0f}s)"
                )
                raise CircuitBreakerTripped(target_id, breaker.retry_after, context.last_error)

            context.attempt = attempt
            started = time.time()
            try:
                result = await operation(context)
            except asyncio.CancelledError:
                breaker.release_trial()
                raise
            except CircuitBreakerTripped:
                raise
            except Exception as e:
                error = to_scraping_error(e)
                error.retry_count = attempt
                context.last_error = error
                breaker.record_failure()

                classification = self.classifier.classify(error, {'retry_count': attempt})
                is_last = attempt >= self.max_attempts - 1
                delay = 0.0 if (is_last or not classification.is_retryable) else \
                    self.get_delay(attempt, classification)
                history.append(AttemptRecord(
                    attempt=attempt + 1,
                    error_type=error.error_type,
                    message=error.message,
                    delay=delay,
                    timestamp=time.time(),
                ))

                if not classification.is_retryable:
                    logger.error(
                        f"[{target_id}] {error.error_type.value} error is not retryable "
                        f"({classification.recommended_action.value}): {error.message}"
                    )
                    error.attempts = history
                    raise error

                if is_last:
                    logger.error(
                        f"[{target_id}] Giving up after {attempt + 1} attempts: {error.message}"
                    )
                    error.attempts = history
                    raise error

                apply_recovery_action(
                    classification.recommended_action, context, self.default_timeout
                )
                logger.warning(
                    f"[{target_id}] Attempt {attempt + 1}/{self.max_attempts} failed "
                    f"({error.error_type.value}): {error.message}. "
                    f"Retrying in {delay:.2f}s ({classification.recommended_action.value})"
                )
                await self._sleep(delay)
                continue

            breaker.record_success()
            logger.debug(
                f"[{target_id}] Attempt {attempt + 1} succeeded in {time.time() - started:.2f}s"
            )
            return result

        # Unreachable: the loop either returns or raises
        raise RuntimeError("retry loop exited without result")
