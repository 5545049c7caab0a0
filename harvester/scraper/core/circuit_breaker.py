"""
Circuit Breaker Pattern for Target Resilience

Stops requests to a target that keeps failing.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Failing, all requests rejected until the cooldown elapses
- HALF_OPEN: One trial request allowed
"""

import time
import logging
from collections import deque
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Callable, Dict

from ..config import CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Failing, reject requests
    HALF_OPEN = "half_open" # Testing if recovered


@dataclass
class CircuitStats:
    """Statistics for a circuit breaker"""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    state_changes: int = 0


class CircuitBreaker:
    """
    Per-target breaker.

    Opens when failure_count reaches the threshold and the last
    `threshold` failures all happened inside the failure window.
    A success only decrements failure_count by one, so an isolated
    success does not wipe out a pattern of repeated failure.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._failure_times = deque(maxlen=self.config.failure_threshold)
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time: Optional[float] = None
        self._trial_in_flight = False
        self._stats = CircuitStats()

    @property
    def state(self) -> CircuitState:
        """Current circuit state (may trigger OPEN -> HALF_OPEN)"""
        if self._state == CircuitState.OPEN and self._clock() >= (self._next_attempt_time or 0):
            self._transition_to(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_attempt_time(self) -> Optional[float]:
        return self._next_attempt_time

    def _transition_to(self, new_state: CircuitState):
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._next_attempt_time = self._clock() + self.config.cooldown
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._failure_times.clear()
            self._next_attempt_time = None
            self._trial_in_flight = False

        logger.info(f"Circuit '{self.name}': {old_state.value} -> {new_state.value}")

    def allow_request(self) -> bool:
        """
        Check whether a request may go through.
        In HALF_OPEN only one trial is admitted until it reports back.
        """
        state = self.state
        self._stats.total_requests += 1

        if state == CircuitState.OPEN:
            self._stats.rejected_requests += 1
            return False

        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self._stats.rejected_requests += 1
                return False
            self._trial_in_flight = True

        return True

    def release_trial(self):
        """Give back a HALF_OPEN trial that ended without a result"""
        self._trial_in_flight = False

    @property
    def retry_after(self) -> float:
        """Seconds until the breaker admits a trial"""
        if self._next_attempt_time is None:
            return 0.0
        return max(0.0, self._next_attempt_time - self._clock())

    def record_success(self):
        self._stats.successful_requests += 1
        self._stats.last_success_time = self._clock()
        self._success_count += 1

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)
            return

        self._failure_count = max(0, self._failure_count - 1)

    def record_failure(self):
        now = self._clock()
        self._stats.failed_requests += 1
        self._stats.last_failure_time = now
        self._last_failure_time = now
        self._failure_count += 1
        self._failure_times.append(now)

        if self._state == CircuitState.HALF_OPEN:
            # Trial failed, back to open with a fresh cooldown
            self._transition_to(CircuitState.OPEN)
            logger.warning(f"Circuit '{self.name}': trial failed, re-opened")
            return

        if self._state == CircuitState.CLOSED and self._should_trip(now):
            self._transition_to(CircuitState.OPEN)
            logger.warning(
                f"Circuit '{self.name}' OPEN after {self._failure_count} failures, "
                f"next attempt in {self.config.cooldown:.0f}s"
            )

    def _should_trip(self, now: float) -> bool:
        threshold = self.config.failure_threshold
        if self._failure_count < threshold or len(self._failure_times) < threshold:
            return False
        return now - self._failure_times[0] <= self.config.failure_window

    def reset(self):
        """Manually reset circuit to closed state"""
        self._transition_to(CircuitState.CLOSED)
        self._success_count = 0
        self._last_failure_time = None

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def stats(self) -> Dict:
        """Get circuit statistics"""
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self._failure_count,
            'success_count': self._success_count,
            'next_attempt_time': self._next_attempt_time,
            'retry_after': round(self.retry_after, 1),
            'stats': {
                'total': self._stats.total_requests,
                'successful': self._stats.successful_requests,
                'failed': self._stats.failed_requests,
                'rejected': self._stats.rejected_requests,
                'state_changes': self._stats.state_changes,
            },
            'last_failure': self._stats.last_failure_time,
            'last_success': self._stats.last_success_time,
        }


class CircuitBreakerRegistry:
    """
    Circuit breakers keyed by target id, created on first use.
    Owned by the orchestrator; lives as long as it does.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, target_id: str) -> CircuitBreaker:
        """Get or create circuit breaker for a target"""
        if target_id not in self._breakers:
            self._breakers[target_id] = CircuitBreaker(
                name=target_id, config=self.config, clock=self._clock
            )
        return self._breakers[target_id]

    def is_open(self, target_id: str) -> bool:
        if target_id not in self._breakers:
            return False
        return self._breakers[target_id].is_open

    def open_circuits(self) -> Dict[str, float]:
        """Target id -> seconds until retry, for every open circuit"""
        return {
            name: cb.retry_after
            for name, cb in self._breakers.items()
            if cb.is_open
        }

    def get_all_stats(self) -> Dict[str, Dict]:
        """Get stats for all circuits"""
        return {name: cb.stats for name, cb in self._breakers.items()}

    def reset(self, target_id: str) -> bool:
        if target_id not in self._breakers:
            return False
        self._breakers[target_id].reset()
        return True

    def reset_all(self):
        """Reset all circuit breakers"""
        for cb in self._breakers.values():
            cb.reset()
