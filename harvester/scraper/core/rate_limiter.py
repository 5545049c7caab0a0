"""
Per-Target Rate Limiting

Features:
- Fixed one-minute request window per target
- Minimum delay between requests, independent of the window
- Server Retry-After honoured (429 responses)
- Per-target config overrides
"""

import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Callable, Awaitable

from ..config import RateLimitConfig

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class RateLimitState:
    """Request budget for one target"""
    request_count: int = 0
    window_start: float = 0.0
    is_limited: bool = False
    reset_time: Optional[float] = None
    last_request_time: Optional[float] = None
    retry_after_until: Optional[float] = None
    limited_count: int = 0


class TargetRateLimiter:
    """
    Enforces requests_per_minute and delay_between_requests per target id.

    State is kept in memory only; it is lost on restart.
    """

    def __init__(
        self,
        default_config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.default_config = default_config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._configs: Dict[str, RateLimitConfig] = {}
        self._states: Dict[str, RateLimitState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def configure(self, target_id: str, config: RateLimitConfig):
        """Set a target-specific budget"""
        self._configs[target_id] = config

    def get_config(self, target_id: str) -> RateLimitConfig:
        return self._configs.get(target_id, self.default_config)

    def _get_state(self, target_id: str) -> RateLimitState:
        if target_id not in self._states:
            self._states[target_id] = RateLimitState(window_start=self._clock())
        return self._states[target_id]

    def _roll_window(self, state: RateLimitState, now: float):
        if now - state.window_start > WINDOW_SECONDS:
            state.request_count = 0
            state.window_start = now
            state.is_limited = False
            state.reset_time = None

    def time_until_allowed(self, target_id: str) -> float:
        """Seconds until check_and_consume would succeed (0 if now)"""
        config = self.get_config(target_id)
        state = self._get_state(target_id)
        now = self._clock()
        self._roll_window(state, now)

        waits = [0.0]
        if state.retry_after_until is not None:
            waits.append(state.retry_after_until - now)
        if state.request_count >= config.requests_per_minute:
            waits.append(state.window_start + WINDOW_SECONDS - now)
        if state.last_request_time is not None and config.delay_between_requests > 0:
            waits.append(state.last_request_time + config.delay_between_requests - now)
        return max(waits)

    def check_and_consume(self, target_id: str) -> bool:
        """
        Take one request slot for the target if one is free.

        Returns False (and marks the target limited) when the window
        budget is spent, a Retry-After is pending, or the minimum
        inter-request delay has not elapsed.
        """
        config = self.get_config(target_id)
        state = self._get_state(target_id)
        now = self._clock()
        self._roll_window(state, now)

        if state.retry_after_until is not None:
            if now < state.retry_after_until:
                state.limited_count += 1
                return False
            state.retry_after_until = None
            state.is_limited = False

        if state.request_count >= config.requests_per_minute:
            if not state.is_limited:
                logger.warning(
                    f"[{target_id}] Rate limit reached "
                    f"({config.requests_per_minute}/min), resets in "
                    f"{state.window_start + WINDOW_SECONDS - now:.1f}s"
                )
            state.is_limited = True
            state.reset_time = state.window_start + WINDOW_SECONDS
            state.limited_count += 1
            return False

        if (
            state.last_request_time is not None
            and now - state.last_request_time < config.delay_between_requests
        ):
            return False

        state.request_count += 1
        state.last_request_time = now
        state.is_limited = False
        return True

    async def wait_until_allowed(self, target_id: str) -> float:
        """
        Suspend until a request slot is available, then consume it.
        Returns total time waited.
        """
        lock = self._locks.setdefault(target_id, asyncio.Lock())
        waited = 0.0
        async with lock:
            while not self.check_and_consume(target_id):
                delay = max(self.time_until_allowed(target_id), 0.05)
                logger.debug(f"[{target_id}] Waiting {delay:.2f}s for rate limit slot")
                await self._sleep(delay)
                waited += delay
        return waited

    def apply_retry_after(self, target_id: str, seconds: float):
        """Block the target until a server-supplied delay has passed"""
        state = self._get_state(target_id)
        until = self._clock() + max(seconds, 0.0)
        if state.retry_after_until is None or until > state.retry_after_until:
            state.retry_after_until = until
        state.is_limited = True
        state.reset_time = max(state.reset_time or 0.0, until)
        logger.warning(f"[{target_id}] Server asked to back off for {seconds:.1f}s")

    def is_limited(self, target_id: str) -> bool:
        if target_id not in self._states:
            return False
        state = self.get_state(target_id)
        if state.retry_after_until is not None and self._clock() < state.retry_after_until:
            return True
        return state.is_limited

    def get_state(self, target_id: str) -> RateLimitState:
        """Current state for a target (created on first access)"""
        state = self._get_state(target_id)
        self._roll_window(state, self._clock())
        return state

    def reset(self, target_id: Optional[str] = None):
        if target_id is None:
            self._states.clear()
        else:
            self._states.pop(target_id, None)

    def get_stats(self, target_id: Optional[str] = None) -> Dict:
        """Get rate limiting stats"""
        if target_id:
            if target_id not in self._states:
                return {}
            config = self.get_config(target_id)
            state = self.get_state(target_id)
            return {
                'requests_per_minute': config.requests_per_minute,
                'request_count': state.request_count,
                'remaining_requests': max(config.requests_per_minute - state.request_count, 0),
                'is_limited': state.is_limited,
                'reset_time': state.reset_time,
                'limited_count': state.limited_count,
            }

        return {t: self.get_stats(t) for t in list(self._states)}
