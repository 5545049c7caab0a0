"""
Error Classification

Maps a ScrapingError to a retry policy: whether to retry, how urgently,
what to change before the next attempt and how long to wait.
"""

import time
import logging
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Any

from ..config import RetryConfig
from ..errors import ScrapingError, ErrorType, RateLimitError, to_scraping_error

logger = logging.getLogger(__name__)


class ErrorPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    TEMPORARY = "temporary"
    CONFIGURATION = "configuration"
    TARGET = "target"
    SYSTEM = "system"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    ROTATE_SESSION = "rotate_session"
    INCREASE_DELAY = "increase_delay"
    INCREASE_TIMEOUT = "increase_timeout"
    REFRESH_AUTH = "refresh_auth"
    UPDATE_SELECTORS = "update_selectors"
    REVIEW_DATA = "review_data"
    CHECK_SSL_CONFIG = "check_ssl_config"
    MANUAL_INTERVENTION = "manual_intervention"


@dataclass(frozen=True)
class ErrorClassification:
    is_retryable: bool
    priority: ErrorPriority
    category: ErrorCategory
    recommended_action: RecoveryAction
    estimated_retry_delay: float  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_retryable': self.is_retryable,
            'priority': self.priority.value,
            'category': self.category.value,
            'recommended_action': self.recommended_action.value,
            'estimated_retry_delay': self.estimated_retry_delay,
        }


# Delay for blocked targets before another identity is tried
BLOCKED_RETRY_DELAY = 60.0
AUTH_RETRY_DELAY = 5.0
DNS_RETRY_DELAY = 5.0
MAX_RATE_LIMIT_DELAY = 60.0


class ErrorClassifier:
    """
    Type-driven classification with per-type statistics.

    captcha, parsing and validation are never retryable: the first needs a
    capability this system does not have, the others point at a broken
    selector or config rather than a transient fault.
    """

    def __init__(self, retry_config: Optional[RetryConfig] = None, history_size: int = 200):
        self.retry_config = retry_config or RetryConfig()
        self._counts: Counter = Counter()
        self._severity_counts: Counter = Counter()
        self._recent = deque(maxlen=history_size)
        self._last_error_time: Optional[float] = None

    def classify(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ) -> ErrorClassification:
        """Classify an error; untyped exceptions are converted first"""
        scraping_error = to_scraping_error(error)
        self._record(scraping_error)

        error_type = scraping_error.error_type
        retry_count = scraping_error.retry_count
        if context and 'retry_count' in context:
            retry_count = context['retry_count']
        base_delay = self.retry_config.base_delay

        if error_type == ErrorType.NETWORK:
            return self._classify_network(scraping_error)

        if error_type == ErrorType.RATE_LIMIT:
            retry_after = getattr(scraping_error, 'retry_after', None)
            if retry_after is None:
                retry_after = scraping_error.details.get('retry_after')
            if retry_after is not None:
                delay = float(retry_after)
            else:
                delay = min(base_delay * (2 ** retry_count), MAX_RATE_LIMIT_DELAY)
            return ErrorClassification(
                True, ErrorPriority.HIGH, ErrorCategory.TARGET,
                RecoveryAction.INCREASE_DELAY, delay,
            )

        if error_type == ErrorType.BLOCKED:
            return ErrorClassification(
                True, ErrorPriority.CRITICAL, ErrorCategory.TARGET,
                RecoveryAction.ROTATE_SESSION, BLOCKED_RETRY_DELAY,
            )

        if error_type == ErrorType.TIMEOUT:
            return ErrorClassification(
                True, ErrorPriority.MEDIUM, ErrorCategory.TEMPORARY,
                RecoveryAction.INCREASE_TIMEOUT, base_delay,
            )

        if error_type == ErrorType.AUTH:
            return ErrorClassification(
                True, ErrorPriority.HIGH, ErrorCategory.CONFIGURATION,
                RecoveryAction.REFRESH_AUTH, AUTH_RETRY_DELAY,
            )

        if error_type == ErrorType.CAPTCHA:
            return ErrorClassification(
                False, ErrorPriority.CRITICAL, ErrorCategory.TARGET,
                RecoveryAction.MANUAL_INTERVENTION, 0.0,
            )

        if error_type == ErrorType.PARSING:
            return ErrorClassification(
                False, ErrorPriority.MEDIUM, ErrorCategory.CONFIGURATION,
                RecoveryAction.UPDATE_SELECTORS, 0.0,
            )

        # validation
        return ErrorClassification(
            False, ErrorPriority.LOW, ErrorCategory.CONFIGURATION,
            RecoveryAction.REVIEW_DATA, 0.0,
        )

    def _classify_network(self, error: ScrapingError) -> ErrorClassification:
        message = error.message.lower()

        if 'ssl' in message or 'certificate' in message:
            return ErrorClassification(
                False, ErrorPriority.HIGH, ErrorCategory.CONFIGURATION,
                RecoveryAction.CHECK_SSL_CONFIG, 0.0,
            )
        if 'dns' in message or 'name_not_resolved' in message or 'getaddrinfo' in message:
            return ErrorClassification(
                True, ErrorPriority.MEDIUM, ErrorCategory.TEMPORARY,
                RecoveryAction.RETRY, DNS_RETRY_DELAY,
            )
        return ErrorClassification(
            True, ErrorPriority.MEDIUM, ErrorCategory.TEMPORARY,
            RecoveryAction.RETRY, self.retry_config.base_delay,
        )

    def _record(self, error: ScrapingError):
        self._counts[error.error_type.value] += 1
        self._severity_counts[error.severity.value] += 1
        self._recent.append(error)
        self._last_error_time = time.time()

    def get_error_statistics(self) -> Dict[str, Any]:
        """Counts by type and severity over everything classified so far"""
        return {
            'total_errors': sum(self._counts.values()),
            'by_type': dict(self._counts),
            'by_severity': dict(self._severity_counts),
            'last_error_time': self._last_error_time,
            'recent': [e.to_dict() for e in list(self._recent)[-10:]],
        }

    def reset_statistics(self):
        self._counts.clear()
        self._severity_counts.clear()
        self._recent.clear()
        self._last_error_time = None
