"""
Scraping Error Types

Every failure the engine reasons about is a ScrapingError tagged with an
ErrorType. Raise the specific subclass where the failure is detected;
to_scraping_error() only infers a type for foreign exceptions.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class ErrorType(str, Enum):
    NETWORK = "network"
    PARSING = "parsing"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    CAPTCHA = "captcha"
    AUTH = "auth"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Types whose failures indicate a transient condition
RETRYABLE_TYPES = frozenset({
    ErrorType.NETWORK,
    ErrorType.TIMEOUT,
    ErrorType.RATE_LIMIT,
    ErrorType.AUTH,
    ErrorType.BLOCKED,
})


@dataclass
class AttemptRecord:
    """One failed attempt inside execute_with_retry"""
    attempt: int
    error_type: ErrorType
    message: str
    delay: float
    timestamp: float


class ScrapingError(Exception):
    """Classified scraping failure"""

    error_type: ErrorType = ErrorType.NETWORK
    default_severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        selector: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_count: int = 0,
    ):
        super().__init__(message)
        self.message = message
        self.url = url
        self.selector = selector
        self.severity = severity or self.default_severity
        self.details = details or {}
        self.retry_count = retry_count
        self.attempts: List[AttemptRecord] = []
        self.timestamp = time.time()

    @property
    def type(self) -> ErrorType:
        return self.error_type

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.error_type.value,
            'severity': self.severity.value,
            'message': self.message,
            'url': self.url,
            'selector': self.selector,
            'retryable': self.retryable,
            'retry_count': self.retry_count,
            'details': self.details,
            'timestamp': self.timestamp,
            'attempts': len(self.attempts),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_type.value}: {self.message!r})"


class NetworkError(ScrapingError):
    error_type = ErrorType.NETWORK


class ParsingError(ScrapingError):
    error_type = ErrorType.PARSING


class EmptyResultsError(ParsingError):
    """Page rendered but the listing held no items"""
    default_severity = ErrorSeverity.LOW


class ValidationError(ScrapingError):
    error_type = ErrorType.VALIDATION
    default_severity = ErrorSeverity.LOW


class RateLimitError(ScrapingError):
    error_type = ErrorType.RATE_LIMIT
    default_severity = ErrorSeverity.HIGH

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details.setdefault('retry_after', retry_after)


class BlockedError(ScrapingError):
    error_type = ErrorType.BLOCKED
    default_severity = ErrorSeverity.CRITICAL


class ScrapeTimeoutError(ScrapingError):
    error_type = ErrorType.TIMEOUT


class CaptchaError(ScrapingError):
    error_type = ErrorType.CAPTCHA
    default_severity = ErrorSeverity.CRITICAL


class AuthError(ScrapingError):
    error_type = ErrorType.AUTH
    default_severity = ErrorSeverity.HIGH


class CircuitBreakerTripped(Exception):
    """Raised instead of calling a target whose circuit is open"""

    code = "circuit_breaker_tripped"

    def __init__(self, target_id: str, retry_after: float, last_error: Optional[ScrapingError] = None):
        self.target_id = target_id
        self.retry_after = retry_after
        self.last_error = last_error
        super().__init__(
            f"Circuit for '{target_id}' is OPEN. Retry after {retry_after:.1f}s"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.code,
            'message': str(self),
            'target_id': self.target_id,
            'retry_after': round(self.retry_after, 1),
            'last_error': self.last_error.to_dict() if self.last_error else None,
        }


ERROR_CLASSES = {
    ErrorType.NETWORK: NetworkError,
    ErrorType.PARSING: ParsingError,
    ErrorType.VALIDATION: ValidationError,
    ErrorType.RATE_LIMIT: RateLimitError,
    ErrorType.BLOCKED: BlockedError,
    ErrorType.TIMEOUT: ScrapeTimeoutError,
    ErrorType.CAPTCHA: CaptchaError,
    ErrorType.AUTH: AuthError,
}

# Message fragments checked in order for exceptions raised without a type
_MESSAGE_HINTS = (
    (ErrorType.TIMEOUT, ('timeout', 'timed out')),
    (ErrorType.RATE_LIMIT, ('rate limit', 'too many requests', '429')),
    (ErrorType.CAPTCHA, ('captcha', 'recaptcha', 'hcaptcha')),
    (ErrorType.BLOCKED, ('blocked', 'forbidden', 'access denied', '403')),
    (ErrorType.AUTH, ('unauthorized', 'authentication', 'login required', '401')),
    (ErrorType.PARSING, ('selector', 'parse', 'not found')),
    (ErrorType.VALIDATION, ('validation', 'invalid')),
    (ErrorType.NETWORK, ('net::', 'network', 'connection', 'dns', 'econn', 'ssl')),
)


def infer_error_type(message: str) -> ErrorType:
    """Substring inference, used only for uncategorized failures"""
    lowered = message.lower()
    for error_type, hints in _MESSAGE_HINTS:
        if any(hint in lowered for hint in hints):
            return error_type
    return ErrorType.NETWORK


def to_scraping_error(
    error: BaseException,
    url: Optional[str] = None,
    selector: Optional[str] = None,
) -> ScrapingError:
    """Convert any exception into a typed ScrapingError"""
    if isinstance(error, ScrapingError):
        if url and not error.url:
            error.url = url
        return error

    message = str(error) or type(error).__name__

    if isinstance(error, (PlaywrightTimeoutError, asyncio.TimeoutError, TimeoutError)):
        error_type = ErrorType.TIMEOUT
    elif isinstance(error, PlaywrightError):
        error_type = infer_error_type(message)
    elif isinstance(error, (ConnectionError, OSError)):
        error_type = ErrorType.NETWORK
    else:
        error_type = infer_error_type(message)

    converted = ERROR_CLASSES[error_type](
        message,
        url=url,
        selector=selector,
        details={'original_type': type(error).__name__},
    )
    converted.__cause__ = error
    return converted
