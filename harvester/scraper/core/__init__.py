# Core scraping infrastructure
from .rate_limiter import TargetRateLimiter
from .error_classifier import ErrorClassifier, ErrorClassification, RecoveryAction
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .retry_handler import RetryHandler, RetryContext
from .session_manager import SessionManager, PlaywrightLauncher
from .health_monitor import HealthMonitor, HealthStatus
from .fallback import FallbackStrategyEngine, FallbackRule
from .orchestrator import ScraperOrchestrator, JobResult

__all__ = [
    'TargetRateLimiter',
    'ErrorClassifier',
    'ErrorClassification',
    'RecoveryAction',
    'CircuitBreaker',
    'CircuitBreakerRegistry',
    'CircuitState',
    'RetryHandler',
    'RetryContext',
    'SessionManager',
    'PlaywrightLauncher',
    'HealthMonitor',
    'HealthStatus',
    'FallbackStrategyEngine',
    'FallbackRule',
    'ScraperOrchestrator',
    'JobResult',
]
