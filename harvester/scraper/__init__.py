# Scraper service
from .config import ScraperConfig, OrchestratorConfig, load_config_from_env
from .errors import ScrapingError, CircuitBreakerTripped, ErrorType
from .models import ScrapeJob, ScrapeTarget, ScrapingSession, SessionStatus
from .core.orchestrator import ScraperOrchestrator, JobResult

__all__ = [
    'ScraperConfig',
    'OrchestratorConfig',
    'load_config_from_env',
    'ScrapingError',
    'CircuitBreakerTripped',
    'ErrorType',
    'ScrapeJob',
    'ScrapeTarget',
    'ScrapingSession',
    'SessionStatus',
    'ScraperOrchestrator',
    'JobResult',
]
