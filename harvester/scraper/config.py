"""
Scraper Configuration

Central configuration for all scraping parameters.
ScraperConfig is frozen: overrides produce a new instance.
"""

import os
from dataclasses import dataclass, field, fields, replace, is_dataclass
from typing import Dict, Any, Optional, Tuple
from pathlib import Path


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-target request budget"""
    requests_per_minute: int = 30
    burst_limit: int = 5
    delay_between_requests: float = 2.0  # Minimum seconds between requests


@dataclass(frozen=True)
class TimeoutConfig:
    """Timeouts in seconds (converted to ms for the renderer)"""
    navigation: float = 30.0
    action: float = 10.0
    wait: float = 5.0


@dataclass(frozen=True)
class RetryConfig:
    """Retry settings"""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Circuit breaker settings"""
    failure_threshold: int = 5       # Failures before opening
    failure_window: float = 300.0    # Failures must fall within 5 minutes
    cooldown: float = 600.0          # Seconds before a trial request


@dataclass(frozen=True)
class BrowserConfig:
    """Renderer identity"""
    headless: bool = True
    viewport_width: int = 1920
    viewport_height: int = 1080
    user_agent: Optional[str] = None  # None = rotate per session
    locale: str = "en-US"
    timezone: str = "America/New_York"
    rotate_fingerprint: bool = True


@dataclass(frozen=True)
class ScraperConfig:
    """Immutable per-scraper settings"""
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)

    use_stealth_mode: bool = True
    respect_robots_txt: bool = True
    max_sessions: int = 10
    max_pages: int = 5
    detail_concurrency: int = 3
    blocked_resource_types: Tuple[str, ...] = ("image", "stylesheet", "font", "media")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScraperConfig":
        """Build config from a (possibly partial) nested dict"""
        return _merge(cls(), data or {})

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "ScraperConfig":
        """Return a copy with nested overrides applied"""
        if not overrides:
            return self
        return _merge(self, overrides)

    def to_dict(self) -> Dict[str, Any]:
        return _as_dict(self)


@dataclass
class OrchestratorConfig:
    """Job-level settings"""
    concurrency: int = 3
    chunk_pause: float = 2.0
    data_dir: Path = Path("./data")
    log_dir: Path = Path("./logs")
    database_path: Optional[Path] = None
    session_retention_hours: float = 24.0


def _merge(instance, overrides: Dict[str, Any]):
    """Recursively apply dict overrides to a frozen dataclass"""
    known = {f.name: f for f in fields(instance)}
    changes = {}
    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"Unknown config option: {key}")
        current = getattr(instance, key)
        if is_dataclass(current) and isinstance(value, dict):
            changes[key] = _merge(current, value)
        elif isinstance(current, tuple) and isinstance(value, list):
            changes[key] = tuple(value)
        else:
            changes[key] = value
    return replace(instance, **changes)


def _as_dict(instance) -> Dict[str, Any]:
    result = {}
    for f in fields(instance):
        value = getattr(instance, f.name)
        result[f.name] = _as_dict(value) if is_dataclass(value) else value
    return result


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env() -> Tuple[ScraperConfig, OrchestratorConfig]:
    """Read HARVESTER_* environment variables on top of the defaults"""
    overrides: Dict[str, Any] = {
        'browser': {'headless': _env_bool('HARVESTER_HEADLESS', True)},
    }
    if 'HARVESTER_REQUESTS_PER_MINUTE' in os.environ:
        overrides['rate_limit'] = {
            'requests_per_minute': int(os.environ['HARVESTER_REQUESTS_PER_MINUTE'])
        }
    if 'HARVESTER_MAX_RETRIES' in os.environ:
        overrides['retry'] = {'max_retries': int(os.environ['HARVESTER_MAX_RETRIES'])}
    if 'HARVESTER_MAX_PAGES' in os.environ:
        overrides['max_pages'] = int(os.environ['HARVESTER_MAX_PAGES'])

    orchestrator_config = OrchestratorConfig(
        concurrency=int(os.environ.get('HARVESTER_CONCURRENCY', 3)),
        data_dir=Path(os.environ.get('HARVESTER_DATA_DIR', './data')),
        log_dir=Path(os.environ.get('HARVESTER_LOG_DIR', './logs')),
    )
    db_path = os.environ.get('HARVESTER_DATABASE_PATH')
    if db_path:
        orchestrator_config.database_path = Path(db_path)

    return ScraperConfig.from_dict(overrides), orchestrator_config


# Default configuration instance
default_config = ScraperConfig()
