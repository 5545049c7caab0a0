"""
Scraping Data Model

Targets and jobs (externally supplied, read-only while scraping),
sessions (mutated by the scraper that owns them) and raw records
(source-shaped, consumed only by the normalizer).
"""

import time
import uuid
import logging
from dataclasses import dataclass, field, replace, asdict
from datetime import date, datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from .errors import ScrapingError

logger = logging.getLogger(__name__)


# ============================================
# Targets
# ============================================

class PaginationType(str, Enum):
    NONE = "none"
    BUTTON = "button"
    INFINITE_SCROLL = "infinite_scroll"
    URL_PARAMS = "url_params"


@dataclass(frozen=True)
class SelectorMap:
    """CSS selectors for one listing layout"""
    container: str
    item: str
    title: str
    date: Optional[str] = None
    time: Optional[str] = None
    venue: Optional[str] = None
    address: Optional[str] = None
    price: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    link: Optional[str] = None
    organizer: Optional[str] = None
    category: Optional[str] = None
    # Tried in order when the container does not render
    fallback_containers: tuple = ()


@dataclass(frozen=True)
class PaginationConfig:
    type: PaginationType = PaginationType.NONE
    selector: Optional[str] = None   # Next button for BUTTON
    param: str = "page"              # Query parameter for URL_PARAMS
    max_pages: Optional[int] = None  # Falls back to ScraperConfig.max_pages


@dataclass(frozen=True)
class AuthConfig:
    """Form login performed before scraping"""
    login_url: str
    username: str
    password: str
    username_selector: str = "input[name='email']"
    password_selector: str = "input[type='password']"
    submit_selector: str = "button[type='submit']"


@dataclass(frozen=True)
class CookieConsentConfig:
    accept_selector: str
    timeout: float = 3.0


@dataclass(frozen=True)
class ScrapeTarget:
    """A named source endpoint"""
    id: str
    name: str
    source: str
    base_url: str
    selectors: SelectorMap
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    auth: Optional[AuthConfig] = None
    cookie_consent: Optional[CookieConsentConfig] = None
    captcha_selectors: tuple = ()
    # Ordered fallback rules as plain dicts (see core.fallback.FallbackRule)
    fallbacks: tuple = ()
    detail_selectors: Optional[Dict[str, str]] = None
    default_city: Optional[str] = None
    default_country: Optional[str] = None
    timezone: Optional[str] = None
    config_overrides: Optional[Dict[str, Any]] = None

    def with_url(self, url: str) -> "ScrapeTarget":
        return replace(self, base_url=url)

    def with_selectors(self, **changes) -> "ScrapeTarget":
        return replace(self, selectors=replace(self.selectors, **changes))

    def resolve_url(self, values: Dict[str, str]) -> "ScrapeTarget":
        """Fill {placeholders} in the base URL from job filters"""
        if '{' not in self.base_url:
            return self
        url = self.base_url
        for key, value in values.items():
            url = url.replace('{' + key + '}', value)
        return self.with_url(url)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrapeTarget":
        data = dict(data)
        selectors = dict(data.pop('selectors'))
        selectors['fallback_containers'] = tuple(selectors.get('fallback_containers', ()))
        pagination = dict(data.pop('pagination', {}) or {})
        if 'type' in pagination:
            pagination['type'] = PaginationType(pagination['type'])
        auth = data.pop('auth', None)
        consent = data.pop('cookie_consent', None)
        return cls(
            selectors=SelectorMap(**selectors),
            pagination=PaginationConfig(**pagination),
            auth=AuthConfig(**auth) if auth else None,
            cookie_consent=CookieConsentConfig(**consent) if consent else None,
            captcha_selectors=tuple(data.pop('captcha_selectors', ())),
            fallbacks=tuple(data.pop('fallbacks', ())),
            **data,
        )


# ============================================
# Jobs
# ============================================

@dataclass
class JobFilters:
    location: Optional[Dict[str, str]] = None   # e.g. {'city': 'toronto'}
    date_range: Optional[Dict[str, date]] = None  # {'start': date, 'end': date}
    categories: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    exclude_keywords: List[str] = field(default_factory=list)


@dataclass
class OutputConfig:
    format: str = "json"   # json | database | none
    destination: Optional[str] = None


@dataclass
class ScrapeJob:
    targets: List[ScrapeTarget]
    name: str = "scrape"
    id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    filters: JobFilters = field(default_factory=JobFilters)
    output: OutputConfig = field(default_factory=OutputConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrapeJob":
        filters = dict(data.get('filters') or {})
        if filters.get('date_range'):
            filters['date_range'] = {
                key: date.fromisoformat(value) if isinstance(value, str) else value
                for key, value in filters['date_range'].items()
            }
        job = cls(
            targets=[ScrapeTarget.from_dict(t) for t in data.get('targets', [])],
            name=data.get('name', 'scrape'),
            filters=JobFilters(**filters),
            output=OutputConfig(**(data.get('output') or {})),
        )
        if data.get('id'):
            job.id = data['id']
        return job


# ============================================
# Sessions
# ============================================

class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.CANCELLED},
    SessionStatus.RUNNING: {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED},
}


@dataclass
class SessionProgress:
    pages_processed: int = 0
    events_found: int = 0
    events_processed: int = 0
    errors_count: int = 0


@dataclass
class ScrapingSession:
    """One run against one target"""
    job_id: str
    target_id: str
    source: str
    id: str = field(default_factory=lambda: f"session_{uuid.uuid4().hex[:12]}")
    status: SessionStatus = SessionStatus.PENDING
    progress: SessionProgress = field(default_factory=SessionProgress)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    # ScrapingError or CircuitBreakerTripped
    errors: List[Exception] = field(default_factory=list)
    fallback_used: Optional[str] = None
    skipped: bool = False
    metrics: Optional["ScrapingMetrics"] = None

    @property
    def is_terminal(self) -> bool:
        return self.status not in _TRANSITIONS

    def _transition(self, new_status: SessionStatus) -> bool:
        allowed = _TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            logger.warning(
                f"[{self.target_id}] Ignoring session transition "
                f"{self.status.value} -> {new_status.value}"
            )
            return False
        self.status = new_status
        if new_status == SessionStatus.RUNNING:
            self.started_at = time.time()
        else:
            self.finished_at = time.time()
        return True

    def start(self) -> bool:
        return self._transition(SessionStatus.RUNNING)

    def complete(self) -> bool:
        return self._transition(SessionStatus.COMPLETED)

    def fail(self, error: Optional[Exception] = None) -> bool:
        if error is not None:
            self.add_error(error)
        return self._transition(SessionStatus.FAILED)

    def cancel(self) -> bool:
        return self._transition(SessionStatus.CANCELLED)

    def add_error(self, error: Exception):
        self.errors.append(error)
        self.progress.errors_count += 1

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return (self.finished_at or time.time()) - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'job_id': self.job_id,
            'target_id': self.target_id,
            'source': self.source,
            'status': self.status.value,
            'progress': asdict(self.progress),
            'created_at': self.created_at,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'errors': [e.to_dict() for e in self.errors],
            'fallback_used': self.fallback_used,
            'skipped': self.skipped,
        }


# ============================================
# Raw records
# ============================================

@dataclass
class RawDateTime:
    start: Optional[str] = None
    end: Optional[str] = None
    timezone: Optional[str] = None
    all_day: bool = False


@dataclass
class RawVenueRef:
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class RawOrganizer:
    name: Optional[str] = None
    url: Optional[str] = None
    description: Optional[str] = None
    logo_url: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class RawPricing:
    price_text: Optional[str] = None
    is_free: Optional[bool] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    currency: Optional[str] = None
    ticket_url: Optional[str] = None


@dataclass
class RawEventData:
    external_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    date_time: RawDateTime = field(default_factory=RawDateTime)
    venue: Optional[RawVenueRef] = None
    organizer: Optional[RawOrganizer] = None
    pricing: RawPricing = field(default_factory=RawPricing)
    images: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    status: Optional[str] = None
    age_restriction: Optional[str] = None
    capacity: Optional[int] = None
    event_url: Optional[str] = None
    scraped_at: Optional[datetime] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RawVenueData:
    external_id: str
    name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    venue_type: Optional[str] = None
    capacity: Optional[int] = None
    description: Optional[str] = None
    images: List[str] = field(default_factory=list)
    scraped_at: Optional[datetime] = None


@dataclass
class RawScrapedData:
    """Everything one target run produced"""
    target_id: str
    source: str
    url: str
    events: List[RawEventData] = field(default_factory=list)
    venues: List[RawVenueData] = field(default_factory=list)
    errors: List[ScrapingError] = field(default_factory=list)
    pages_scraped: int = 0
    scraped_at: Optional[datetime] = None
    skipped: bool = False
    fallback_used: Optional[str] = None

    @classmethod
    def empty(cls, target: ScrapeTarget, skipped: bool = False) -> "RawScrapedData":
        return cls(target_id=target.id, source=target.source, url=target.base_url, skipped=skipped)


# ============================================
# Metrics
# ============================================

@dataclass
class ScrapingMetrics:
    session_id: str
    target_id: str
    source: str
    events_scraped: int = 0
    venues_scraped: int = 0
    pages_scraped: int = 0
    errors_count: int = 0
    requests_made: int = 0
    successful_requests: int = 0
    total_response_time: float = 0.0
    blocked_attempts: int = 0
    rate_limit_hits: int = 0
    captcha_encounters: int = 0
    data_quality_score: Optional[float] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def success_rate(self) -> float:
        if self.requests_made == 0:
            return 0.0
        return self.successful_requests / self.requests_made

    @property
    def avg_response_time(self) -> float:
        if self.successful_requests == 0:
            return 0.0
        return self.total_response_time / self.successful_requests

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['success_rate'] = round(self.success_rate, 4)
        data['avg_response_time'] = round(self.avg_response_time, 3)
        return data


def aggregate_metrics(metrics: List[ScrapingMetrics]) -> Dict[str, Any]:
    """Roll per-session metrics up into one summary"""
    requests = sum(m.requests_made for m in metrics)
    successes = sum(m.successful_requests for m in metrics)
    response_time = sum(m.total_response_time for m in metrics)
    scores = [m.data_quality_score for m in metrics if m.data_quality_score is not None]
    return {
        'sessions': len(metrics),
        'events_scraped': sum(m.events_scraped for m in metrics),
        'venues_scraped': sum(m.venues_scraped for m in metrics),
        'pages_scraped': sum(m.pages_scraped for m in metrics),
        'errors_count': sum(m.errors_count for m in metrics),
        'blocked_attempts': sum(m.blocked_attempts for m in metrics),
        'rate_limit_hits': sum(m.rate_limit_hits for m in metrics),
        'captcha_encounters': sum(m.captcha_encounters for m in metrics),
        'success_rate': round(successes / requests, 4) if requests else 0.0,
        'avg_response_time': round(response_time / successes, 3) if successes else 0.0,
        'avg_quality_score': round(sum(scores) / len(scores), 4) if scores else None,
    }
