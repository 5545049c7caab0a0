"""
Base Scraper

Lifecycle, metrics and health reporting shared by every target scraper.
Concrete scrapers implement scrape(); everything that touches the
renderer goes through the scraper's SessionManager.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import ScraperConfig
from ..models import ScrapeTarget, ScrapingSession, RawScrapedData, ScrapingMetrics
from ..core.rate_limiter import TargetRateLimiter
from ..core.retry_handler import RetryContext
from ..core.session_manager import SessionManager, USER_AGENTS

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 10


class BaseScraper(ABC):
    """Base class for all target scrapers"""

    # Source types this scraper can be registered for
    source_types: tuple = ()

    def __init__(
        self,
        name: str,
        config: ScraperConfig,
        rate_limiter: Optional[TargetRateLimiter] = None,
        launcher=None,
        sleep=asyncio.sleep,
    ):
        self.name = name
        self._sleep = sleep
        self.config = config
        self.rate_limiter = rate_limiter or TargetRateLimiter(config.rate_limit)
        self.session_manager = SessionManager(name, config, self.rate_limiter, launcher)
        self._metrics: Dict[str, ScrapingMetrics] = {}
        self._adhoc_runs = 0

    async def initialize(self):
        """Launch the renderer"""
        await self.session_manager.initialize()

    async def destroy(self):
        """Release every renderer resource; never raises"""
        await self.session_manager.close()

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.destroy()

    @abstractmethod
    async def scrape(
        self,
        target: ScrapeTarget,
        session: Optional[ScrapingSession] = None,
        context: Optional[RetryContext] = None,
    ) -> RawScrapedData:
        """Scrape one target and return its raw records"""

    async def validate_target(self, target: ScrapeTarget) -> bool:
        """Probe the target's base URL over plain HTTP"""
        url = target.base_url
        if '{' in url:
            logger.debug(f"[{self.name}] Skipping probe of templated URL {url}")
            return True
        return await asyncio.to_thread(self._probe, url)

    def _probe(self, url: str) -> bool:
        session = requests.Session()
        session.headers.update({'User-Agent': USER_AGENTS['chrome_windows'][0]})
        retry_strategy = Retry(
            total=2,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        try:
            response = session.head(url, timeout=PROBE_TIMEOUT, allow_redirects=True)
            if response.status_code == 405:
                response = session.get(url, timeout=PROBE_TIMEOUT, stream=True)
            ok = response.status_code < 400
            logger.info(f"[{self.name}] Probe {url}: HTTP {response.status_code}")
            return ok
        except requests.RequestException as e:
            logger.warning(f"[{self.name}] Probe {url} failed: {e}")
            return False
        finally:
            session.close()

    # ============================================
    # Metrics
    # ============================================

    def _metrics_for(self, session: Optional[ScrapingSession], target: ScrapeTarget) -> ScrapingMetrics:
        """Metrics for a session; retries of the same session accumulate"""
        if session is not None:
            key = session.id
        else:
            self._adhoc_runs += 1
            key = f"{self.name}_run_{self._adhoc_runs}"

        if key not in self._metrics:
            self._metrics[key] = ScrapingMetrics(
                session_id=key,
                target_id=target.id,
                source=target.source,
            )
        metrics = self._metrics[key]
        if session is not None:
            session.metrics = metrics
        return metrics

    @staticmethod
    def record_request(metrics: ScrapingMetrics, started: float, success: bool):
        metrics.requests_made += 1
        if success:
            metrics.successful_requests += 1
            metrics.total_response_time += time.time() - started

    def get_metrics(self) -> List[ScrapingMetrics]:
        return list(self._metrics.values())

    def get_health_status(self) -> Dict[str, Any]:
        issues = self.session_manager.health_issues()
        return {'healthy': not issues, 'issues': issues}
