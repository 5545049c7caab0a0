"""
Scraper Orchestrator

Coordinates all scraping operations with:
- Scraper registry keyed by source type
- Circuit breakers per target, checked before any renderer is launched
- Per-target rate limiting and classification-driven retries
- Fallback chains after retries are exhausted
- Normalization, job filters and idempotent persistence
- Session tracking with cancellation, health and metrics reporting
"""

import re
import time
import asyncio
import logging
from datetime import date
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Callable, Any, Type, Awaitable

from ..config import ScraperConfig, OrchestratorConfig
from ..errors import CircuitBreakerTripped, ScrapingError, to_scraping_error
from ..models import (
    JobFilters,
    PaginationType,
    RawScrapedData,
    ScrapeJob,
    ScrapeTarget,
    ScrapingMetrics,
    ScrapingSession,
    SessionStatus,
    aggregate_metrics,
)
from ..alerts import AlertManager
from ..scrapers.base import BaseScraper
from ..scrapers.listing_scraper import EventListingScraper
from .rate_limiter import TargetRateLimiter
from .circuit_breaker import CircuitBreakerRegistry
from .error_classifier import ErrorClassifier
from .retry_handler import RetryHandler, RetryContext
from .health_monitor import HealthMonitor, HealthStatus
from .fallback import FallbackStrategyEngine, FallbackAction, FallbackOutcome
from standardization import DataNormalizer, NormalizationResult, NormalizedEvent

logger = logging.getLogger(__name__)

# Above this the target is likely to notice us
RECOMMENDED_MAX_RPM = 60
RECOMMENDED_MAX_PAGES = 20


@dataclass
class ScraperRegistration:
    """A scraper class registered for one source type"""
    source: str
    scraper_class: Type[BaseScraper]
    description: str = ""
    config_overrides: Optional[Dict[str, Any]] = None


@dataclass
class TargetOutcome:
    """What one target produced inside a job"""
    session: ScrapingSession
    result: Optional[NormalizationResult] = None
    events: List[NormalizedEvent] = field(default_factory=list)
    saved: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session': self.session.to_dict(),
            'events': len(self.events),
            'saved': self.saved,
            'quality_report': self.result.report.model_dump(mode='json') if self.result else None,
        }


@dataclass
class JobResult:
    job_id: str
    name: str
    started_at: float
    finished_at: Optional[float] = None
    outcomes: List[TargetOutcome] = field(default_factory=list)

    @property
    def sessions(self) -> List[ScrapingSession]:
        return [o.session for o in self.outcomes]

    @property
    def events(self) -> List[NormalizedEvent]:
        return [e for o in self.outcomes for e in o.events]

    def count(self, status: SessionStatus) -> int:
        return sum(1 for o in self.outcomes if o.session.status == status)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.session.skipped)

    def summary(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'name': self.name,
            'targets': len(self.outcomes),
            'completed': self.count(SessionStatus.COMPLETED),
            'failed': self.count(SessionStatus.FAILED),
            'cancelled': self.count(SessionStatus.CANCELLED),
            'skipped': self.skipped,
            'events': len(self.events),
            'saved': sum(o.saved for o in self.outcomes),
            'duration': round((self.finished_at or time.time()) - self.started_at, 2),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.summary(), 'outcomes': [o.to_dict() for o in self.outcomes]}


class ScraperOrchestrator:
    """
    Main orchestrator that coordinates all scraping operations.

    Owns one rate limiter, circuit breaker registry, classifier, retry
    handler, health monitor and normalizer; scrapers are created per
    target run and destroyed when it ends.

    Usage:
        orchestrator = ScraperOrchestrator(config, stores=[SQLiteRecordStore()])
        result = await orchestrator.execute_job(job)
        await orchestrator.close()
    """

    def __init__(
        self,
        scraper_config: Optional[ScraperConfig] = None,
        orchestrator_config: Optional[OrchestratorConfig] = None,
        stores: Optional[List[Any]] = None,
        launcher_factory: Optional[Callable[[ScraperConfig], Any]] = None,
        health_monitor: Optional[HealthMonitor] = None,
        normalizer: Optional[DataNormalizer] = None,
        alerts: Optional[AlertManager] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Optional[Callable[[], float]] = None,
    ):
        self.config = scraper_config or ScraperConfig()
        self.orchestrator_config = orchestrator_config or OrchestratorConfig()
        self.stores = list(stores or [])
        self.launcher_factory = launcher_factory
        self._clock = clock
        self._sleep = sleep

        # Core components
        self.rate_limiter = TargetRateLimiter(self.config.rate_limit, clock=clock, sleep=sleep)
        self.circuit_breakers = CircuitBreakerRegistry(self.config.circuit_breaker, clock=clock)
        self.classifier = ErrorClassifier(self.config.retry)
        retry_kwargs = {'jitter': jitter} if jitter is not None else {}
        self.retry_handler = RetryHandler(
            self.config.retry,
            classifier=self.classifier,
            circuit_breakers=self.circuit_breakers,
            default_timeout=self.config.timeouts.navigation,
            sleep=sleep,
            **retry_kwargs,
        )
        self.health_monitor = health_monitor or HealthMonitor()
        self.normalizer = normalizer or DataNormalizer()
        self.alerts = alerts
        if alerts is not None:
            self.health_monitor.subscribe(alerts)

        self._registry: Dict[str, ScraperRegistration] = {}
        # Active scrapers keyed by session id
        self.scrapers: Dict[str, BaseScraper] = {}
        self.sessions: Dict[str, ScrapingSession] = {}
        self.jobs: Dict[str, JobResult] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        for source in EventListingScraper.source_types:
            self.register_scraper(source, EventListingScraper, "Selector-driven listing scraper")

    # ============================================
    # Registry
    # ============================================

    def register_scraper(
        self,
        source: str,
        scraper_class: Type[BaseScraper],
        description: str = "",
        config_overrides: Optional[Dict[str, Any]] = None,
    ):
        """Register (or replace) the scraper class for a source type"""
        self._registry[source] = ScraperRegistration(
            source=source,
            scraper_class=scraper_class,
            description=description,
            config_overrides=config_overrides,
        )
        logger.debug(f"Registered scraper {scraper_class.__name__} for source '{source}'")

    def get_available_sources(self) -> List[Dict[str, str]]:
        return [
            {'source': r.source, 'scraper': r.scraper_class.__name__, 'description': r.description}
            for r in self._registry.values()
        ]

    def config_for(self, target: ScrapeTarget) -> ScraperConfig:
        """Global config with source defaults, then target overrides"""
        config = self.config
        registration = self._registry.get(target.source)
        if registration and registration.config_overrides:
            config = config.with_overrides(registration.config_overrides)
        return config.with_overrides(target.config_overrides)

    def validate_config(self, config: Optional[ScraperConfig] = None) -> Dict[str, Any]:
        """Sanity-check a scraper config; errors make it unusable"""
        config = config or self.config
        errors: List[str] = []
        warnings: List[str] = []

        rate = config.rate_limit
        if rate.requests_per_minute <= 0:
            errors.append("requests_per_minute must be positive")
        elif rate.requests_per_minute > RECOMMENDED_MAX_RPM:
            warnings.append(
                f"requests_per_minute {rate.requests_per_minute} exceeds {RECOMMENDED_MAX_RPM}; "
                f"targets may block"
            )
        if rate.burst_limit <= 0:
            errors.append("burst_limit must be positive")
        if rate.delay_between_requests < 0:
            errors.append("delay_between_requests cannot be negative")

        for name in ('navigation', 'action', 'wait'):
            if getattr(config.timeouts, name) <= 0:
                errors.append(f"{name} timeout must be positive")

        if config.retry.max_retries < 0:
            errors.append("max_retries cannot be negative")
        if config.retry.base_delay > config.retry.max_delay:
            warnings.append("retry base_delay exceeds max_delay")

        if config.circuit_breaker.failure_threshold < 1:
            errors.append("failure_threshold must be at least 1")
        if config.max_sessions < 1:
            errors.append("max_sessions must be at least 1")
        if config.max_pages < 1:
            errors.append("max_pages must be at least 1")
        elif config.max_pages > RECOMMENDED_MAX_PAGES:
            warnings.append(f"max_pages {config.max_pages} is high; runs will be slow")

        return {'valid': not errors, 'errors': errors, 'warnings': warnings}

    def validate_target(self, target: ScrapeTarget) -> Dict[str, Any]:
        """Check a target definition before running it"""
        errors: List[str] = []
        warnings: List[str] = []

        if not target.id:
            errors.append("Target id is required")
        if not target.base_url:
            errors.append("Target base_url is required")
        elif not re.sub(r'\{[^}]+\}', 'test', target.base_url).startswith(('http://', 'https://')):
            errors.append(f"Target base_url must be http(s): {target.base_url}")
        if target.source not in self._registry:
            errors.append(f"Unknown source: {target.source}")

        selectors = target.selectors
        for name in ('container', 'item', 'title'):
            if not getattr(selectors, name):
                errors.append(f"Selector '{name}' is required")
        if not selectors.date:
            warnings.append("No date selector; events will be rejected without a start time")

        pagination = target.pagination
        if pagination.type == PaginationType.BUTTON and not pagination.selector:
            errors.append("Button pagination requires a selector")
        if pagination.max_pages and pagination.max_pages > RECOMMENDED_MAX_PAGES:
            warnings.append(f"max_pages {pagination.max_pages} is high")

        if target.config_overrides:
            try:
                config = self.config_for(target)
            except ValueError as e:
                errors.append(str(e))
            else:
                result = self.validate_config(config)
                errors.extend(result['errors'])
                warnings.extend(result['warnings'])

        return {'valid': not errors, 'errors': errors, 'warnings': warnings}

    # ============================================
    # Scraper lifecycle
    # ============================================

    def create_scraper(self, target: ScrapeTarget, session_id: Optional[str] = None) -> BaseScraper:
        """Instantiate the registered scraper for a target (no renderer yet)"""
        registration = self._registry.get(target.source)
        if registration is None:
            raise ValueError(f"Unknown source: {target.source}")

        config = self.config_for(target)
        if config.rate_limit != self.config.rate_limit:
            self.rate_limiter.configure(target.id, config.rate_limit)

        launcher = self.launcher_factory(config) if self.launcher_factory else None
        scraper = registration.scraper_class(
            target.id,
            config,
            rate_limiter=self.rate_limiter,
            launcher=launcher,
            sleep=self._sleep,
        )
        key = session_id or f"{target.id}_{int(self._clock() * 1000)}"
        self.scrapers[key] = scraper
        logger.debug(f"[{target.id}] Created {registration.scraper_class.__name__}")
        return scraper

    async def destroy_scraper(self, key: str):
        scraper = self.scrapers.pop(key, None)
        if scraper is None:
            return
        try:
            await scraper.destroy()
        except Exception as e:
            logger.warning(f"[{scraper.name}] Failed to destroy scraper: {e}")

    async def destroy_all_scrapers(self):
        for key in list(self.scrapers):
            await self.destroy_scraper(key)

    # ============================================
    # Jobs
    # ============================================

    def prepare_target(self, target: ScrapeTarget, filters: JobFilters) -> ScrapeTarget:
        """Fill URL placeholders and the default city from job filters"""
        location = filters.location or {}
        values = {key: str(value) for key, value in location.items()}
        if filters.keywords:
            values.setdefault('query', ' '.join(filters.keywords))
        target = target.resolve_url(values)
        if not target.default_city and location.get('city'):
            target = replace(target, default_city=location['city'])
        return target

    async def execute_job(self, job: ScrapeJob) -> JobResult:
        """
        Run every target of a job, `concurrency` targets at a time.

        Per-target failures are recorded on their sessions; the job
        itself always completes.
        """
        result = JobResult(job_id=job.id, name=job.name, started_at=self._clock())
        self.jobs[job.id] = result

        planned = []
        for target in job.targets:
            session = ScrapingSession(job_id=job.id, target_id=target.id, source=target.source)
            self.sessions[session.id] = session
            planned.append((self.prepare_target(target, job.filters), session))

        concurrency = max(self.orchestrator_config.concurrency, 1)
        logger.info(
            f"Job {job.id} ({job.name}): {len(planned)} targets, concurrency {concurrency}"
        )

        for start in range(0, len(planned), concurrency):
            chunk = planned[start:start + concurrency]
            tasks = []
            for target, session in chunk:
                task = asyncio.ensure_future(self._run_target(job, target, session))
                self._tasks[session.id] = task
                tasks.append(task)

            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
            for (target, session), outcome in zip(chunk, outcomes):
                if isinstance(outcome, TargetOutcome):
                    result.outcomes.append(outcome)
                    continue
                if isinstance(outcome, asyncio.CancelledError):
                    session.cancel()
                else:
                    logger.error(f"[{target.id}] Unexpected failure: {outcome!r}")
                    session.fail(to_scraping_error(outcome))
                result.outcomes.append(TargetOutcome(session=session))

            if start + concurrency < len(planned) and self.orchestrator_config.chunk_pause > 0:
                await self._sleep(self.orchestrator_config.chunk_pause)

        result.finished_at = self._clock()
        summary = result.summary()
        logger.info(
            f"Job {job.id} complete: {summary['completed']}/{summary['targets']} targets, "
            f"{summary['failed']} failed, {summary['skipped']} skipped, "
            f"{summary['events']} events in {summary['duration']:.1f}s"
        )
        return result

    async def _run_target(
        self,
        job: ScrapeJob,
        target: ScrapeTarget,
        session: ScrapingSession,
    ) -> TargetOutcome:
        outcome = TargetOutcome(session=session)

        breaker = self.circuit_breakers.get(target.id)
        if breaker.is_open:
            error = CircuitBreakerTripped(target.id, breaker.retry_after)
            logger.warning(f"[{target.id}] {error}")
            session.fail(error)
            self._record_run(session, None, 0)
            return outcome

        session.start()
        started = self._clock()
        scraper = self.create_scraper(target, session.id)
        config = scraper.config
        context = RetryContext(target_id=target.id, timeout=config.timeouts.navigation)

        async def operation(ctx: RetryContext) -> RawScrapedData:
            if not scraper.session_manager.is_initialized:
                await scraper.initialize()
            return await scraper.scrape(target, session, ctx)

        try:
            try:
                raw = await self.retry_handler.execute_with_retry(target.id, operation, context)
            except ScrapingError as e:
                session.add_error(e)
                fallback = await self._run_fallbacks(target, e, scraper, session, context)
                if fallback is None:
                    raise
                raw = fallback.result
                session.fallback_used = fallback.rule_id
                session.skipped = fallback.skipped

            result = self.normalizer.normalize_batch(raw, session.id, target.timezone)
            events = self.apply_filters(result.events, job.filters)
            outcome.result = result
            outcome.events = events
            outcome.saved = await self._persist(target, result, events)

            session.progress.events_processed = len(events)
            if session.metrics is not None:
                session.metrics.data_quality_score = result.report.quality_score
            session.complete()

            self.health_monitor.record_success(
                target.id,
                response_time=self._clock() - started,
                event_count=len(events),
                quality_score=result.report.quality_score,
                fallback_used=session.fallback_used,
            )
            self._check_quality(target, result)
        except CircuitBreakerTripped as e:
            logger.warning(f"[{target.id}] {e}")
            session.fail(e)
            self.health_monitor.record_failure(target.id, str(e))
            if self.alerts is not None:
                self.alerts.alert_circuit_open(target.id, e.retry_after)
        except ScrapingError as e:
            if e not in session.errors:
                session.add_error(e)
            session.fail()
            self.health_monitor.record_failure(target.id, f"{e.error_type.value}: {e.message}")
            if self.alerts is not None and breaker.is_open:
                self.alerts.alert_circuit_open(target.id, breaker.retry_after)
        except asyncio.CancelledError:
            logger.info(f"[{target.id}] Session {session.id} cancelled")
            session.cancel()
            self._record_run(session, None, 0)
            raise
        finally:
            await self.destroy_scraper(session.id)
            self._tasks.pop(session.id, None)

        self._record_run(session, outcome.result, outcome.saved)
        return outcome

    async def _run_fallbacks(
        self,
        target: ScrapeTarget,
        error: ScrapingError,
        scraper: BaseScraper,
        session: ScrapingSession,
        context: RetryContext,
    ) -> Optional[FallbackOutcome]:
        if not target.fallbacks:
            return None

        engine = FallbackStrategyEngine.from_config(target.fallbacks, sleep=self._sleep)
        if self.circuit_breakers.is_open(target.id):
            # An open circuit forbids further requests; only a skip can apply
            engine.rules = [r for r in engine.rules if r.action == FallbackAction.SKIP]

        async def scrape(fallback_target: ScrapeTarget) -> RawScrapedData:
            if not scraper.session_manager.is_initialized:
                await scraper.initialize()
            return await scraper.scrape(fallback_target, session, context)

        return await engine.run(target, error, scrape)

    def _check_quality(self, target: ScrapeTarget, result: NormalizationResult):
        report = result.report
        threshold = self.normalizer.config.min_quality_score
        if report.skipped or report.total_records == 0 or report.quality_score >= threshold:
            return
        logger.warning(
            f"[{target.id}] Quality score {report.quality_score:.0%} below {threshold:.0%}: "
            f"{report.invalid_records} invalid records"
        )
        if self.alerts is not None:
            self.alerts.alert_low_quality(target.id, report.quality_score, threshold)

    @staticmethod
    def apply_filters(events: List[NormalizedEvent], filters: JobFilters) -> List[NormalizedEvent]:
        """Keep events matching the job's date range, categories and keywords"""
        date_range = filters.date_range or {}
        start: Optional[date] = date_range.get('start')
        end: Optional[date] = date_range.get('end')
        categories = {c.lower() for c in filters.categories}
        keywords = [k.lower() for k in filters.keywords]
        excluded = [k.lower() for k in filters.exclude_keywords]

        kept = []
        for event in events:
            day = event.start_time.date()
            if start and day < start:
                continue
            if end and day > end:
                continue
            if categories and event.category.value.lower() not in categories:
                continue
            text = f"{event.title} {event.description or ''}".lower()
            if keywords and not any(k in text for k in keywords):
                continue
            if any(k in text for k in excluded):
                continue
            kept.append(event)
        return kept

    async def _persist(
        self,
        target: ScrapeTarget,
        result: NormalizationResult,
        events: List[NormalizedEvent],
    ) -> int:
        """Upsert into every store; a failing store is logged, not fatal"""
        saved = 0
        for store in self.stores:
            try:
                await asyncio.to_thread(store.upsert_venues, result.venues)
                await asyncio.to_thread(store.upsert_organizers, result.organizers)
                saved = await asyncio.to_thread(store.upsert_events, events)
            except Exception as e:
                logger.error(f"[{target.id}] Failed to save to {type(store).__name__}: {e}")
        if self.stores:
            logger.info(f"[{target.id}] Saved {saved} events")
        return saved

    def _record_run(self, session: ScrapingSession, result: Optional[NormalizationResult], saved: int):
        report = result.report if result else None
        for store in self.stores:
            try:
                store.record_run(session.to_dict(), report, saved)
            except Exception as e:
                logger.error(f"[{session.target_id}] Failed to record run in {type(store).__name__}: {e}")

    # ============================================
    # Sessions
    # ============================================

    def cancel_session(self, session_id: str) -> bool:
        """Cancel a pending or running session"""
        session = self.sessions.get(session_id)
        if session is None or session.is_terminal:
            return False
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            task.cancel()
        else:
            session.cancel()
        logger.info(f"[{session.target_id}] Cancellation requested for {session_id}")
        return True

    def get_session(self, session_id: str) -> Optional[ScrapingSession]:
        return self.sessions.get(session_id)

    def get_active_sessions(self) -> List[ScrapingSession]:
        return [s for s in self.sessions.values() if not s.is_terminal]

    def cleanup_sessions(self, older_than_hours: Optional[float] = None) -> int:
        """Forget finished sessions older than the retention window"""
        hours = older_than_hours if older_than_hours is not None else \
            self.orchestrator_config.session_retention_hours
        cutoff = self._clock() - hours * 3600
        expired = [
            sid for sid, s in self.sessions.items()
            if s.is_terminal and (s.finished_at or s.created_at) < cutoff
        ]
        for sid in expired:
            del self.sessions[sid]
        if expired:
            logger.info(f"Cleaned up {len(expired)} finished sessions")
        return len(expired)

    # ============================================
    # Health and metrics
    # ============================================

    def get_statistics(self) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in SessionStatus}
        for session in self.sessions.values():
            by_status[session.status.value] += 1
        return {
            'sessions': by_status,
            'active_scrapers': len(self.scrapers),
            'registered_sources': sorted(self._registry),
            'jobs': len(self.jobs),
            'open_circuits': self.circuit_breakers.open_circuits(),
            'errors': self.classifier.get_error_statistics(),
            'normalizer': dict(self.normalizer.stats),
        }

    def get_health_status(self) -> Dict[str, Any]:
        issues: List[str] = []
        for target_id, retry_after in self.circuit_breakers.open_circuits().items():
            issues.append(f"Circuit open for {target_id} (retry in {retry_after:.0f}s)")
        for target_id in self.health_monitor.targets:
            status = self.health_monitor.get_status(target_id)
            if status in (HealthStatus.UNHEALTHY, HealthStatus.CRITICAL):
                issues.append(f"Target {target_id} is {status.value}")
        for scraper in self.scrapers.values():
            if not scraper.session_manager.is_initialized:
                continue
            for issue in scraper.get_health_status()['issues']:
                issues.append(f"[{scraper.name}] {issue}")
        return {'healthy': not issues, 'issues': issues}

    def get_metrics(self) -> List[ScrapingMetrics]:
        return [s.metrics for s in self.sessions.values() if s.metrics is not None]

    def get_aggregated_metrics(self) -> Dict[str, Any]:
        return aggregate_metrics(self.get_metrics())

    def get_health_report(self) -> Dict[str, Any]:
        """Get comprehensive health report"""
        return {
            'targets': self.health_monitor.get_health_report(),
            'rate_limiters': self.rate_limiter.get_stats(),
            'circuits': self.circuit_breakers.get_all_stats(),
            'scrapers': {
                key: scraper.session_manager.get_all_stats()
                for key, scraper in self.scrapers.items()
            },
        }

    def get_health_summary(self) -> str:
        return self.health_monitor.get_summary()

    def reset_circuit(self, target_id: str) -> bool:
        """Manually reset the circuit breaker for a target"""
        reset = self.circuit_breakers.reset(target_id)
        if reset:
            logger.info(f"Reset circuit breaker for {target_id}")
        return reset

    def reset_all_circuits(self):
        self.circuit_breakers.reset_all()
        logger.info("Reset all circuit breakers")

    async def close(self):
        """Cancel running sessions and release every scraper"""
        for task in list(self._tasks.values()):
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.destroy_all_scrapers()
        logger.info("Orchestrator closed")
