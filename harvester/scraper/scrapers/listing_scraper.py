"""
Event Listing Scraper - selector-driven scraping of event listing pages

Features:
- Status-aware navigation (403 blocked, 429 rate limited, other 4xx/5xx network)
- CAPTCHA detection, form login and cookie-consent dismissal
- Container fallbacks when the primary listing selector does not render
- Button, infinite-scroll and URL-parameter pagination
- Optional detail-page enrichment on auxiliary pages, bounded concurrency
- Deterministic external ids and keyword tags
"""

import asyncio
import hashlib
import logging
import re
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from urllib.parse import urljoin, urlparse, parse_qsl, urlencode, urlunparse

from ..errors import (
    AuthError,
    BlockedError,
    CaptchaError,
    EmptyResultsError,
    NetworkError,
    ParsingError,
    RateLimitError,
    ScrapingError,
    to_scraping_error,
)
from ..models import (
    PaginationType,
    RawDateTime,
    RawEventData,
    RawOrganizer,
    RawPricing,
    RawScrapedData,
    RawVenueData,
    RawVenueRef,
    ScrapeTarget,
    ScrapingMetrics,
    ScrapingSession,
)
from ..core.retry_handler import RetryContext
from ..core.session_manager import BrowserSession, parse_retry_after
from .base import BaseScraper

logger = logging.getLogger(__name__)


TAG_KEYWORDS = [
    'music', 'concert', 'live', 'band', 'dj', 'festival',
    'art', 'gallery', 'exhibition', 'theater', 'comedy',
    'food', 'dining', 'wine', 'beer', 'cocktail',
    'tech', 'startup', 'business', 'networking',
    'fitness', 'yoga', 'running', 'cycling',
    'family', 'kids', 'education', 'workshop',
]

# Listing URLs that embed a numeric event id
EVENT_ID_PATTERNS = [
    re.compile(r'-(\d{6,})(?:[/?#]|$)'),
    re.compile(r'/events?/(\d+)'),
    re.compile(r'/e/([\w-]+)'),
]


class EventListingScraper(BaseScraper):
    """Scrapes any listing page described by a ScrapeTarget's selectors"""

    source_types = ('eventbrite', 'meetup', 'ticketmaster', 'resident_advisor', 'venue_direct', 'generic')

    def __init__(self, name: str, config, rate_limiter=None, launcher=None, sleep=asyncio.sleep):
        super().__init__(name, config, rate_limiter, launcher, sleep)
        self._browser_session: Optional[BrowserSession] = None
        self._authenticated = False

    async def destroy(self):
        self._browser_session = None
        self._authenticated = False
        await super().destroy()

    async def _acquire_session(self, context: RetryContext) -> BrowserSession:
        """Reuse the current renderer session unless a rotation was requested"""
        if self._browser_session is None or self._browser_session.id not in self.session_manager.sessions:
            self._browser_session = await self.session_manager.create_session()
        elif context.should_rotate_session:
            self._browser_session = await self.session_manager.rotate_session(self._browser_session.id)
            self._authenticated = False
        context.should_rotate_session = False
        self._browser_session.touch()
        return self._browser_session

    async def scrape(
        self,
        target: ScrapeTarget,
        session: Optional[ScrapingSession] = None,
        context: Optional[RetryContext] = None,
    ) -> RawScrapedData:
        context = context or RetryContext(target_id=target.id)
        metrics = self._metrics_for(session, target)
        scraped_at = datetime.now(timezone.utc)
        result = RawScrapedData(
            target_id=target.id,
            source=target.source,
            url=target.base_url,
            scraped_at=scraped_at,
        )

        browser_session = await self._acquire_session(context)
        page = browser_session.page
        if context.timeout:
            page.set_default_navigation_timeout(context.timeout * 1000)

        started = time.time()
        logger.info(f"[{target.id}] Scraping {target.base_url} (attempt {context.attempt + 1})")

        if target.auth and (not self._authenticated or context.should_refresh_auth):
            await self._login(page, target, context, metrics)

        await self._navigate(page, target.base_url, metrics)
        await self._check_captcha(page, target, metrics)
        await self._dismiss_cookie_consent(page, target)

        seen: Set[str] = set()
        max_pages = target.pagination.max_pages or self.config.max_pages
        page_number = 1
        while True:
            try:
                events = await self._extract_page(page, target, scraped_at, seen)
            except ScrapingError as e:
                if page_number == 1:
                    raise
                logger.warning(f"[{target.id}] Page {page_number} failed: {e.message}")
                result.errors.append(e)
                break

            if page_number == 1 and not events:
                raise EmptyResultsError(
                    f"No events found on {target.base_url}",
                    url=target.base_url,
                    selector=target.selectors.item,
                )

            result.events.extend(events)
            result.pages_scraped = page_number
            self._update_progress(session, metrics, result)
            logger.info(f"[{target.id}] Page {page_number}: {len(events)} events")

            if page_number >= max_pages:
                break
            try:
                has_more = await self._next_page(page, target, page_number, context, metrics)
            except Exception as e:
                error = to_scraping_error(e, url=target.base_url)
                logger.warning(f"[{target.id}] Pagination stopped: {error.message}")
                result.errors.append(error)
                break
            if not has_more:
                break
            page_number += 1

        if target.detail_selectors:
            await self._enrich_details(browser_session, target, result.events, metrics)

        result.venues = self._aggregate_venues(result.events, target, scraped_at)
        self._update_progress(session, metrics, result)
        metrics.errors_count += len(result.errors)
        metrics.finished_at = time.time()

        logger.info(
            f"[{target.id}] Done: {len(result.events)} events, {len(result.venues)} venues, "
            f"{result.pages_scraped} pages in {time.time() - started:.1f}s"
        )
        return result

    # ============================================
    # Navigation
    # ============================================

    async def _navigate(self, page, url: str, metrics: ScrapingMetrics):
        """goto + status check; raises a typed ScrapingError"""
        started = time.time()
        try:
            response = await page.goto(url, wait_until="domcontentloaded")
        except Exception as e:
            self.record_request(metrics, started, success=False)
            raise to_scraping_error(e, url=url)

        status = response.status if response is not None else 200
        if status == 403:
            self.record_request(metrics, started, success=False)
            metrics.blocked_attempts += 1
            raise BlockedError(f"Access denied (HTTP 403) for {url}", url=url, details={'status': status})
        if status == 429:
            self.record_request(metrics, started, success=False)
            metrics.rate_limit_hits += 1
            retry_after = parse_retry_after(response.headers.get('retry-after'))
            raise RateLimitError(
                f"Too many requests (HTTP 429) for {url}",
                retry_after=retry_after,
                url=url,
                details={'status': status},
            )
        if status >= 400:
            self.record_request(metrics, started, success=False)
            raise NetworkError(f"HTTP {status} for {url}", url=url, details={'status': status})

        self.record_request(metrics, started, success=True)

    async def _check_captcha(self, page, target: ScrapeTarget, metrics: ScrapingMetrics):
        for selector in target.captcha_selectors:
            if await page.query_selector(selector):
                metrics.captcha_encounters += 1
                raise CaptchaError(
                    f"CAPTCHA challenge on {target.base_url}",
                    url=target.base_url,
                    selector=selector,
                )

    async def _login(self, page, target: ScrapeTarget, context: RetryContext, metrics: ScrapingMetrics):
        auth = target.auth
        logger.info(f"[{target.id}] Logging in at {auth.login_url}")
        await self._navigate(page, auth.login_url, metrics)
        try:
            await page.fill(auth.username_selector, auth.username)
            await page.fill(auth.password_selector, auth.password)
            await page.click(auth.submit_selector)
        except Exception as e:
            raise AuthError(f"Login form unusable: {e}", url=auth.login_url) from e

        # Password field still showing means the form rejected us
        if await page.query_selector(auth.password_selector):
            raise AuthError("Login rejected", url=auth.login_url, selector=auth.password_selector)

        self._authenticated = True
        context.should_refresh_auth = False

    async def _dismiss_cookie_consent(self, page, target: ScrapeTarget):
        consent = target.cookie_consent
        if consent is None:
            return
        try:
            await page.wait_for_selector(consent.accept_selector, timeout=consent.timeout * 1000)
            await page.click(consent.accept_selector)
        except Exception:
            logger.debug(f"[{target.id}] No cookie banner to dismiss")

    # ============================================
    # Extraction
    # ============================================

    async def _wait_for_container(self, page, target: ScrapeTarget):
        selectors = target.selectors
        wait_ms = self.config.timeouts.wait * 1000
        for selector in (selectors.container,) + tuple(selectors.fallback_containers):
            try:
                container = await page.wait_for_selector(selector, timeout=wait_ms)
            except Exception:
                logger.debug(f"[{target.id}] Container '{selector}' not found")
                continue
            if container is not None:
                if selector != selectors.container:
                    logger.warning(f"[{target.id}] Using fallback container '{selector}'")
                return container

        raise ParsingError(
            f"Listing container not found on {target.base_url}",
            url=target.base_url,
            selector=selectors.container,
        )

    async def _extract_page(
        self,
        page,
        target: ScrapeTarget,
        scraped_at: datetime,
        seen: Set[str],
    ) -> List[RawEventData]:
        container = await self._wait_for_container(page, target)
        elements = await container.query_selector_all(target.selectors.item)
        page_url = page.url

        events = []
        for element in elements:
            try:
                event = await self._extract_event(element, target, page_url, scraped_at)
            except Exception as e:
                logger.warning(f"[{target.id}] Skipping event: {e}")
                continue
            if event is None or event.external_id in seen:
                continue
            seen.add(event.external_id)
            events.append(event)
        return events

    async def _extract_event(
        self,
        element,
        target: ScrapeTarget,
        page_url: str,
        scraped_at: datetime,
    ) -> Optional[RawEventData]:
        selectors = target.selectors
        title = await _text(element, selectors.title)
        if not title:
            return None

        description = await _text(element, selectors.description)
        date_text = await _text(element, selectors.date)
        time_text = await _text(element, selectors.time)
        venue_name = await _text(element, selectors.venue)
        address = await _text(element, selectors.address)
        price_text = await _text(element, selectors.price)
        organizer = await _text(element, selectors.organizer)
        category = await _text(element, selectors.category)

        link = await _attr(element, selectors.link, 'href')
        event_url = urljoin(page_url, link) if link else None
        image = await _attr(element, selectors.image, 'src') or await _attr(element, selectors.image, 'data-src')

        start = f"{date_text} {time_text}" if date_text and time_text else date_text

        return RawEventData(
            external_id=event_id(event_url, title, date_text, target.source),
            title=title,
            description=description,
            date_time=RawDateTime(start=start, timezone=target.timezone),
            venue=RawVenueRef(name=venue_name, address=address, city=target.default_city) if venue_name else None,
            organizer=RawOrganizer(name=organizer) if organizer else None,
            pricing=RawPricing(price_text=price_text, ticket_url=event_url),
            images=[urljoin(page_url, image)] if image else [],
            categories=[category] if category else [],
            tags=keyword_tags(title, description),
            status='active',
            event_url=event_url,
            scraped_at=scraped_at,
            custom_fields={'scraped_from': page_url},
        )

    # ============================================
    # Pagination
    # ============================================

    async def _page_delay(self, context: RetryContext):
        delay = self.config.rate_limit.delay_between_requests + context.additional_delay
        if delay > 0:
            await self._sleep(delay)

    async def _next_page(
        self,
        page,
        target: ScrapeTarget,
        page_number: int,
        context: RetryContext,
        metrics: ScrapingMetrics,
    ) -> bool:
        """Advance to the next page; False when there is none"""
        pagination = target.pagination

        if pagination.type == PaginationType.BUTTON:
            if not pagination.selector:
                return False
            button = await page.query_selector(pagination.selector)
            if button is None:
                return False
            if await button.get_attribute('disabled') is not None:
                return False
            if await button.get_attribute('aria-disabled') == 'true':
                return False
            await self._page_delay(context)
            await button.click()
            return True

        if pagination.type == PaginationType.INFINITE_SCROLL:
            before = len(await page.query_selector_all(target.selectors.item))
            await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
            await self._page_delay(context)
            after = len(await page.query_selector_all(target.selectors.item))
            return after > before

        if pagination.type == PaginationType.URL_PARAMS:
            await self._page_delay(context)
            next_url = with_query_param(page.url, pagination.param, str(page_number + 1))
            await self._navigate(page, next_url, metrics)
            return True

        return False

    # ============================================
    # Detail pages
    # ============================================

    async def _enrich_details(
        self,
        browser_session: BrowserSession,
        target: ScrapeTarget,
        events: List[RawEventData],
        metrics: ScrapingMetrics,
    ):
        semaphore = asyncio.Semaphore(max(self.config.detail_concurrency, 1))

        async def enrich(event: RawEventData):
            async with semaphore:
                page = await self.session_manager.open_auxiliary_page(browser_session.id)
                try:
                    await self._navigate(page, event.event_url, metrics)
                    details = {}
                    for key, selector in target.detail_selectors.items():
                        details[key] = await _text(page, selector)
                    apply_details(event, details)
                except Exception as e:
                    logger.warning(f"[{target.id}] Detail page {event.event_url} failed: {e}")
                finally:
                    await self.session_manager.close_auxiliary_page(browser_session.id, page)

        candidates = [e for e in events if e.event_url]
        logger.info(f"[{target.id}] Enriching {len(candidates)} events from detail pages")
        await asyncio.gather(*(enrich(e) for e in candidates))

    # ============================================
    # Aggregation
    # ============================================

    @staticmethod
    def _aggregate_venues(
        events: List[RawEventData],
        target: ScrapeTarget,
        scraped_at: datetime,
    ) -> List[RawVenueData]:
        venues: Dict[str, RawVenueData] = {}
        for event in events:
            if event.venue is None or not event.venue.name:
                continue
            venue_id = venue_external_id(event.venue.name)
            event.venue.external_id = venue_id
            if venue_id not in venues:
                venues[venue_id] = RawVenueData(
                    external_id=venue_id,
                    name=event.venue.name,
                    street=event.venue.address,
                    city=event.venue.city,
                    country=target.default_country,
                    scraped_at=scraped_at,
                )
        return list(venues.values())

    @staticmethod
    def _update_progress(
        session: Optional[ScrapingSession],
        metrics: ScrapingMetrics,
        result: RawScrapedData,
    ):
        metrics.pages_scraped = result.pages_scraped
        metrics.events_scraped = len(result.events)
        metrics.venues_scraped = len(result.venues)
        if session is not None:
            session.progress.pages_processed = result.pages_scraped
            session.progress.events_found = len(result.events)


# ============================================
# Helpers
# ============================================

async def _text(element, selector: Optional[str]) -> Optional[str]:
    if not selector:
        return None
    child = await element.query_selector(selector)
    if child is None:
        return None
    text = await child.text_content()
    if text is None:
        return None
    text = text.strip()
    return text or None


async def _attr(element, selector: Optional[str], name: str) -> Optional[str]:
    if not selector:
        return None
    child = await element.query_selector(selector)
    if child is None:
        return None
    value = await child.get_attribute(name)
    return value.strip() if value else None


def event_id(event_url: Optional[str], title: str, date_text: Optional[str], source: str) -> str:
    """Stable id: the id embedded in the URL, else a content hash"""
    if event_url:
        path = urlparse(event_url).path
        for pattern in EVENT_ID_PATTERNS:
            match = pattern.search(path)
            if match:
                return match.group(1)
    key = f"{source}|{event_url or ''}|{title}|{date_text or ''}"
    return hashlib.md5(key.encode('utf-8')).hexdigest()[:16]


def venue_external_id(name: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '_', name.lower()).strip('_')
    return f"venue_{slug}"


def keyword_tags(title: str, description: Optional[str]) -> List[str]:
    text = f"{title} {description or ''}".lower()
    return [k for k in TAG_KEYWORDS if re.search(rf'\b{k}\b', text)]


def with_query_param(url: str, name: str, value: str) -> str:
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query[name] = value
    return urlunparse(parts._replace(query=urlencode(query)))


def apply_details(event: RawEventData, details: Dict[str, Optional[str]]):
    """Merge detail-page fields into a listing record"""
    if details.get('description'):
        event.description = details['description']
    if details.get('end'):
        event.date_time.end = details['end']
    if details.get('category'):
        event.categories.append(details['category'])
    if details.get('age_restriction'):
        event.age_restriction = details['age_restriction']
    if details.get('capacity'):
        digits = re.sub(r'\D', '', details['capacity'])
        if digits:
            event.capacity = int(digits)
    if details.get('organizer'):
        event.organizer = event.organizer or RawOrganizer()
        event.organizer.name = details['organizer']
    if details.get('organizer_url'):
        event.organizer = event.organizer or RawOrganizer()
        event.organizer.url = details['organizer_url']
    if event.venue is not None:
        if details.get('venue_address'):
            event.venue.address = details['venue_address']
        if details.get('venue_city'):
            event.venue.city = details['venue_city']
