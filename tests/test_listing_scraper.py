"""Tests for the selector-driven listing scraper"""

from dataclasses import replace

import pytest

from harvester.scraper.errors import (
    BlockedError,
    CaptchaError,
    EmptyResultsError,
    NetworkError,
    ParsingError,
    RateLimitError,
)
from harvester.scraper.models import PaginationConfig, PaginationType, ScrapingSession
from harvester.scraper.scrapers.listing_scraper import (
    EventListingScraper,
    event_id,
    keyword_tags,
    venue_external_id,
    with_query_param,
)

from conftest import (
    LISTING_URL,
    FakeDocument,
    FakeElement,
    event_card,
    listing_document,
)


@pytest.fixture
def scraper(fast_config, launcher, clock):
    return EventListingScraper("example_events", fast_config, launcher=launcher, sleep=clock.sleep)


class TestExtraction:
    async def test_extracts_events_and_venues(self, scraper, target, site):
        """Both cards become events with ids from their URLs"""
        async with scraper:
            result = await scraper.scrape(target)

        assert [e.external_id for e in result.events] == ['1234567', '7654321']
        jazz = result.events[0]
        assert jazz.title == 'Jazz Night'
        assert jazz.event_url == 'https://events.example.com/events/1234567'
        assert jazz.date_time.start == '2026-11-20 19:00'
        assert jazz.date_time.timezone == 'America/Toronto'
        assert jazz.pricing.price_text == '$20 - $50'
        assert jazz.venue.city == 'Toronto'
        assert [v.external_id for v in result.venues] == ['venue_the_rex', 'venue_hub_space']
        assert result.pages_scraped == 1
        assert site.visits == [LISTING_URL]

    async def test_cards_without_title_are_skipped(self, scraper, target, site):
        """Untitled cards never become events"""
        site.pages[LISTING_URL] = listing_document([
            event_card(None, href="/events/1111111"),
            event_card("Real Event", href="/events/2222222"),
        ])
        async with scraper:
            result = await scraper.scrape(target)
        assert [e.title for e in result.events] == ['Real Event']

    async def test_session_progress_and_metrics(self, scraper, target):
        """Progress and metrics are attached to the session"""
        session = ScrapingSession(job_id='job', target_id=target.id, source=target.source)
        async with scraper:
            await scraper.scrape(target, session)

        assert session.progress.events_found == 2
        assert session.progress.pages_processed == 1
        assert session.metrics.events_scraped == 2
        assert session.metrics.requests_made == 1
        assert session.metrics.success_rate == 1.0

    async def test_resources_released_after_destroy(self, scraper, target, launcher):
        """Leaving the context closes the browser and stops the driver"""
        async with scraper:
            await scraper.scrape(target)
        assert launcher.browsers[0].closed
        assert launcher.stops == 1

    async def test_detail_enrichment(self, scraper, target, site):
        """Detail pages fill in descriptions; failing details are ignored"""
        site.pages['https://events.example.com/events/1234567'] = FakeDocument(
            FakeElement(children={'.desc': FakeElement(text='A long evening of jazz')})
        )
        detailed = replace(target, detail_selectors={'description': '.desc'})

        async with scraper:
            result = await scraper.scrape(detailed)

        assert result.events[0].description == 'A long evening of jazz'
        assert result.events[1].description is None


class TestFailures:
    async def test_forbidden_is_blocked(self, scraper, target, site):
        """HTTP 403 raises a blocked error"""
        site.pages[LISTING_URL] = listing_document([], status=403)
        async with scraper:
            with pytest.raises(BlockedError):
                await scraper.scrape(target)

    async def test_too_many_requests_is_rate_limited(self, scraper, target, site):
        """HTTP 429 raises a rate limit error carrying Retry-After"""
        document = listing_document([], status=429)
        document.headers = {'retry-after': '5'}
        site.pages[LISTING_URL] = document

        async with scraper:
            with pytest.raises(RateLimitError) as exc_info:
                await scraper.scrape(target)
        assert exc_info.value.retry_after == 5.0

    async def test_server_error_is_network(self, scraper, target, site):
        """Other error statuses are network errors"""
        site.pages[LISTING_URL] = listing_document([], status=503)
        async with scraper:
            with pytest.raises(NetworkError):
                await scraper.scrape(target)

    async def test_empty_listing(self, scraper, target, site):
        """A rendered container with no items is empty_results"""
        site.pages[LISTING_URL] = listing_document([])
        async with scraper:
            with pytest.raises(EmptyResultsError) as exc_info:
                await scraper.scrape(target)
        assert exc_info.value.selector == '.event'

    async def test_missing_container(self, scraper, target, site):
        """A page without the listing container is a parsing error"""
        site.pages[LISTING_URL] = FakeDocument(FakeElement(children={}))
        async with scraper:
            with pytest.raises(ParsingError) as exc_info:
                await scraper.scrape(target)
        assert not isinstance(exc_info.value, EmptyResultsError)
        assert exc_info.value.selector == '.events'

    async def test_fallback_container(self, scraper, target, site):
        """A declared fallback container is used when the primary is absent"""
        cards = [event_card("Jazz Night", href="/events/1234567")]
        site.pages[LISTING_URL] = FakeDocument(FakeElement(children={
            'main': FakeElement(children={'.event': cards}),
        }))
        fallback_target = replace(
            target, selectors=replace(target.selectors, fallback_containers=('main',))
        )
        async with scraper:
            result = await scraper.scrape(fallback_target)
        assert len(result.events) == 1

    async def test_captcha_detected(self, scraper, target, site):
        """A visible captcha widget raises a captcha error"""
        site.pages[LISTING_URL] = listing_document(
            [event_card("Jazz Night")], extra={'.captcha': FakeElement()}
        )
        guarded = replace(target, captcha_selectors=('.captcha',))
        async with scraper:
            with pytest.raises(CaptchaError):
                await scraper.scrape(guarded)


class TestPagination:
    async def test_url_param_pagination(self, scraper, target, site, clock):
        """URL pagination follows ?page=N until max_pages"""
        site.pages[f"{LISTING_URL}?page=2"] = listing_document([
            event_card("Late Show", href="/events/3333333"),
        ])
        paged = replace(target, pagination=PaginationConfig(
            type=PaginationType.URL_PARAMS, param='page', max_pages=2,
        ))

        async with scraper:
            result = await scraper.scrape(paged)

        assert result.pages_scraped == 2
        assert [e.external_id for e in result.events] == ['1234567', '7654321', '3333333']

    async def test_failed_later_page_keeps_earlier_events(self, scraper, target, site):
        """A failure after page one ends pagination without losing events"""
        paged = replace(target, pagination=PaginationConfig(
            type=PaginationType.URL_PARAMS, param='page', max_pages=3,
        ))
        async with scraper:
            result = await scraper.scrape(paged)

        assert len(result.events) == 2
        assert result.pages_scraped == 1
        assert len(result.errors) == 1

    async def test_disabled_button_ends_pagination(self, scraper, target, site):
        """A disabled next button means there are no more pages"""
        site.pages[LISTING_URL] = listing_document(
            [event_card("Jazz Night", href="/events/1234567")],
            extra={'.next': FakeElement(attrs={'disabled': ''})},
        )
        paged = replace(target, pagination=PaginationConfig(
            type=PaginationType.BUTTON, selector='.next', max_pages=5,
        ))
        async with scraper:
            result = await scraper.scrape(paged)
        assert result.pages_scraped == 1


class TestHelpers:
    def test_event_id_from_url(self):
        """Numeric ids in listing URLs are used directly"""
        assert event_id("https://x.test/e/jazz-night-123456789", "Jazz", None, "eventbrite") == "123456789"
        assert event_id("https://x.test/events/42", "Jazz", None, "meetup") == "42"

    def test_event_id_hash_is_stable(self):
        """Without a URL id the hash depends only on content"""
        first = event_id(None, "Jazz", "Nov 20", "generic")
        assert first == event_id(None, "Jazz", "Nov 20", "generic")
        assert first != event_id(None, "Jazz", "Nov 21", "generic")

    def test_venue_external_id(self):
        assert venue_external_id("The Rex Hotel & Bar") == "venue_the_rex_hotel_bar"

    def test_keyword_tags(self):
        """Whole-word matches only"""
        assert keyword_tags("Live Jazz Concert", "with a DJ after") == ['concert', 'live', 'dj']
        assert keyword_tags("Artisan market", None) == []

    def test_with_query_param(self):
        assert with_query_param("https://x.test/a?q=1", "page", "3") == "https://x.test/a?q=1&page=3"
