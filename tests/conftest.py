"""
Shared fixtures: an in-memory page renderer, a controllable clock and
sample targets. Nothing here touches the network or a real browser.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

import pytest

from harvester.scraper.config import ScraperConfig
from harvester.scraper.models import (
    RawDateTime,
    RawEventData,
    RawPricing,
    RawScrapedData,
    RawVenueData,
    RawVenueRef,
    ScrapeTarget,
)


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeElement:
    def __init__(
        self,
        text: Optional[str] = None,
        attrs: Optional[Dict[str, str]] = None,
        children: Optional[Dict[str, Union["FakeElement", List["FakeElement"]]]] = None,
    ):
        self.text = text
        self.attrs = attrs or {}
        self.children = children or {}
        self.clicks = 0

    async def query_selector(self, selector: str):
        found = self.children.get(selector)
        if isinstance(found, list):
            return found[0] if found else None
        return found

    async def query_selector_all(self, selector: str):
        found = self.children.get(selector)
        if found is None:
            return []
        return list(found) if isinstance(found, list) else [found]

    async def text_content(self):
        return self.text

    async def get_attribute(self, name: str):
        return self.attrs.get(name)

    async def click(self):
        self.clicks += 1


class FakeDocument:
    def __init__(self, root: FakeElement, status: int = 200, headers: Optional[Dict[str, str]] = None):
        self.root = root
        self.status = status
        self.headers = headers or {}


class FakeResponse:
    def __init__(self, status: int, headers: Dict[str, str]):
        self.status = status
        self.headers = headers


class FakeSite:
    """URL -> document (or exception raised by goto)"""

    def __init__(self, pages: Optional[Dict[str, Union[FakeDocument, Exception]]] = None):
        self.pages = dict(pages or {})
        self.visits: List[str] = []


class FakePage:
    def __init__(self, site: FakeSite):
        self.site = site
        self.url = "about:blank"
        self.document: Optional[FakeDocument] = None
        self.closed = False
        self.filled: Dict[str, str] = {}
        self.clicked: List[str] = []
        self.routes = []
        self.listeners = {}
        self.default_timeout = None
        self.navigation_timeout = None

    def set_default_timeout(self, ms):
        self.default_timeout = ms

    def set_default_navigation_timeout(self, ms):
        self.navigation_timeout = ms

    def on(self, event, callback):
        self.listeners[event] = callback

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))

    async def goto(self, url: str, wait_until: Optional[str] = None):
        self.site.visits.append(url)
        entry = self.site.pages.get(url)
        if entry is None:
            raise ConnectionError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        if isinstance(entry, Exception):
            raise entry
        self.url = url
        self.document = entry
        return FakeResponse(entry.status, entry.headers)

    def _root(self) -> FakeElement:
        return self.document.root if self.document else FakeElement()

    async def wait_for_selector(self, selector: str, timeout: Optional[float] = None):
        found = await self._root().query_selector(selector)
        if found is None:
            raise TimeoutError(f"Timeout {timeout}ms waiting for selector '{selector}'")
        return found

    async def query_selector(self, selector: str):
        return await self._root().query_selector(selector)

    async def query_selector_all(self, selector: str):
        return await self._root().query_selector_all(selector)

    async def click(self, selector: str):
        self.clicked.append(selector)

    async def fill(self, selector: str, value: str):
        self.filled[selector] = value

    async def evaluate(self, script: str):
        return None

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, site: FakeSite, options: Dict):
        self.site = site
        self.options = options
        self.pages: List[FakePage] = []
        self.init_scripts: List[str] = []
        self.closed = False

    async def add_init_script(self, script: str):
        self.init_scripts.append(script)

    async def new_page(self):
        page = FakePage(self.site)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, site: FakeSite):
        self.site = site
        self.contexts: List[FakeContext] = []
        self.closed = False

    async def new_context(self, **options):
        context = FakeContext(self.site, options)
        self.contexts.append(context)
        return context

    def is_connected(self) -> bool:
        return not self.closed

    async def close(self):
        self.closed = True


class FakeLauncher:
    def __init__(self, site: FakeSite):
        self.site = site
        self.launches = 0
        self.stops = 0
        self.browsers: List[FakeBrowser] = []

    async def launch(self):
        self.launches += 1
        browser = FakeBrowser(self.site)
        self.browsers.append(browser)
        return browser

    async def stop(self):
        self.stops += 1


# ============================================
# Listing pages
# ============================================

LISTING_URL = "https://events.example.com/toronto"

TARGET_DATA = {
    'id': 'example_events',
    'name': 'Example Events',
    'source': 'generic',
    'base_url': LISTING_URL,
    'selectors': {
        'container': '.events',
        'item': '.event',
        'title': '.title',
        'date': '.date',
        'venue': '.venue',
        'price': '.price',
        'link': 'a',
    },
    'default_city': 'Toronto',
    'timezone': 'America/Toronto',
}


def event_card(
    title: Optional[str],
    date: Optional[str] = "2026-11-20 19:00",
    venue: Optional[str] = "The Rex",
    price: Optional[str] = "$20 - $50",
    href: Optional[str] = None,
) -> FakeElement:
    children = {}
    if title is not None:
        children['.title'] = FakeElement(text=title)
    if date is not None:
        children['.date'] = FakeElement(text=date)
    if venue is not None:
        children['.venue'] = FakeElement(text=venue)
    if price is not None:
        children['.price'] = FakeElement(text=price)
    if href is not None:
        children['a'] = FakeElement(attrs={'href': href})
    return FakeElement(children=children)


def listing_document(cards: List[FakeElement], status: int = 200, extra: Optional[Dict] = None) -> FakeDocument:
    container = FakeElement(children={'.event': cards})
    children = {'.events': container, '.event': cards}
    children.update(extra or {})
    return FakeDocument(FakeElement(children=children), status=status)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_config():
    """No inter-request delay, one retry"""
    return ScraperConfig.from_dict({
        'rate_limit': {'delay_between_requests': 0.0},
        'retry': {'max_retries': 1, 'base_delay': 0.01, 'max_delay': 0.05},
    })


@pytest.fixture
def target():
    return ScrapeTarget.from_dict(TARGET_DATA)


@pytest.fixture
def site():
    return FakeSite({
        LISTING_URL: listing_document([
            event_card("Jazz Night", href="/events/1234567"),
            event_card("Tech Meetup", venue="Hub Space", price="Free", href="/events/7654321"),
        ]),
    })


@pytest.fixture
def launcher(site):
    return FakeLauncher(site)


def raw_event(
    external_id: str = "evt-1",
    title: Optional[str] = "Jazz Night",
    start: Optional[str] = "2026-11-20 19:00",
    venue: Optional[str] = "The Rex",
    price_text: Optional[str] = "$20 - $50",
    **kwargs,
) -> RawEventData:
    return RawEventData(
        external_id=external_id,
        title=title,
        date_time=RawDateTime(start=start, timezone="America/Toronto"),
        venue=RawVenueRef(name=venue, city="Toronto") if venue else None,
        pricing=RawPricing(price_text=price_text),
        scraped_at=kwargs.pop('scraped_at', datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)),
        **kwargs,
    )


@pytest.fixture
def raw_batch():
    scraped_at = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    return RawScrapedData(
        target_id='example_events',
        source='generic',
        url=LISTING_URL,
        events=[
            raw_event("evt-1", "Jazz Night", categories=["Live Music"]),
            raw_event("evt-2", "Startup Pitch Night", venue="Hub Space", price_text="Free",
                      categories=["Technology"]),
            raw_event("evt-3", "", venue="The Rex"),
        ],
        venues=[
            RawVenueData(external_id="venue_the_rex", name="The Rex", city="Toronto", scraped_at=scraped_at),
            RawVenueData(external_id="venue_hub_space", name="Hub Space", city="Toronto", scraped_at=scraped_at),
        ],
        scraped_at=scraped_at,
    )
