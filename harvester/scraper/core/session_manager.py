"""
Renderer Session Management with Anti-Detection Features

Features:
- One browser per scraper, one context + page per session
- User-agent / viewport rotation
- Stealth init script hiding automation markers
- Request interception: heavy resources aborted, navigations rate limited
- 403 / 429 response tracking feeding the rate limiter
- max_sessions enforced: callers wait for a free slot
- Guaranteed cleanup of pages and contexts
"""

import time
import random
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Optional, List, Any, Tuple

from playwright.async_api import async_playwright

from ..config import ScraperConfig
from ..errors import ScrapeTimeoutError
from .rate_limiter import TargetRateLimiter

logger = logging.getLogger(__name__)


# Real browser user agents
USER_AGENTS = {
    'chrome_windows': [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    ],
    'chrome_mac': [
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    ],
    'edge': [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36 Edg/125.0.0.0",
    ],
}

# Chromium only renders as Chromium-family browsers convincingly
BROWSER_WEIGHTS = [
    ('chrome_windows', 0.6),
    ('chrome_mac', 0.25),
    ('edge', 0.15),
]

VIEWPORTS = [
    (1920, 1080),
    (1536, 864),
    (1440, 900),
    (1366, 768),
]

LAUNCH_ARGS = [
    '--disable-blink-features=AutomationControlled',
    '--disable-dev-shm-usage',
    '--no-sandbox',
]

STEALTH_SCRIPT = """
    // Overwrite the 'webdriver' property
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined,
    });

    // Overwrite plugins
    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5],
    });

    // Overwrite languages
    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en'],
    });

    // Chrome runtime
    window.chrome = {
        runtime: {},
    };

    // Permissions
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications' ?
            Promise.resolve({ state: Notification.permission }) :
            originalQuery(parameters)
    );
"""


class PlaywrightLauncher:
    """Starts Playwright and launches Chromium"""

    def __init__(self, headless: bool = True, args: Optional[List[str]] = None):
        self.headless = headless
        self.args = args or LAUNCH_ARGS
        self._playwright = None

    async def launch(self):
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=self.headless, args=self.args)

    async def stop(self):
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


@dataclass
class BrowserSession:
    """A renderer context with a consistent identity"""
    id: str
    context: Any
    page: Any
    user_agent: str
    viewport: Tuple[int, int]
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    auxiliary_pages: List[Any] = field(default_factory=list)

    def touch(self):
        self.last_used = time.time()

    @property
    def stats(self) -> Dict:
        return {
            'session_id': self.id,
            'user_agent': self.user_agent[:50] + '...',
            'viewport': f"{self.viewport[0]}x{self.viewport[1]}",
            'age_seconds': int(time.time() - self.created_at),
            'auxiliary_pages': len(self.auxiliary_pages),
        }


class SessionManager:
    """
    Owns the renderer sessions of one scraper instance.
    """

    def __init__(
        self,
        target_id: str,
        config: ScraperConfig,
        rate_limiter: TargetRateLimiter,
        launcher=None,
    ):
        self.target_id = target_id
        self.config = config
        self.rate_limiter = rate_limiter
        self.launcher = launcher or PlaywrightLauncher(headless=config.browser.headless)

        self.browser = None
        self.sessions: Dict[str, BrowserSession] = {}
        self._session_counter = 0
        # Slots claimed by create_session calls still opening their context
        self._reserved = 0
        self._slot_freed: Optional[asyncio.Condition] = None
        self.stats = {
            'sessions_created': 0,
            'sessions_destroyed': 0,
            'navigations': 0,
            'resources_blocked': 0,
            'blocked_responses': 0,
            'rate_limited_responses': 0,
            'cleanup_errors': 0,
        }

    @property
    def is_initialized(self) -> bool:
        return self.browser is not None

    async def initialize(self):
        """Launch the renderer (idempotent)"""
        if self.browser is not None:
            return
        self.browser = await self.launcher.launch()
        logger.info(f"[{self.target_id}] Browser launched")

    def _pick_identity(self) -> Tuple[str, Tuple[int, int]]:
        browser_config = self.config.browser
        fixed_viewport = (browser_config.viewport_width, browser_config.viewport_height)

        if browser_config.user_agent:
            return browser_config.user_agent, fixed_viewport
        if not browser_config.rotate_fingerprint:
            return USER_AGENTS['chrome_windows'][0], fixed_viewport

        browser_type = random.choices(
            [b[0] for b in BROWSER_WEIGHTS],
            weights=[b[1] for b in BROWSER_WEIGHTS]
        )[0]
        return random.choice(USER_AGENTS[browser_type]), random.choice(VIEWPORTS)

    async def create_session(self) -> BrowserSession:
        """Open a context + page with identity, stealth and interception"""
        if not self.is_initialized:
            raise RuntimeError("SessionManager not initialized")

        await self._acquire_slot()
        try:
            session = await self._open_session()
        except BaseException:
            self._reserved -= 1
            await self._release_slot()
            raise
        self._reserved -= 1
        return session

    async def _acquire_slot(self):
        """
        Claim one of max_sessions slots, waiting up to the navigation
        timeout for an open session to be destroyed.

        Raises:
            ScrapeTimeoutError: if no slot frees up in time
        """
        if self._slot_freed is None:
            self._slot_freed = asyncio.Condition()
        limit = self.config.max_sessions

        def has_slot() -> bool:
            return len(self.sessions) + self._reserved < limit

        async with self._slot_freed:
            if not has_slot():
                logger.warning(
                    f"[{self.target_id}] {len(self.sessions)} sessions open "
                    f"(max {limit}), waiting for one to close"
                )
                timeout = self.config.timeouts.navigation
                try:
                    await asyncio.wait_for(self._slot_freed.wait_for(has_slot), timeout=timeout)
                except asyncio.TimeoutError:
                    raise ScrapeTimeoutError(
                        f"No renderer session free within {timeout:.0f}s (max_sessions {limit})",
                        details={'max_sessions': limit, 'open_sessions': len(self.sessions)},
                    ) from None
            self._reserved += 1

    async def _release_slot(self):
        if self._slot_freed is None:
            return
        async with self._slot_freed:
            self._slot_freed.notify_all()

    async def _open_session(self) -> BrowserSession:
        self._session_counter += 1
        session_id = f"{self.target_id}_{self._session_counter}_{int(time.time())}"
        user_agent, viewport = self._pick_identity()
        browser_config = self.config.browser

        context = await self.browser.new_context(
            viewport={'width': viewport[0], 'height': viewport[1]},
            user_agent=user_agent,
            locale=browser_config.locale,
            timezone_id=browser_config.timezone,
            extra_http_headers={'Accept-Language': f"{browser_config.locale},en;q=0.9"},
        )
        try:
            if self.config.use_stealth_mode:
                await context.add_init_script(STEALTH_SCRIPT)

            page = await context.new_page()
            self._prepare_page(page)
            await page.route("**/*", self._handle_route)
        except Exception:
            await self._close_quietly(context, "context")
            raise

        session = BrowserSession(
            id=session_id,
            context=context,
            page=page,
            user_agent=user_agent,
            viewport=viewport,
        )
        self.sessions[session_id] = session
        self.stats['sessions_created'] += 1
        logger.debug(f"[{self.target_id}] Created session {session_id} ({user_agent[:40]}...)")
        return session

    def _prepare_page(self, page):
        timeouts = self.config.timeouts
        page.set_default_timeout(timeouts.action * 1000)
        page.set_default_navigation_timeout(timeouts.navigation * 1000)
        page.on("response", self._on_response)

    async def _handle_route(self, route):
        """Abort heavy resources; hold navigations until the rate limiter allows"""
        request = route.request
        if request.resource_type in self.config.blocked_resource_types:
            self.stats['resources_blocked'] += 1
            await route.abort()
            return

        if request.is_navigation_request():
            self.stats['navigations'] += 1
            await self.rate_limiter.wait_until_allowed(self.target_id)

        await route.continue_()

    def _on_response(self, response):
        if response.request.resource_type != "document":
            return

        if response.status == 429:
            self.stats['rate_limited_responses'] += 1
            retry_after = parse_retry_after(response.headers.get('retry-after'))
            if retry_after is not None:
                self.rate_limiter.apply_retry_after(self.target_id, retry_after)
            logger.warning(f"[{self.target_id}] 429 from {response.url}")
        elif response.status == 403:
            self.stats['blocked_responses'] += 1
            logger.warning(f"[{self.target_id}] 403 from {response.url}")

    def get_session(self, session_id: str) -> Optional[BrowserSession]:
        return self.sessions.get(session_id)

    async def open_auxiliary_page(self, session_id: str):
        """Extra page in the session's context (detail enrichment)"""
        session = self.sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        page = await session.context.new_page()
        self._prepare_page(page)
        await page.route("**/*", self._handle_route)
        session.auxiliary_pages.append(page)
        session.touch()
        return page

    async def close_auxiliary_page(self, session_id: str, page):
        session = self.sessions.get(session_id)
        if session is not None and page in session.auxiliary_pages:
            session.auxiliary_pages.remove(page)
        await self._close_quietly(page, "auxiliary page")

    async def destroy_session(self, session_id: str):
        """Close everything the session holds; errors are logged, not raised"""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return

        for page in list(session.auxiliary_pages):
            await self._close_quietly(page, "auxiliary page")
        session.auxiliary_pages.clear()
        await self._close_quietly(session.page, "page")
        await self._close_quietly(session.context, "context")

        self.stats['sessions_destroyed'] += 1
        logger.debug(f"[{self.target_id}] Destroyed session {session_id}")
        await self._release_slot()

    async def rotate_session(self, session_id: str) -> BrowserSession:
        """Replace a session with a fresh identity"""
        await self.destroy_session(session_id)
        session = await self.create_session()
        logger.info(f"[{self.target_id}] Rotated session {session_id} -> {session.id}")
        return session

    @asynccontextmanager
    async def session(self):
        """Session that is destroyed on every exit path"""
        browser_session = await self.create_session()
        try:
            yield browser_session
        finally:
            await self.destroy_session(browser_session.id)

    async def _close_quietly(self, resource, label: str):
        try:
            await resource.close()
        except Exception as e:
            self.stats['cleanup_errors'] += 1
            logger.warning(f"[{self.target_id}] Failed to close {label}: {e}")

    def health_issues(self) -> List[str]:
        """Degraded-health signals; empty when healthy"""
        issues = []
        if not self.is_initialized:
            issues.append("Session manager not initialized")
        elif not self.browser.is_connected():
            issues.append("Browser not connected")
        if self.rate_limiter.is_limited(self.target_id):
            issues.append("Rate limited")
        if len(self.sessions) >= self.config.max_sessions:
            issues.append(f"All {self.config.max_sessions} sessions in use")
        return issues

    @property
    def active_session_count(self) -> int:
        return len(self.sessions)

    def get_all_stats(self) -> Dict:
        return {
            **self.stats,
            'active_sessions': len(self.sessions),
            'sessions': {sid: s.stats for sid, s in self.sessions.items()},
        }

    async def close(self):
        """Release sessions, then the browser, then the driver"""
        for session_id in list(self.sessions):
            await self.destroy_session(session_id)

        if self.browser is not None:
            await self._close_quietly(self.browser, "browser")
            self.browser = None

        try:
            await self.launcher.stop()
        except Exception as e:
            self.stats['cleanup_errors'] += 1
            logger.warning(f"[{self.target_id}] Failed to stop renderer driver: {e}")

        logger.info(f"[{self.target_id}] Session manager closed")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header in seconds (HTTP-date values are ignored)"""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
