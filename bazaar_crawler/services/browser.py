import asyncio
import logging
from pathlib import Path

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright

from bazaar_crawler.config import settings

logger = logging.getLogger(__name__)

# Ad-serving / tracking domains to block. Saves bandwidth and keeps
# third-party scripts from tripping the challenge heuristics.
AD_SERVING_DOMAINS = frozenset(
    {
        "doubleclick.net",
        "googlesyndication.com",
        "googletagservices.com",
        "googletagmanager.com",
        "google-analytics.com",
        "adnxs.com",
        "facebook.net",
        "criteo.com",
        "taboola.com",
        "outbrain.com",
        "hotjar.com",
        "scorecardresearch.com",
    }
)

# Resource types never needed to read the listing markup
BLOCKED_RESOURCE_TYPES = frozenset({"media", "font"})


async def _setup_route_blocking(context: BrowserContext):
    """Block ad/tracker domains and heavy resource types on a context."""

    async def _route_handler(route, request):
        url = request.url
        try:
            after_scheme = url.split("//", 1)[1]
            hostname = after_scheme.split("/", 1)[0].split(":")[0].lower()
        except (IndexError, ValueError):
            await route.continue_()
            return

        for domain in AD_SERVING_DOMAINS:
            if domain in hostname:
                await route.abort()
                return

        if request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
            return

        await route.continue_()

    await context.route("**/*", _route_handler)


class PlaywrightLauncher:
    """Session launch provider backed by Playwright persistent contexts.

    Each pool name gets its own ``user_data_dir`` under
    ``settings.SESSION_DIR`` so cookies earned by clearing the challenge
    survive restarts and never leak between pools. A session is one page
    (tab) inside the pool's context.

    A persistent context has no ``Browser`` object to kill, so every pool
    also gets its own Playwright driver. Stopping that driver takes the
    pool's browser down with it and leaves the other pools running.
    """

    _CHROMIUM_ARGS = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-blink-features=AutomationControlled",
        "--disable-infobars",
        "--window-size=1366,768",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-hang-monitor",
        "--disable-background-networking",
        "--disable-sync",
    ]

    _CLOSE_TIMEOUT = 10.0

    def __init__(self, session_dir: Path | str | None = None, close_timeout: float | None = None):
        self.session_dir = Path(session_dir or settings.SESSION_DIR)
        self.close_timeout = self._CLOSE_TIMEOUT if close_timeout is None else close_timeout
        self._drivers: dict[str, Playwright] = {}
        self._contexts: dict[str, BrowserContext] = {}
        self._loop = None
        self._init_lock: asyncio.Lock | None = None

    def _get_init_lock(self) -> asyncio.Lock:
        """Get or create an asyncio.Lock bound to the current event loop."""
        current_loop = asyncio.get_running_loop()
        if self._init_lock is None or self._loop is not current_loop:
            self._init_lock = asyncio.Lock()
            self._loop = current_loop
        return self._init_lock

    async def launch(self, pool_name: str, headless: bool) -> None:
        async with self._get_init_lock():
            if pool_name in self._contexts:
                return  # Already launched by another coroutine
            driver = self._drivers.get(pool_name)
            if driver is None:
                driver = await async_playwright().start()
                self._drivers[pool_name] = driver

            profile_dir = self.session_dir / pool_name
            profile_dir.mkdir(parents=True, exist_ok=True)
            try:
                context = await driver.chromium.launch_persistent_context(
                    user_data_dir=str(profile_dir),
                    headless=headless,
                    args=self._CHROMIUM_ARGS,
                    viewport={"width": 1366, "height": 768},
                    locale="pt-BR",
                    timezone_id="America/Sao_Paulo",
                    ignore_https_errors=True,
                )
            except Exception:
                await self._stop_driver(pool_name)
                raise
            context.set_default_navigation_timeout(settings.NAVIGATION_TIMEOUT_MS)
            await _setup_route_blocking(context)
            self._contexts[pool_name] = context
            logger.info("Launched browser context for pool %s (%s)", pool_name, profile_dir)

    async def new_session(self, pool_name: str) -> Page:
        context = self._contexts.get(pool_name)
        if context is None:
            raise RuntimeError(f"Pool {pool_name} has no browser context")
        return await context.new_page()

    async def close_session(self, pool_name: str, session: Page) -> None:
        try:
            await session.close()
        except Exception as e:
            if not self._is_browser_closed_error(e):
                raise

    async def shutdown(self, pool_name: str) -> None:
        context = self._contexts.pop(pool_name, None)
        if context is not None:
            try:
                await asyncio.wait_for(context.close(), timeout=self.close_timeout)
            except asyncio.TimeoutError:
                logger.warning("Context close hung for pool %s, killing browser", pool_name)
            except Exception as e:
                if not self._is_browser_closed_error(e):
                    await self._stop_driver(pool_name)
                    raise
            logger.info("Browser context for pool %s shut down", pool_name)
        await self._stop_driver(pool_name)

    async def probe(self, session: Page) -> str:
        return await session.title()

    async def goto(self, session: Page, url: str, timeout_ms: int) -> None:
        await session.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

    async def read(self, session: Page) -> tuple[str, str]:
        return await session.title(), await session.content()

    async def _stop_driver(self, pool_name: str) -> None:
        """Stop the pool's Playwright driver, which terminates its browser."""
        driver = self._drivers.pop(pool_name, None)
        if driver is None:
            return
        try:
            await asyncio.wait_for(driver.stop(), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            logger.error("Playwright driver for pool %s did not stop", pool_name)
        except Exception as e:
            logger.debug("Stopping Playwright driver for pool %s raised: %s", pool_name, e)

    @staticmethod
    def _is_browser_closed_error(exc: Exception) -> bool:
        """Check if an exception indicates the browser process has died."""
        msg = str(exc).lower()
        return any(
            phrase in msg
            for phrase in [
                "browser has been closed",
                "target page, context or browser has been closed",
                "connection closed",
                "browser closed",
            ]
        )
