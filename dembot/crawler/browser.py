"""
Playwright browser launcher for DemBot.

Owns one Chromium process and hands out isolated, pre-configured browser
contexts. Each session category gets its own context, so cookies from one
login never leak into another.

Features:
- Lazy Playwright/Chromium start
- Consistent user agent, locale headers and timezone per context
- Resource blocking (heavy resource types, third-party noise)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from dembot.utils.logging import get_logger

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Playwright, Route

    from dembot.utils.config import BrowserConfig, Settings

logger = get_logger(__name__)

# First-party request types that are never blocked on third-party hosts
THIRD_PARTY_ALLOWED_TYPES = frozenset({"document", "xhr", "fetch", "script"})


class BrowserLauncher:
    """Starts Chromium on demand and creates configured contexts.

    Example:
        launcher = BrowserLauncher(settings.browser, base_url="https://powerplayusa.net")
        context = await launcher.new_context()
        page = await context.new_page()
        ...
        await launcher.close()

    Args:
        config: Browser configuration section.
        base_url: Site base URL; its host is the first party for blocking.
        nav_timeout: Default navigation timeout in seconds.
    """

    def __init__(
        self,
        config: BrowserConfig,
        base_url: str,
        nav_timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._first_party_host = urlparse(base_url).hostname or ""
        self._nav_timeout = nav_timeout
        self._blocked_types = frozenset(t.strip().lower() for t in config.block_resource_types)
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> BrowserLauncher:
        return cls(
            settings.browser,
            base_url=settings.session.base_url,
            nav_timeout=settings.session.nav_timeout_seconds,
        )

    async def start(self) -> None:
        """Start Playwright and launch Chromium if not running."""
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return

            if self._playwright is None:
                from playwright.async_api import async_playwright

                self._playwright = await async_playwright().start()
                logger.info("Playwright initialized")

            self._browser = await self._playwright.chromium.launch(
                headless=self._config.headless,
                args=[
                    "--disable-background-timer-throttling",
                    "--disable-backgrounding-occluded-windows",
                    "--disable-renderer-backgrounding",
                ],
            )
            logger.info("Chromium launched", headless=self._config.headless)

    def is_connected(self) -> bool:
        """Whether the Chromium process is up and connected."""
        return self._browser is not None and self._browser.is_connected()

    async def new_context(self) -> BrowserContext:
        """Create a fresh, isolated browser context.

        Returns:
            Configured BrowserContext with resource blocking installed.
        """
        await self.start()
        assert self._browser is not None  # Guaranteed by start()

        context = await self._browser.new_context(
            user_agent=self._config.user_agent,
            locale=self._config.accept_language.split(",")[0],
            timezone_id=self._config.timezone_id,
            viewport={
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
            extra_http_headers={"Accept-Language": self._config.accept_language},
        )
        context.set_default_navigation_timeout(self._nav_timeout * 1000)
        await self._setup_blocking(context)

        logger.debug("Browser context created")
        return context

    async def _setup_blocking(self, context: BrowserContext) -> None:
        """Abort heavy resource types and third-party noise."""
        if not self._blocked_types and not self._config.block_third_party:
            return

        async def handle_route(route: Route) -> None:
            request = route.request
            if self.should_block(request.resource_type, request.url):
                await route.abort()
            else:
                await route.continue_()

        await context.route("**/*", handle_route)

    def should_block(self, resource_type: str, url: str) -> bool:
        """Decide whether a request is blocked.

        Args:
            resource_type: Playwright resource type (document, image, ...).
            url: Request URL.

        Returns:
            True if the request should be aborted.
        """
        resource_type = (resource_type or "").lower()
        if resource_type in self._blocked_types:
            return True
        if self._config.block_third_party and self._first_party_host:
            host = urlparse(url).hostname or ""
            is_third_party = bool(host) and host != self._first_party_host
            if is_third_party and resource_type not in THIRD_PARTY_ALLOWED_TYPES:
                return True
        return False

    async def close(self) -> None:
        """Close Chromium and stop Playwright."""
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except Exception as e:
                    logger.debug("Error closing browser", error=str(e))
                self._browser = None

            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.debug("Error stopping Playwright", error=str(e))
                self._playwright = None

        logger.info("Browser launcher closed")

    def get_stats(self) -> dict[str, Any]:
        return {
            "connected": self.is_connected(),
            "headless": self._config.headless,
            "contexts": len(self._browser.contexts) if self._browser is not None else 0,
        }
