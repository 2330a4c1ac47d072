"""
Authenticated session pool.

Design:
- One live session (an authenticated BrowserContext) per category
- A healthy session is reused; an unhealthy one is replaced and closed
- Re-authentication is single-flight: concurrent callers for the same
  category await one shared asyncio.Task, so only one login flow runs
- Login failures surface as AuthError and are not retried here
- navigate() opens a short-lived page inside the session context, so
  concurrent workers can share one session safely
- Idle sessions are closed by a periodic sweep; the least-recently-used
  session is closed when ``max_sessions`` would be exceeded

Only the pool closes or mutates its sessions.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

from dembot.crawler.navigation import NavigationResult, is_login_url
from dembot.errors import AuthError, NavigationError
from dembot.utils.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from playwright.async_api import BrowserContext

    from dembot.crawler.login import LoginFlow
    from dembot.utils.config import Settings
    from dembot.utils.metrics import PerformanceMonitor

logger = get_logger(__name__)

DEFAULT_WAIT_UNTIL = "domcontentloaded"


class ContextFactory(Protocol):
    """What the pool needs from a browser launcher."""

    async def new_context(self) -> BrowserContext: ...

    def is_connected(self) -> bool: ...


@dataclass
class Session:
    """An authenticated browser context for one category.

    Attributes:
        handle: The authenticated BrowserContext.
        category: Logical category (e.g. "profile", "race").
        created_at: Creation time (epoch seconds).
        last_used_at: Last reuse or navigation time (epoch seconds).
        healthy: False once the pool has seen the session fail.
        html: Markup of the seed page loaded during authentication.
        final_url: URL of the seed page after redirects.
    """

    handle: BrowserContext
    category: str
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)
    healthy: bool = True
    html: str | None = None
    final_url: str | None = None

    def touch(self) -> None:
        """Update last used timestamp."""
        self.last_used_at = time.time()

    def idle_seconds(self, now: float | None = None) -> float:
        if now is None:
            now = time.time()
        return now - self.last_used_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "healthy": self.healthy,
            "final_url": self.final_url,
        }


class SessionPool:
    """Keeps one authenticated session per category.

    Example:
        pool = SessionPool(launcher, CookieLoginFlow.from_settings(settings))
        session = await pool.authenticate_session("profile", f"{base}/users/1")
        page = await pool.navigate(session, f"{base}/users/2", "networkidle")
        ...
        await pool.close_all()

    Args:
        browser: Factory for fresh browser contexts.
        login_flow: Authenticates a fresh context.
        max_sessions: Maximum live sessions across categories.
        max_idle: Seconds of inactivity after which a session is closed.
        cleanup_interval: Seconds between idle sweeps.
        nav_timeout: Navigation timeout in seconds.
        login_path: Path of the login page (redirects there mean logged out).
        monitor: Optional PerformanceMonitor receiving session events.
    """

    def __init__(
        self,
        browser: ContextFactory,
        login_flow: LoginFlow,
        *,
        max_sessions: int = 3,
        max_idle: float = 300.0,
        cleanup_interval: float = 60.0,
        nav_timeout: float = 30.0,
        login_path: str = "/login",
        monitor: PerformanceMonitor | None = None,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")

        self._browser = browser
        self._login_flow = login_flow
        self._max_sessions = max_sessions
        self._max_idle = max_idle
        self._cleanup_interval = cleanup_interval
        self._nav_timeout = nav_timeout
        self._login_path = login_path
        self._monitor = monitor

        self._sessions: dict[str, Session] = {}
        self._auth_tasks: dict[str, asyncio.Task[Session]] = {}
        self._cleanup_task: asyncio.Task[None] | None = None
        self._closed = False

        self._login_count = 0
        self._created = 0
        self._reused = 0
        self._closed_count = 0

        logger.debug("SessionPool initialized", max_sessions=max_sessions)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        browser: ContextFactory,
        login_flow: LoginFlow,
        monitor: PerformanceMonitor | None = None,
    ) -> SessionPool:
        session_settings = settings.session
        return cls(
            browser,
            login_flow,
            max_sessions=session_settings.max_sessions,
            max_idle=session_settings.max_idle_seconds,
            cleanup_interval=session_settings.cleanup_interval_seconds,
            nav_timeout=session_settings.nav_timeout_seconds,
            login_path=session_settings.login_path,
            monitor=monitor,
        )

    # =========================================================================
    # Authentication
    # =========================================================================

    async def authenticate_session(self, category: str, seed_url: str) -> Session:
        """Get a healthy authenticated session for ``category``.

        Reuses the live session when it passes the health check. Otherwise
        starts (or joins) the single in-flight login for the category.

        Args:
            category: Session category.
            seed_url: URL loaded by the login flow.

        Returns:
            Healthy Session.

        Raises:
            AuthError: If authentication failed.
            RuntimeError: If the pool is closed.
        """
        self._check_closed()

        session = self._sessions.get(category)
        if session is not None and self.is_healthy(session):
            session.touch()
            self._reused += 1
            self._track("reused")
            return session

        task = self._auth_tasks.get(category)
        if task is None:
            task = asyncio.create_task(self._authenticate(category, seed_url))
            self._auth_tasks[category] = task
            task.add_done_callback(lambda t, c=category: self._on_auth_done(c, t))
        else:
            logger.debug("Joining in-flight authentication", category=category)

        # A cancelled waiter must not cancel the login other callers share
        return await asyncio.shield(task)

    def _on_auth_done(self, category: str, task: asyncio.Task[Session]) -> None:
        if self._auth_tasks.get(category) is task:
            del self._auth_tasks[category]
        # Mark the exception retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _authenticate(self, category: str, seed_url: str) -> Session:
        """Run one login flow and install the resulting session."""
        self._login_count += 1
        logger.info("Authenticating session", category=category, url=seed_url)
        started = time.monotonic()

        try:
            context = await self._browser.new_context()
        except Exception as e:
            raise AuthError(
                f"Failed to create browser context: {e}",
                category=category,
                url=seed_url,
            ) from e

        try:
            seed = await self._login_flow(context, seed_url, DEFAULT_WAIT_UNTIL)
        except BaseException as e:
            await self._close_context(context, category)
            if isinstance(e, AuthError):
                e.category = category
                logger.warning("Authentication failed", category=category, **e.to_dict())
                raise
            if not isinstance(e, Exception):
                raise
            logger.warning("Authentication failed", category=category, error=str(e))
            raise AuthError(
                f"Login flow failed: {e}",
                category=category,
                url=seed_url,
            ) from e

        session = Session(
            handle=context,
            category=category,
            html=seed.html,
            final_url=seed.final_url,
        )
        context.on("close", lambda *_: self._mark_unhealthy(session))

        previous = self._sessions.pop(category, None)
        try:
            if previous is not None:
                await self._close(previous)
            await self._evict_for_capacity()
        except BaseException:
            # Cancelled by close_all() before the session was registered
            session.healthy = False
            await self._close_context(context, category)
            raise

        self._sessions[category] = session
        self._created += 1
        self._track("created")

        logger.info(
            "Session authenticated",
            category=category,
            final_url=seed.final_url,
            elapsed_ms=round((time.monotonic() - started) * 1000),
        )
        return session

    async def _evict_for_capacity(self) -> None:
        """Close least-recently-used sessions until one more fits."""
        while len(self._sessions) >= self._max_sessions:
            oldest = min(self._sessions.values(), key=lambda s: s.last_used_at)
            logger.info("Closing least recently used session", category=oldest.category)
            await self.close_session(oldest.category)

    # =========================================================================
    # Health and navigation
    # =========================================================================

    def is_healthy(self, session: Session) -> bool:
        """Whether ``session`` can still serve navigations.

        A session is healthy while the pool has not seen it fail, the browser
        process is connected and the session is still the live one for its
        category.
        """
        try:
            return (
                session.healthy
                and self._browser.is_connected()
                and self._sessions.get(session.category) is session
            )
        except Exception as e:
            logger.debug("Health check failed", category=session.category, error=str(e))
            return False

    async def navigate(
        self,
        session: Session,
        url: str,
        wait_until: str = DEFAULT_WAIT_UNTIL,
    ) -> NavigationResult:
        """Load ``url`` inside the session's authenticated context.

        The session stays open whatever the outcome.

        Args:
            session: Session from authenticate_session().
            url: Absolute URL to load.
            wait_until: Playwright wait condition (domcontentloaded, load, networkidle).

        Returns:
            NavigationResult with rendered HTML and the final URL.

        Raises:
            NavigationError: On timeout, HTTP error status, redirect to login,
                or when the session is no longer healthy.
        """
        if not self.is_healthy(session):
            raise NavigationError(
                "Session is not healthy",
                url=url,
                details={"category": session.category},
            )

        try:
            page = await session.handle.new_page()
        except Exception as e:
            self._mark_unhealthy(session)
            raise NavigationError(f"Cannot open page: {e}", url=url) from e

        try:
            try:
                response = await page.goto(
                    url,
                    wait_until=wait_until,
                    timeout=self._nav_timeout * 1000,
                )
            except Exception as e:
                raise NavigationError(f"Navigation failed: {e}", url=url) from e

            final_url = page.url
            status = response.status if response is not None else 200

            if is_login_url(final_url, self._login_path):
                self._mark_unhealthy(session)
                raise NavigationError(
                    "Redirected to login",
                    url=url,
                    status=status,
                    final_url=final_url,
                )
            if status >= 400:
                raise NavigationError(
                    f"HTTP {status}",
                    url=url,
                    status=status,
                    final_url=final_url,
                )

            html = await page.content()
            session.touch()
            return NavigationResult(html=html, final_url=final_url, status=status)
        finally:
            try:
                await page.close()
            except Exception as e:
                logger.debug("Error closing page", url=url, error=str(e))

    def _mark_unhealthy(self, session: Session) -> None:
        if session.healthy:
            session.healthy = False
            logger.info("Session marked unhealthy", category=session.category)

    # =========================================================================
    # Closing and idle cleanup
    # =========================================================================

    async def close_session(self, category: str) -> bool:
        """Close and forget the session for ``category``.

        Returns:
            True if a session was closed.
        """
        session = self._sessions.pop(category, None)
        if session is None:
            return False
        await self._close(session)
        return True

    async def _close(self, session: Session) -> None:
        session.healthy = False
        await self._close_context(session.handle, session.category)
        self._closed_count += 1
        self._track("closed")
        logger.debug("Session closed", category=session.category)

    async def _close_context(self, context: BrowserContext, category: str) -> None:
        try:
            await context.close()
        except Exception as e:
            logger.debug("Error closing browser context", category=category, error=str(e))

    async def cleanup_idle(self) -> int:
        """Close sessions idle for longer than ``max_idle``.

        Returns:
            Number of sessions closed.
        """
        now = time.time()
        expired = [
            category
            for category, session in self._sessions.items()
            if session.idle_seconds(now) > self._max_idle
        ]
        for category in expired:
            await self.close_session(category)
        if expired:
            logger.info("Closed idle sessions", categories=expired)
        return len(expired)

    def start_cleanup(self) -> None:
        """Start the periodic idle sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    def stop_cleanup(self) -> None:
        """Stop the periodic idle sweep."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.cleanup_idle()
            except Exception as e:
                logger.error("Session sweep failed", error=str(e))

    async def close_all(self) -> None:
        """Close every session and refuse further authentication."""
        self._closed = True
        self.stop_cleanup()

        for task in list(self._auth_tasks.values()):
            task.cancel()
        if self._auth_tasks:
            await asyncio.gather(*self._auth_tasks.values(), return_exceptions=True)

        for category in list(self._sessions):
            await self.close_session(category)

        logger.info("All sessions closed")

    def _check_closed(self) -> None:
        if self._closed:
            raise RuntimeError("SessionPool is closed")

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def sessions(self) -> Mapping[str, Session]:
        """Read-only view of live sessions by category."""
        return MappingProxyType(self._sessions)

    @property
    def login_count(self) -> int:
        """Number of login flows started."""
        return self._login_count

    def _track(self, event: str) -> None:
        if self._monitor is not None:
            self._monitor.track_session(event)

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics for monitoring."""
        return {
            "max_sessions": self._max_sessions,
            "live_sessions": len(self._sessions),
            "authenticating": sorted(self._auth_tasks),
            "logins": self._login_count,
            "created": self._created,
            "reused": self._reused,
            "closed": self._closed_count,
            "sessions": [s.to_dict() for s in self._sessions.values()],
        }
