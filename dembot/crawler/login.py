"""
Login flows used by the session pool to authenticate a browser context.

A login flow receives a fresh context and the seed URL, and must either
leave the context authenticated (returning the seed page) or raise
AuthError. The pool never retries a failed login flow.

CookieLoginFlow seeds the context with a configured session cookie. Other
flows (form login, SSO) plug in through the LoginFlow protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import urlparse

from dembot.crawler.navigation import NavigationResult, is_login_url
from dembot.errors import AuthError
from dembot.utils.logging import get_logger

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext

    from dembot.utils.config import Settings

logger = get_logger(__name__)


@runtime_checkable
class LoginFlow(Protocol):
    """Authenticates a browser context against the remote site."""

    async def __call__(
        self,
        context: BrowserContext,
        seed_url: str,
        wait_until: str,
    ) -> NavigationResult:
        """Authenticate ``context`` and load ``seed_url``.

        Raises:
            AuthError: If the context could not be authenticated.
        """
        ...


@dataclass(frozen=True)
class CookieSpec:
    """One cookie parsed from a ``Cookie`` header value."""

    name: str
    value: str


def parse_cookie_header(raw: str | None, default_name: str = "ppusa_session") -> list[CookieSpec]:
    """Parse a raw ``Cookie`` header value.

    A segment without ``=`` is taken as the value of ``default_name``.
    A value that repeats the ``<default_name>=`` prefix is unwrapped.

    Example:
        >>> parse_cookie_header("ppusa_session=abc; XSRF-TOKEN=x")
        [CookieSpec(name='ppusa_session', value='abc'), CookieSpec(name='XSRF-TOKEN', value='x')]
    """
    if not raw:
        return []

    cookies: list[CookieSpec] = []
    prefix = f"{default_name}=".lower()
    for segment in (s.strip() for s in raw.split(";")):
        if not segment:
            continue
        if "=" not in segment:
            cookies.append(CookieSpec(default_name, segment))
            continue
        name, value = segment.split("=", 1)
        name, value = name.strip(), value.strip()
        if value.lower().startswith(prefix):
            value = value[len(prefix) :]
        if name and value:
            cookies.append(CookieSpec(name, value))
    return cookies


class CookieLoginFlow:
    """Authenticates by installing a session cookie and loading the seed URL.

    The login is rejected when the site bounces the seed navigation to the
    login page.

    Args:
        cookie: Raw cookie header value.
        base_url: Site base URL; cookies are scoped to its host.
        login_path: Path of the login page.
        cookie_name: Name used for a bare cookie value.
        nav_timeout: Navigation timeout in seconds.
    """

    def __init__(
        self,
        cookie: str | None,
        base_url: str,
        login_path: str = "/login",
        cookie_name: str = "ppusa_session",
        nav_timeout: float = 30.0,
    ) -> None:
        self._cookies = parse_cookie_header(cookie, cookie_name)
        self._domain = urlparse(base_url).hostname or ""
        self._login_path = login_path
        self._nav_timeout = nav_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> CookieLoginFlow:
        return cls(
            settings.auth.cookie,
            base_url=settings.session.base_url,
            login_path=settings.session.login_path,
            cookie_name=settings.auth.cookie_name,
            nav_timeout=settings.session.nav_timeout_seconds,
        )

    async def __call__(
        self,
        context: BrowserContext,
        seed_url: str,
        wait_until: str = "domcontentloaded",
    ) -> NavigationResult:
        if not self._cookies:
            raise AuthError("No session cookie configured", url=seed_url)

        await context.add_cookies(
            [
                {
                    "name": c.name,
                    "value": c.value,
                    "domain": self._domain,
                    "path": "/",
                    "httpOnly": False,
                }
                for c in self._cookies
            ]
        )
        logger.debug(
            "Session cookies applied",
            names=[c.name for c in self._cookies],
            domain=self._domain,
        )

        page = await context.new_page()
        try:
            try:
                response = await page.goto(
                    seed_url,
                    wait_until=wait_until,
                    timeout=self._nav_timeout * 1000,
                )
            except Exception as e:
                raise AuthError(f"Seed navigation failed: {e}", url=seed_url) from e

            final_url = page.url
            if is_login_url(final_url, self._login_path):
                raise AuthError(
                    "Auth rejected: redirected to login",
                    url=seed_url,
                    final_url=final_url,
                )

            html = await page.content()
            status = response.status if response is not None else 200
            return NavigationResult(html=html, final_url=final_url, status=status)
        finally:
            try:
                await page.close()
            except Exception as e:
                logger.debug("Error closing login page", error=str(e))
