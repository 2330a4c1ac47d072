"""
DemBot crawler module.

Browser launcher, login flows and the authenticated session pool.
"""

from dembot.crawler.browser import BrowserLauncher
from dembot.crawler.login import CookieLoginFlow, CookieSpec, LoginFlow, parse_cookie_header
from dembot.crawler.navigation import NavigationResult, is_login_url, to_absolute_url
from dembot.crawler.session_pool import Session, SessionPool

__all__ = [
    "BrowserLauncher",
    "LoginFlow",
    "CookieLoginFlow",
    "CookieSpec",
    "parse_cookie_header",
    "NavigationResult",
    "is_login_url",
    "to_absolute_url",
    "Session",
    "SessionPool",
]
