"""
Navigation result type and URL helpers shared by the login flow and the
session pool.
"""

import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin, urlparse


@dataclass
class NavigationResult:
    """Rendered markup of a page load.

    Attributes:
        html: Page HTML after the wait condition was met.
        final_url: URL after redirects.
        status: HTTP status of the main document (200 when unknown).
    """

    html: str
    final_url: str
    status: int = 200

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging (markup omitted)."""
        return {
            "final_url": self.final_url,
            "status": self.status,
            "html_length": len(self.html),
        }


def is_login_url(url: str | None, login_path: str = "/login") -> bool:
    """Whether ``url`` points at the login page.

    Args:
        url: URL to check.
        login_path: Path of the login page, e.g. ``"/login"``.

    Returns:
        True if the URL path is the login path or lies below it
        (``/login``, ``/login/``, ``/login/2fa``; not ``/login-help``).
    """
    if not url:
        return False
    path = urlparse(url).path or "/"
    pattern = "^" + re.escape(login_path.rstrip("/")) + "(/|$)"
    return re.match(pattern, path, re.IGNORECASE) is not None


def to_absolute_url(base_url: str, url: str) -> str:
    """Resolve ``url`` against the site base URL."""
    return urljoin(base_url.rstrip("/") + "/", url)
