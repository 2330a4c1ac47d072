"""
Error taxonomy for DemBot data acquisition.

- CacheIOError: snapshot persistence failed. Recovered inside SmartCache.
- TaskError: a worker exhausted its retries. Recorded by BatchExecutor,
  never raised out of a run.
- AuthError: a session could not be (re)authenticated. Raised to the
  SessionPool caller and not retried there.
- NavigationError: a transient navigation failure (timeout, HTTP error,
  bounced to the login page). Retried by whatever worker wraps navigate().
"""

from typing import Any


class DemBotError(Exception):
    """Base exception carrying a structured ``details`` dict."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a loggable dictionary."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "error": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class CacheIOError(DemBotError):
    """Reading or writing the cache snapshot failed."""

    def __init__(self, message: str, *, path: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.path = path
        if path is not None:
            self.details.setdefault("path", path)


class TaskError(DemBotError):
    """A batch item failed on every attempt.

    The last exception raised by the worker is chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        item: Any = None,
        index: int | None = None,
        attempts: int = 0,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.item = item
        self.index = index
        self.attempts = attempts


class AuthError(DemBotError):
    """Authentication for a session category failed."""

    def __init__(
        self,
        message: str,
        *,
        category: str | None = None,
        url: str | None = None,
        final_url: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.category = category
        self.url = url
        self.final_url = final_url


class NavigationError(DemBotError):
    """A page load through an authenticated session failed."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status: int | None = None,
        final_url: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.url = url
        self.status = status
        self.final_url = final_url
