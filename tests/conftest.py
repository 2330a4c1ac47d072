"""
Pytest fixtures and configuration for DemBot tests.

=============================================================================
Test Classification
=============================================================================

Primary Markers:
- @pytest.mark.unit: Single class/function, no external dependencies
  - Fast (<1s per test)
  - Playwright objects fully mocked
  - DEFAULT: Tests without marker are auto-classified as unit

- @pytest.mark.integration: Multiple components wired together, browser mocked

- @pytest.mark.e2e: Real Chromium and network access
  - Run with: pytest -m e2e

- @pytest.mark.slow: Tests taking >5 seconds

=============================================================================
Mock Strategy
=============================================================================

- Browser (Playwright contexts and pages): Always mocked (make_page, make_context)
- File I/O: Use tmp_path fixture
- Settings: reset before and after every test
"""

import asyncio
import os
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment before importing anything else
os.environ["DEMBOT_CONFIG_DIR"] = str(Path(__file__).parent.parent / "config")
os.environ["DEMBOT_GENERAL__LOG_LEVEL"] = "DEBUG"

from dembot.crawler.navigation import NavigationResult  # noqa: E402
from dembot.utils.config import reset_settings  # noqa: E402


def pytest_configure(config):
    """Register custom markers for test classification."""
    config.addinivalue_line(
        "markers", "unit: Unit tests with no external dependencies (fast, <1s/test)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests with mocked browser (<5s/test)"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests requiring a real browser (excluded by default)"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds"
    )


def pytest_collection_modifyitems(config, items):
    """Tests without explicit markers are assumed to be unit tests."""
    for item in items:
        has_classification = any(
            marker.name in ("unit", "integration", "e2e") for marker in item.iter_markers()
        )
        if not has_classification:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def reset_cached_settings():
    """Drop cached settings so env overrides set by a test never leak."""
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# Playwright Mocks
# =============================================================================


def make_page(
    final_url: str | None = None,
    status: int = 200,
    html: str = "<html><body>ok</body></html>",
    goto_error: Exception | None = None,
) -> MagicMock:
    """Create a mock Playwright Page.

    ``page.url`` becomes ``final_url`` (or the requested URL) after goto().
    """
    page = MagicMock()
    page.url = "about:blank"

    async def goto(url: str, **kwargs: Any) -> MagicMock:
        if goto_error is not None:
            raise goto_error
        page.url = final_url or url
        response = MagicMock()
        response.status = status
        return response

    page.goto = AsyncMock(side_effect=goto)
    page.content = AsyncMock(return_value=html)
    page.close = AsyncMock()
    return page


def make_context(*pages: MagicMock) -> MagicMock:
    """Create a mock BrowserContext handing out ``pages`` in order.

    When no pages are given, every new_page() returns a fresh 200 page.
    """
    context = MagicMock()
    context.add_cookies = AsyncMock()
    context.close = AsyncMock()
    context.route = AsyncMock()
    if pages:
        context.new_page = AsyncMock(side_effect=list(pages))
    else:
        context.new_page = AsyncMock(side_effect=lambda: make_page())
    return context


class FakeBrowser:
    """Stands in for BrowserLauncher: hands out mock contexts."""

    def __init__(self) -> None:
        self.contexts: list[MagicMock] = []
        self.connected = True
        self.fail_with: Exception | None = None

    async def new_context(self) -> MagicMock:
        if self.fail_with is not None:
            raise self.fail_with
        context = make_context()
        self.contexts.append(context)
        return context

    def is_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.connected = False

    def get_stats(self) -> dict[str, Any]:
        return {"connected": self.connected, "contexts": len(self.contexts)}


class FakeLoginFlow:
    """Counts login attempts; optionally slow or failing."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.delay = delay
        self.error = error

    async def __call__(self, context: Any, seed_url: str, wait_until: str) -> NavigationResult:
        self.calls.append(seed_url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return NavigationResult(html="<html>seed</html>", final_url=seed_url, status=200)


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def fake_login() -> FakeLoginFlow:
    return FakeLoginFlow()

