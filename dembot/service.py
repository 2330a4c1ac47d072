"""
Acquisition service.

Owns one cache, executor, performance monitor, browser launcher and session
pool, and wires them into the cache -> session -> executor flow used by the
bot commands:

    async with await AcquisitionService.create() as service:
        report = await service.acquire(
            "profile",
            profile_ids,
            key_fn=profile_key,
            url_fn=lambda pid: f"{base}/users/{pid}",
            parse=parse_profile,
        )
        logger.info("Profiles", found=report.found, errors=report.failed)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from dembot.cache.smart_cache import SmartCache
from dembot.crawler.browser import BrowserLauncher
from dembot.crawler.login import CookieLoginFlow
from dembot.crawler.session_pool import SessionPool
from dembot.errors import AuthError
from dembot.scheduler.batch_executor import BatchExecutor
from dembot.utils.config import ensure_directories, get_settings, resolve_path
from dembot.utils.logging import LogContext, ensure_logging_configured, get_logger
from dembot.utils.metrics import PerformanceMonitor

if TYPE_CHECKING:
    from dembot.scheduler.batch_executor import BatchError, ProgressCallback
    from dembot.utils.config import Settings

logger = get_logger(__name__)

Preset = Literal["profiles", "races"]


@dataclass
class AcquisitionReport:
    """Outcome of one acquire() call.

    Attributes:
        category: Session category the items were fetched under.
        records: Cache key -> record for every item that was found.
        cached: Items served from the cache.
        fetched: Items that needed a navigation.
        errors: Items that exhausted their retries, ordered by index.
        elapsed: Wall-clock seconds.
    """

    category: str
    records: dict[str, Any] = field(default_factory=dict)
    cached: int = 0
    fetched: int = 0
    errors: list[BatchError] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def processed(self) -> int:
        return self.cached + self.fetched

    @property
    def found(self) -> int:
        return len(self.records)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "processed": self.processed,
            "found": self.found,
            "cached": self.cached,
            "fetched": self.fetched,
            "errors": self.failed,
            "elapsed": round(self.elapsed, 3),
        }


class AcquisitionService:
    """Explicitly constructed owner of the acquisition components.

    Use create() to build everything from settings, or pass components
    directly (tests inject fakes this way).
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: SmartCache,
        executor: BatchExecutor,
        pool: SessionPool,
        monitor: PerformanceMonitor,
        launcher: BrowserLauncher | None = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._executor = executor
        self._pool = pool
        self._monitor = monitor
        self._launcher = launcher
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AcquisitionService:
        """Build every component from settings. Loads the cache snapshot."""
        if settings is None:
            settings = get_settings()

        monitor = PerformanceMonitor()
        if settings.metrics.enabled:
            monitor.load_metrics(resolve_path(settings.metrics.metrics_file))

        cache = SmartCache(
            ttl=settings.cache.ttl_seconds,
            max_size=settings.cache.max_size,
            cleanup_interval=settings.cache.cleanup_interval_seconds,
            persistent=settings.cache.persistent,
            cache_file=resolve_path(settings.cache.cache_file),
            monitor=monitor,
        )
        launcher = BrowserLauncher.from_settings(settings)
        pool = SessionPool.from_settings(
            settings,
            launcher,
            CookieLoginFlow.from_settings(settings),
            monitor=monitor,
        )
        return cls(
            settings,
            cache=cache,
            executor=BatchExecutor.from_settings(settings),
            pool=pool,
            monitor=monitor,
            launcher=launcher,
        )

    @classmethod
    async def create(cls, settings: Settings | None = None) -> AcquisitionService:
        """Build from settings and start background sweeps."""
        ensure_logging_configured()
        ensure_directories()
        service = cls.from_settings(settings)
        await service.start()
        return service

    async def start(self) -> None:
        """Start the cache and session sweeps on the running loop."""
        if self._started:
            return
        self._cache.start_cleanup()
        self._pool.start_cleanup()
        self._started = True
        logger.info("Acquisition service started", cache_entries=len(self._cache))

    async def shutdown(self) -> None:
        """Stop sweeps, flush the cache and close every browser resource."""
        self._cache.close()
        await self._pool.close_all()
        if self._launcher is not None:
            await self._launcher.close()
        if self._settings.metrics.enabled:
            self._monitor.save_metrics(resolve_path(self._settings.metrics.metrics_file))
        self._started = False
        logger.info("Acquisition service stopped", **self._monitor.get_summary()["cache"])

    async def __aenter__(self) -> AcquisitionService:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    @property
    def cache(self) -> SmartCache:
        return self._cache

    @property
    def executor(self) -> BatchExecutor:
        return self._executor

    @property
    def pool(self) -> SessionPool:
        return self._pool

    @property
    def monitor(self) -> PerformanceMonitor:
        return self._monitor

    async def acquire(
        self,
        category: str,
        items: Iterable[Any],
        *,
        key_fn: Callable[[Any], str],
        url_fn: Callable[[Any], str],
        parse: Callable[[str, Any], Any],
        seed_url: str | None = None,
        ttl: float | None = None,
        preset: Preset | None = "profiles",
        on_progress: ProgressCallback | None = None,
        wait_until: str = "domcontentloaded",
    ) -> AcquisitionReport:
        """Fetch records for ``items``, serving cache hits first.

        ``parse(html, item)`` returning None means the item does not exist on
        the site; it is neither cached nor counted as an error.

        Args:
            category: Session category (one authenticated session per category).
            items: Item identifiers.
            key_fn: Cache key for an item.
            url_fn: Page URL for an item.
            parse: Extracts the record from page HTML.
            seed_url: URL loaded while authenticating (defaults to the first miss).
            ttl: Cache TTL in seconds for fetched records (cache default if None).
            preset: Executor preset, or None for the executor defaults.
            on_progress: Progress callback for the fetch phase.
            wait_until: Playwright wait condition for item pages.

        Returns:
            AcquisitionReport.

        Raises:
            AuthError: If the category session could not be authenticated;
                the remaining items of the batch are not fetched.
        """
        started = time.monotonic()
        report = AcquisitionReport(category=category)

        with LogContext(category=category):
            misses: list[Any] = []
            for item in items:
                key = key_fn(item)
                value = self._cache.get(key)
                if value is not None:
                    report.records[key] = value
                    report.cached += 1
                else:
                    misses.append(item)

            report.fetched = len(misses)
            if not misses:
                report.elapsed = time.monotonic() - started
                self._monitor.track_command(f"acquire:{category}", report.elapsed * 1000)
                logger.info("Served from cache", **report.to_dict())
                return report

            seed = seed_url or url_fn(misses[0])
            try:
                await self._pool.authenticate_session(category, seed)
            except AuthError as e:
                self._record_failure(category, e, started)
                raise

            async def fetch(item: Any, index: int) -> Any:
                # Repairs the session when a navigation bounced to login
                session = await self._pool.authenticate_session(category, seed)
                page = await self._pool.navigate(session, url_fn(item), wait_until)
                record = parse(page.html, item)
                if record is not None:
                    self._cache.set(key_fn(item), record, ttl)
                return record

            # A failed re-login ends the run for the whole category
            overrides: dict[str, Any] = {"stop_on": (AuthError,)}
            if on_progress is not None:
                overrides["on_progress"] = on_progress

            if preset == "profiles":
                result = await self._executor.process_profiles(misses, fetch, **overrides)
            elif preset == "races":
                result = await self._executor.process_races(misses, fetch, **overrides)
            else:
                result = await self._executor.run(misses, fetch, **overrides)

            if isinstance(result.stopped_by, AuthError):
                self._record_failure(category, result.stopped_by, started)
                raise result.stopped_by

            for item, record in zip(misses, result.results, strict=True):
                if record is not None:
                    report.records[key_fn(item)] = record
            report.errors = result.errors
            report.elapsed = time.monotonic() - started

            for error in result.errors:
                self._monitor.track_error(type(error.error).__name__)
            self._monitor.track_command(
                f"acquire:{category}",
                report.elapsed * 1000,
                success=not result.errors,
            )
            logger.info("Acquisition finished", **report.to_dict())
            return report

    def _record_failure(self, category: str, error: AuthError, started: float) -> None:
        self._monitor.track_error(type(error).__name__)
        self._monitor.track_command(
            f"acquire:{category}",
            (time.monotonic() - started) * 1000,
            success=False,
        )
        logger.error("Acquisition aborted", **error.to_dict())

    def get_stats(self) -> dict[str, Any]:
        """Combined component statistics."""
        stats: dict[str, Any] = {
            "cache": self._cache.stats().to_dict(),
            "sessions": self._pool.get_stats(),
            "metrics": self._monitor.get_summary(),
        }
        if self._launcher is not None:
            stats["browser"] = self._launcher.get_stats()
        return stats
