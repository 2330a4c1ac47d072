"""
Bounded-concurrency batch executor for scraping work.

Design:
- Items are split into sequential batches of ``batch_size``
- Within a batch, at most ``max_concurrency`` worker calls are in flight;
  a new one starts as soon as any in-flight call settles (sliding window)
- Each item gets ``retry_attempts`` retries; retry n waits ``retry_delay * n``
- Items that exhaust their retries are recorded in ``errors`` and never abort
  the run; their ``results`` slot stays None
- ``delay_between_batches`` is slept between batches as back-pressure
- An exception listed in ``stop_on`` is not retried and stops the run: no
  further items start, and the unstarted slots stay None without an error
- ``results[i]`` always belongs to ``items[i]``

Workers receive everything they need through arguments or closures:

    async def fetch_profile(profile_id: int, index: int) -> dict:
        page = await pool.navigate(session, f"{base}/users/{profile_id}")
        return parse_profile(page.html)

    result = await executor.process_profiles(ids, fetch_profile)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from dembot.errors import TaskError
from dembot.utils.logging import get_logger

if TYPE_CHECKING:
    from dembot.utils.config import BatchPresetConfig, Settings

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

Worker = Callable[[T, int], Awaitable[R]]
ProgressCallback = Callable[[int, int, Any], None]
ErrorCallback = Callable[[Exception, Any, int], None]


@dataclass(frozen=True)
class BatchOptions:
    """Options for one executor run.

    Attributes:
        max_concurrency: Maximum in-flight worker calls within a batch.
        batch_size: Number of items per sequential batch.
        delay_between_batches: Seconds to wait between batches.
        retry_attempts: Additional attempts after the first failure.
        retry_delay: Base retry delay in seconds; retry n waits retry_delay * n.
        on_progress: Called as (done_count, total, result) once per finished item.
            ``result`` is None for items that exhausted their retries.
        on_error: Called as (error, item, index) when an item exhausts its retries.
        stop_on: Exception types that fail their item at once and stop the run.
    """

    max_concurrency: int = 5
    batch_size: int = 10
    delay_between_batches: float = 1.0
    retry_attempts: int = 2
    retry_delay: float = 2.0
    on_progress: ProgressCallback | None = None
    on_error: ErrorCallback | None = None
    stop_on: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.delay_between_batches < 0:
            raise ValueError("delay_between_batches must be non-negative")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts must be non-negative")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be non-negative")

    @classmethod
    def from_config(cls, preset: BatchPresetConfig) -> BatchOptions:
        """Build options from a configured preset."""
        return cls(
            max_concurrency=preset.max_concurrency,
            batch_size=preset.batch_size,
            delay_between_batches=preset.delay_between_batches,
            retry_attempts=preset.retry_attempts,
            retry_delay=preset.retry_delay,
        )

    def retry_delay_for(self, retry_number: int) -> float:
        """Delay before the given 1-based retry."""
        return self.retry_delay * retry_number


# Preset defaults used when no settings are supplied
PROFILE_OPTIONS = BatchOptions(max_concurrency=3, batch_size=5, delay_between_batches=2.0)
RACE_OPTIONS = BatchOptions(max_concurrency=4, batch_size=8, delay_between_batches=1.5)


@dataclass
class BatchError:
    """An item that failed on every attempt."""

    item: Any
    index: int
    error: Exception
    attempts: int

    def as_task_error(self) -> TaskError:
        """Wrap the failure as a TaskError chained to the last exception."""
        task_error = TaskError(
            f"Item {self.index} failed after {self.attempts} attempt(s): {self.error}",
            item=self.item,
            index=self.index,
            attempts=self.attempts,
            details={"error_type": type(self.error).__name__},
        )
        task_error.__cause__ = self.error
        return task_error


@dataclass
class BatchResult(Generic[R]):
    """Outcome of one executor run.

    ``results`` is index-aligned with the input items; failed slots are None.
    ``errors`` is ordered by item index. ``stopped_by`` holds the ``stop_on``
    exception that ended the run early, if any.
    """

    results: list[R | None]
    errors: list[BatchError] = field(default_factory=list)
    elapsed: float = 0.0
    stopped_by: Exception | None = None

    @property
    def stopped(self) -> bool:
        return self.stopped_by is not None

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def succeeded(self) -> int:
        return self.processed - self.failed

    def failed_indices(self) -> set[int]:
        return {error.index for error in self.errors}

    def successful(self) -> list[tuple[int, R]]:
        """(index, result) pairs for every item that succeeded."""
        failed = self.failed_indices()
        return [
            (i, result)  # type: ignore[misc]
            for i, result in enumerate(self.results)
            if i not in failed
        ]


@dataclass
class _RunState:
    total: int
    results: list[Any]
    errors: list[BatchError] = field(default_factory=list)
    done: int = 0
    stopped_by: Exception | None = None


class BatchExecutor:
    """Runs an async worker over many items with batching, bounded
    concurrency and per-item retries.

    Example:
        executor = BatchExecutor.from_settings(get_settings())
        result = await executor.run(urls, fetch, max_concurrency=2)
        for error in result.errors:
            logger.warning("Fetch failed", index=error.index, error=str(error.error))

    Args:
        defaults: Options for run() when none are given.
        profile_defaults: Options used by process_profiles().
        race_defaults: Options used by process_races().
    """

    def __init__(
        self,
        defaults: BatchOptions | None = None,
        profile_defaults: BatchOptions | None = None,
        race_defaults: BatchOptions | None = None,
    ) -> None:
        self._defaults = defaults or BatchOptions()
        self._profile_defaults = profile_defaults or PROFILE_OPTIONS
        self._race_defaults = race_defaults or RACE_OPTIONS
        # Strong references so in-flight calls outlive a cancelled run()
        self._inflight: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> BatchExecutor:
        """Build an executor from the ``batch`` configuration section."""
        batch = settings.batch
        return cls(
            defaults=BatchOptions.from_config(batch.default),
            profile_defaults=BatchOptions.from_config(batch.profiles),
            race_defaults=BatchOptions.from_config(batch.races),
        )

    @property
    def defaults(self) -> BatchOptions:
        return self._defaults

    @property
    def inflight_count(self) -> int:
        """Worker calls still running, including ones orphaned by cancellation."""
        return len(self._inflight)

    async def run(
        self,
        items: Iterable[T],
        worker: Worker[T, R],
        options: BatchOptions | None = None,
        **overrides: Any,
    ) -> BatchResult[R]:
        """Process every item with ``worker``.

        Worker exceptions never escape; they are retried and then recorded.

        Args:
            items: Items to process.
            worker: ``async worker(item, index) -> result``.
            options: Base options (executor defaults if None).
            **overrides: Individual BatchOptions fields to override.

        Returns:
            BatchResult with index-aligned results and per-item errors.
        """
        opts = options or self._defaults
        if overrides:
            opts = replace(opts, **overrides)

        item_list: Sequence[T] = list(items)
        total = len(item_list)
        state = _RunState(total=total, results=[None] * total)
        started = time.monotonic()

        logger.debug(
            "Batch run started",
            total=total,
            batch_size=opts.batch_size,
            max_concurrency=opts.max_concurrency,
        )

        for start in range(0, total, opts.batch_size):
            batch = list(enumerate(item_list[start : start + opts.batch_size], start=start))
            await self._run_batch(batch, worker, opts, state)

            if state.stopped_by is not None:
                logger.warning(
                    "Batch run stopped",
                    done=state.done,
                    total=total,
                    error=str(state.stopped_by),
                )
                break

            if start + opts.batch_size < total and opts.delay_between_batches > 0:
                logger.debug(
                    "Waiting between batches",
                    delay=opts.delay_between_batches,
                    done=state.done,
                    total=total,
                )
                await asyncio.sleep(opts.delay_between_batches)

        state.errors.sort(key=lambda error: error.index)
        result = BatchResult(
            results=state.results,
            errors=state.errors,
            elapsed=time.monotonic() - started,
            stopped_by=state.stopped_by,
        )

        logger.info(
            "Batch run finished",
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            elapsed=round(result.elapsed, 3),
        )
        return result

    async def process_profiles(
        self,
        profile_ids: Iterable[T],
        worker: Worker[T, R],
        **overrides: Any,
    ) -> BatchResult[R]:
        """Run with the conservative profile preset (heavier pages)."""
        return await self.run(profile_ids, worker, self._profile_defaults, **overrides)

    async def process_races(
        self,
        races: Iterable[T],
        worker: Worker[T, R],
        **overrides: Any,
    ) -> BatchResult[R]:
        """Run with the race preset."""
        return await self.run(races, worker, self._race_defaults, **overrides)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _run_batch(
        self,
        batch: list[tuple[int, T]],
        worker: Worker[T, R],
        opts: BatchOptions,
        state: _RunState,
    ) -> None:
        """Run one batch through a sliding window of max_concurrency calls."""
        pending: set[asyncio.Task[None]] = set()

        for index, item in batch:
            if len(pending) >= opts.max_concurrency:
                _, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if state.stopped_by is not None:
                break

            task = asyncio.create_task(self._run_item(item, index, worker, opts, state))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            pending.add(task)

        if pending:
            await asyncio.wait(pending)

    async def _run_item(
        self,
        item: T,
        index: int,
        worker: Worker[T, R],
        opts: BatchOptions,
        state: _RunState,
    ) -> None:
        """Run one item until it succeeds, runs out of attempts or the run stops."""
        max_attempts = opts.retry_attempts + 1
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await worker(item, index)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if isinstance(e, opts.stop_on) and state.stopped_by is None:
                    state.stopped_by = e
                if attempt < max_attempts and state.stopped_by is None:
                    delay = opts.retry_delay_for(attempt)
                    logger.debug(
                        "Batch item failed, retrying",
                        index=index,
                        attempt=attempt,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    # The run may have stopped while this item slept
                    if state.stopped_by is None:
                        continue

                self._record_error(BatchError(item=item, index=index, error=e, attempts=attempt), opts, state)
                return

            state.results[index] = result
            self._notify_progress(opts, state, result)
            return

    def _record_error(self, error: BatchError, opts: BatchOptions, state: _RunState) -> None:
        state.errors.append(error)
        logger.warning("Batch item failed", **error.as_task_error().to_dict())
        self._notify_error(opts, error.error, error.item, error.index)
        self._notify_progress(opts, state, None)

    def _notify_progress(self, opts: BatchOptions, state: _RunState, result: Any) -> None:
        state.done += 1
        if opts.on_progress is None:
            return
        try:
            opts.on_progress(state.done, state.total, result)
        except Exception as e:
            logger.warning("Progress callback failed", error=str(e))

    def _notify_error(self, opts: BatchOptions, error: Exception, item: Any, index: int) -> None:
        if opts.on_error is None:
            return
        try:
            opts.on_error(error, item, index)
        except Exception as e:
            logger.warning("Error callback failed", error=str(e))


# =============================================================================
# Progress tracking
# =============================================================================


@dataclass(frozen=True)
class ProgressSnapshot:
    """Progress of a running batch.

    Attributes:
        processed: Items finished so far.
        total: Total items.
        percentage: Rounded percent complete.
        rate: Items per second since the tracker was created.
        eta: Estimated seconds remaining.
        elapsed: Seconds since the tracker was created.
    """

    processed: int
    total: int
    percentage: int
    rate: float
    eta: int
    elapsed: int


def create_progress_tracker(
    total: int,
    on_update: Callable[[ProgressSnapshot], None] | None = None,
) -> ProgressCallback:
    """Create an ``on_progress`` callback that reports rate and ETA.

    Args:
        total: Expected item count (used when the run reports zero).
        on_update: Receives a ProgressSnapshot after every finished item.

    Returns:
        Callback suitable for BatchOptions.on_progress.
    """
    started = time.monotonic()

    def track(current: int, total_items: int, result: Any) -> None:
        expected = total_items or total
        elapsed = time.monotonic() - started
        rate = current / elapsed if elapsed > 0 else 0.0
        remaining = max(0, expected - current)
        eta = remaining / rate if rate > 0 else 0.0

        if on_update is not None:
            on_update(
                ProgressSnapshot(
                    processed=current,
                    total=expected,
                    percentage=round(current / expected * 100) if expected else 100,
                    rate=round(rate, 1),
                    eta=round(eta),
                    elapsed=round(elapsed),
                )
            )

    return track
