"""
Tests for BatchExecutor.

Timing-sensitive tests use short delays (tens of milliseconds) and assert
lower bounds with a small tolerance.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import pytest

from dembot.errors import TaskError
from dembot.scheduler import (
    PROFILE_OPTIONS,
    RACE_OPTIONS,
    BatchExecutor,
    BatchOptions,
    ProgressSnapshot,
    create_progress_tracker,
)
from dembot.utils.config import BatchPresetConfig

FAST = BatchOptions(
    max_concurrency=5,
    batch_size=10,
    delay_between_batches=0.0,
    retry_attempts=2,
    retry_delay=0.0,
)


async def double(item: int, index: int) -> int:
    await asyncio.sleep(0)
    return item * 2


class TestBatchOptions:
    """Tests for option defaults and validation."""

    def test_defaults(self) -> None:
        opts = BatchOptions()

        assert opts.max_concurrency == 5
        assert opts.batch_size == 10
        assert opts.delay_between_batches == 1.0
        assert opts.retry_attempts == 2
        assert opts.retry_delay == 2.0

    def test_presets(self) -> None:
        assert (PROFILE_OPTIONS.max_concurrency, PROFILE_OPTIONS.batch_size) == (3, 5)
        assert PROFILE_OPTIONS.delay_between_batches == 2.0
        assert (RACE_OPTIONS.max_concurrency, RACE_OPTIONS.batch_size) == (4, 8)
        assert RACE_OPTIONS.delay_between_batches == 1.5

    def test_retry_delay_grows_linearly(self) -> None:
        opts = BatchOptions(retry_delay=2.0)

        assert opts.retry_delay_for(1) == 2.0
        assert opts.retry_delay_for(2) == 4.0

    @pytest.mark.parametrize(
        "field_name,value",
        [
            ("max_concurrency", 0),
            ("batch_size", 0),
            ("delay_between_batches", -1.0),
            ("retry_attempts", -1),
            ("retry_delay", -0.5),
        ],
    )
    def test_invalid_values_rejected(self, field_name: str, value: Any) -> None:
        with pytest.raises(ValueError):
            BatchOptions(**{field_name: value})

    def test_from_config(self) -> None:
        preset = BatchPresetConfig(max_concurrency=2, batch_size=3, delay_between_batches=0.5)

        opts = BatchOptions.from_config(preset)

        assert opts.max_concurrency == 2
        assert opts.batch_size == 3
        assert opts.delay_between_batches == 0.5


class TestRun:
    """Tests for BatchExecutor.run()."""

    @pytest.mark.asyncio
    async def test_results_are_index_aligned(self) -> None:
        """
        Given: Items whose workers finish in reverse order
        When: run() completes
        Then: results[i] still belongs to items[i]
        """
        executor = BatchExecutor()

        async def reverse_sleep(item: int, index: int) -> str:
            await asyncio.sleep(0.01 * (5 - index))
            return f"r{item}"

        result = await executor.run([0, 1, 2, 3, 4], reverse_sleep, FAST)

        assert result.results == ["r0", "r1", "r2", "r3", "r4"]
        assert result.errors == []
        assert result.processed == 5
        assert result.succeeded == 5

    @pytest.mark.asyncio
    async def test_empty_input(self) -> None:
        result = await BatchExecutor().run([], double, FAST)

        assert result.results == []
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_failure_at_one_index_never_aborts_run(self) -> None:
        """
        Given: A worker that always fails for index 2
        When: run() processes five items
        Then: Slot 2 is None, one error with attempts=3 is recorded, others succeed
        """

        async def fail_at_two(item: int, index: int) -> int:
            if index == 2:
                raise ValueError("boom")
            return item

        result = await BatchExecutor().run([10, 11, 12, 13, 14], fail_at_two, FAST)

        assert result.results == [10, 11, None, 13, 14]
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.index == 2
        assert error.item == 12
        assert error.attempts == 3
        assert isinstance(error.error, ValueError)
        assert result.failed_indices() == {2}
        assert result.successful() == [(0, 10), (1, 11), (3, 13), (4, 14)]

    @pytest.mark.asyncio
    async def test_retry_then_success(self) -> None:
        """
        Given: A worker that fails twice then succeeds, retry_delay=0.05
        When: run() processes one item
        Then: The item succeeds and the two retries waited 0.05 + 0.10 seconds
        """
        calls = 0

        async def flaky(item: int, index: int) -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError("transient")
            return "ok"

        started = time.monotonic()
        result = await BatchExecutor().run([1], flaky, FAST, retry_delay=0.05)
        elapsed = time.monotonic() - started

        assert result.results == ["ok"]
        assert result.errors == []
        assert calls == 3
        assert elapsed >= 0.15 - 0.01

    @pytest.mark.asyncio
    async def test_zero_retries_means_single_attempt(self) -> None:
        calls = 0

        async def always_fail(item: int, index: int) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("nope")

        result = await BatchExecutor().run([1], always_fail, FAST, retry_attempts=0)

        assert calls == 1
        assert result.errors[0].attempts == 1

    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_limit(self) -> None:
        """
        Given: max_concurrency=3 and twelve slow items in one batch
        When: run() is executing
        Then: No more than three workers are ever in flight at once
        """
        in_flight = 0
        peak = 0

        async def track(item: int, index: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return item

        result = await BatchExecutor().run(
            range(12), track, FAST, max_concurrency=3, batch_size=12
        )

        assert peak == 3
        assert result.succeeded == 12

    @pytest.mark.asyncio
    async def test_sliding_window_starts_next_item_early(self) -> None:
        """
        Given: max_concurrency=2, one slow item and several fast ones
        When: run() processes them in one batch
        Then: Fast items start before the slow one finishes
        """
        events: list[str] = []

        async def worker(item: str, index: int) -> str:
            events.append(f"start:{item}")
            await asyncio.sleep(0.1 if item == "slow" else 0.01)
            events.append(f"end:{item}")
            return item

        await BatchExecutor().run(["slow", "a", "b", "c"], worker, FAST, max_concurrency=2)

        assert events.index("start:c") < events.index("end:slow")

    @pytest.mark.asyncio
    async def test_batches_are_sequential_with_delay(self) -> None:
        """
        Given: Five items, batch_size=2, max_concurrency=2, delay 0.1s
        When: run() completes
        Then: Batches [1,2], [3,4], [5] run in order and two delays elapsed
        """
        events: list[tuple[str, int]] = []

        async def worker(item: int, index: int) -> int:
            events.append(("start", item))
            await asyncio.sleep(0.005)
            events.append(("end", item))
            return item

        started = time.monotonic()
        result = await BatchExecutor().run(
            [1, 2, 3, 4, 5],
            worker,
            FAST,
            batch_size=2,
            max_concurrency=2,
            delay_between_batches=0.1,
        )
        elapsed = time.monotonic() - started

        assert result.results == [1, 2, 3, 4, 5]
        assert elapsed >= 0.2 - 0.01
        # Every item of a batch ends before the next batch starts
        assert events.index(("end", 1)) < events.index(("start", 3))
        assert events.index(("end", 2)) < events.index(("start", 3))
        assert events.index(("end", 4)) < events.index(("start", 5))

    @pytest.mark.asyncio
    async def test_no_delay_after_last_batch(self) -> None:
        started = time.monotonic()
        await BatchExecutor().run([1, 2], double, FAST, batch_size=2, delay_between_batches=0.5)
        assert time.monotonic() - started < 0.4

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self) -> None:
        """
        Given: Four items, one of which always fails
        When: run() completes
        Then: on_progress sees done counts 1..4, total 4, and None for the failure
        """
        seen: list[tuple[int, int, Any]] = []

        async def fail_at_one(item: int, index: int) -> int:
            if index == 1:
                raise RuntimeError("x")
            return item

        await BatchExecutor().run(
            [0, 1, 2, 3],
            fail_at_one,
            FAST,
            on_progress=lambda done, total, res: seen.append((done, total, res)),
        )

        assert [done for done, _, _ in seen] == [1, 2, 3, 4]
        assert all(total == 4 for _, total, _ in seen)
        assert sorted(res for _, _, res in seen if res is not None) == [0, 2, 3]
        assert sum(1 for _, _, res in seen if res is None) == 1

    @pytest.mark.asyncio
    async def test_on_error_called_once_per_exhausted_item(self) -> None:
        errors: list[tuple[str, Any, int]] = []

        async def fail(item: str, index: int) -> None:
            raise KeyError(item)

        await BatchExecutor().run(
            ["a", "b"],
            fail,
            FAST,
            on_error=lambda e, item, idx: errors.append((type(e).__name__, item, idx)),
        )

        assert sorted(errors, key=lambda e: e[2]) == [("KeyError", "a", 0), ("KeyError", "b", 1)]

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_break_run(self) -> None:
        def bad_progress(done: int, total: int, result: Any) -> None:
            raise RuntimeError("callback bug")

        result = await BatchExecutor().run([1, 2], double, FAST, on_progress=bad_progress)

        assert result.results == [2, 4]

    @pytest.mark.asyncio
    async def test_errors_sorted_by_index(self) -> None:
        async def fail_slowly(item: int, index: int) -> None:
            await asyncio.sleep(0.01 * (4 - index))
            raise RuntimeError(str(index))

        result = await BatchExecutor().run(range(4), fail_slowly, FAST, retry_attempts=0)

        assert [e.index for e in result.errors] == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_as_task_error_chains_cause(self) -> None:
        async def fail(item: int, index: int) -> None:
            raise ValueError("root cause")

        result = await BatchExecutor().run([7], fail, FAST, retry_attempts=1)
        task_error = result.errors[0].as_task_error()

        assert isinstance(task_error, TaskError)
        assert task_error.index == 0
        assert task_error.item == 7
        assert task_error.attempts == 2
        assert isinstance(task_error.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        """
        Given: A run with a long-running worker
        When: The awaiting task is cancelled
        Then: CancelledError reaches the caller
        """

        async def hang(item: int, index: int) -> None:
            await asyncio.sleep(0.1)

        executor = BatchExecutor()
        task = asyncio.create_task(executor.run([1], hang, FAST))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        # The in-flight worker is left to finish on its own
        assert executor.inflight_count == 1
        await asyncio.sleep(0.15)
        assert executor.inflight_count == 0


class TestStopOn:
    """Tests for the stop_on option."""

    @pytest.mark.asyncio
    async def test_stop_error_is_not_retried_and_ends_run(self) -> None:
        """
        Given: A worker that raises a stop_on error at index 1, slow retries
        When: run() processes six items one at a time in batches of two
        Then: The failing item has one attempt, no later item starts, and no retry delay is slept
        """
        seen: list[int] = []

        async def fetch(item: int, index: int) -> int:
            seen.append(index)
            if index == 1:
                raise PermissionError("session rejected")
            return item

        started = time.monotonic()
        result = await BatchExecutor().run(
            range(6),
            fetch,
            FAST,
            max_concurrency=1,
            batch_size=2,
            delay_between_batches=0.5,
            retry_delay=0.5,
            stop_on=(PermissionError,),
        )
        elapsed = time.monotonic() - started

        assert seen == [0, 1]
        assert elapsed < 0.2
        assert result.stopped
        assert isinstance(result.stopped_by, PermissionError)
        assert result.results == [0, None, None, None, None, None]
        assert [(e.index, e.attempts) for e in result.errors] == [(1, 1)]

    @pytest.mark.asyncio
    async def test_item_waiting_to_retry_gives_up_after_stop(self) -> None:
        """
        Given: One item sleeping before its retry while another raises a stop_on error
        When: The run stops
        Then: The sleeping item is recorded without another attempt
        """
        calls = {0: 0, 1: 0}

        async def fetch(item: int, index: int) -> int:
            calls[index] += 1
            if index == 0:
                raise RuntimeError("transient")
            await asyncio.sleep(0.02)
            raise PermissionError("session rejected")

        result = await BatchExecutor().run(
            [0, 1],
            fetch,
            FAST,
            max_concurrency=2,
            retry_delay=0.05,
            stop_on=(PermissionError,),
        )

        assert calls == {0: 1, 1: 1}
        assert [(e.index, e.attempts) for e in result.errors] == [(0, 1), (1, 1)]
        assert isinstance(result.stopped_by, PermissionError)

    @pytest.mark.asyncio
    async def test_other_errors_still_retried(self) -> None:
        calls = 0

        async def flaky(item: int, index: int) -> str:
            nonlocal calls
            calls += 1
            if calls < 2:
                raise RuntimeError("transient")
            return "ok"

        result = await BatchExecutor().run([1], flaky, FAST, stop_on=(PermissionError,))

        assert result.results == ["ok"]
        assert result.stopped is False


class TestPresets:
    """Tests for the domain wrappers."""

    @pytest.mark.asyncio
    async def test_process_profiles_uses_profile_preset(self) -> None:
        """
        Given: An executor whose profile preset allows concurrency 1
        When: process_profiles() runs three items
        Then: Items run one at a time
        """
        profile = BatchOptions(max_concurrency=1, batch_size=5, delay_between_batches=0.0)
        executor = BatchExecutor(profile_defaults=profile)
        in_flight = 0
        peak = 0

        async def worker(item: int, index: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.005)
            in_flight -= 1
            return item

        result = await executor.process_profiles([1, 2, 3], worker)

        assert peak == 1
        assert result.results == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_process_races_accepts_overrides(self) -> None:
        executor = BatchExecutor()

        result = await executor.process_races(
            ["ca", "ny"], lambda item, index: _upper(item), delay_between_batches=0.0
        )

        assert result.results == ["CA", "NY"]


async def _upper(value: str) -> str:
    return value.upper()


class TestProgressTracker:
    def test_tracker_reports_percentage_and_eta(self) -> None:
        """
        Given: A tracker for ten items
        When: It is called as items finish
        Then: Snapshots carry processed count, total and percentage
        """
        snapshots: list[ProgressSnapshot] = []
        track = create_progress_tracker(10, snapshots.append)

        track(1, 10, "a")
        track(5, 10, "b")

        assert [s.processed for s in snapshots] == [1, 5]
        assert snapshots[-1].percentage == 50
        assert snapshots[-1].total == 10
        assert snapshots[-1].eta >= 0

    def test_tracker_without_callback_is_silent(self) -> None:
        track = create_progress_tracker(3)
        track(1, 3, None)

    @pytest.mark.asyncio
    async def test_tracker_as_on_progress(self) -> None:
        snapshots: list[ProgressSnapshot] = []

        await BatchExecutor().run(
            [1, 2, 3],
            double,
            FAST,
            on_progress=create_progress_tracker(3, snapshots.append),
        )

        assert snapshots[-1].processed == 3
        assert snapshots[-1].percentage == 100
