"""
DemBot scheduler module.

Provides the batched, bounded-concurrency executor used for scraping runs.
"""

from dembot.scheduler.batch_executor import (
    PROFILE_OPTIONS,
    RACE_OPTIONS,
    BatchError,
    BatchExecutor,
    BatchOptions,
    BatchResult,
    ProgressSnapshot,
    create_progress_tracker,
)

__all__ = [
    "BatchExecutor",
    "BatchOptions",
    "BatchResult",
    "BatchError",
    "ProgressSnapshot",
    "create_progress_tracker",
    "PROFILE_OPTIONS",
    "RACE_OPTIONS",
]
