"""
Performance monitoring for DemBot.
Tracks command execution times, cache hit rates, session churn and errors.

One PerformanceMonitor is owned by the AcquisitionService and handed to the
cache and the session pool; nothing here is a module-level singleton.
"""

import json
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dembot.utils.logging import get_logger

logger = get_logger(__name__)

SESSION_EVENTS = ("created", "reused", "closed")


@dataclass
class CommandMetrics:
    """Execution statistics for one command name."""

    count: int = 0
    total_time_ms: float = 0.0
    min_time_ms: float | None = None
    max_time_ms: float = 0.0
    success_count: int = 0
    error_count: int = 0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count else 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.count if self.count else 0.0

    def record(self, elapsed_ms: float, success: bool) -> None:
        self.count += 1
        self.total_time_ms += elapsed_ms
        self.min_time_ms = elapsed_ms if self.min_time_ms is None else min(self.min_time_ms, elapsed_ms)
        self.max_time_ms = max(self.max_time_ms, elapsed_ms)
        if success:
            self.success_count += 1
        else:
            self.error_count += 1


@dataclass
class CacheCounters:
    """Cache hit/miss counters."""

    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass
class SessionCounters:
    """Session lifecycle counters."""

    created: int = 0
    reused: int = 0
    closed: int = 0


@dataclass
class _MetricsState:
    commands: dict[str, CommandMetrics] = field(default_factory=dict)
    cache: CacheCounters = field(default_factory=CacheCounters)
    sessions: SessionCounters = field(default_factory=SessionCounters)
    errors: dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)


class PerformanceMonitor:
    """Collects process-level performance counters.

    All methods are synchronous and thread-safe so they can be called from
    the cache (which may be touched from worker threads) as well as from
    asyncio code.

    Example:
        monitor = PerformanceMonitor()
        monitor.track_cache(hit=True)
        monitor.track_session("created")
        summary = monitor.get_summary()
    """

    def __init__(self) -> None:
        self._state = _MetricsState()
        self._lock = threading.Lock()

    def track_command(self, name: str, elapsed_ms: float, success: bool = True) -> None:
        """Record one command execution.

        Args:
            name: Command name.
            elapsed_ms: Execution time in milliseconds.
            success: Whether the command succeeded.
        """
        with self._lock:
            metrics = self._state.commands.setdefault(name, CommandMetrics())
            metrics.record(elapsed_ms, success)

    def track_cache(self, hit: bool) -> None:
        """Record a cache lookup outcome."""
        with self._lock:
            if hit:
                self._state.cache.hits += 1
            else:
                self._state.cache.misses += 1

    def track_session(self, event: str) -> None:
        """Record a session lifecycle event ('created', 'reused' or 'closed').

        Unknown events are ignored.
        """
        if event not in SESSION_EVENTS:
            logger.debug("Ignoring unknown session event", session_event=event)
            return
        with self._lock:
            counters = self._state.sessions
            setattr(counters, event, getattr(counters, event) + 1)

    def track_error(self, error_type: str) -> None:
        """Record an error occurrence by type name."""
        with self._lock:
            self._state.errors[error_type] = self._state.errors.get(error_type, 0) + 1

    @property
    def cache_hit_rate(self) -> float:
        return self._state.cache.hit_rate

    def get_command_metrics(self, name: str) -> CommandMetrics | None:
        """Get statistics for one command, or None if never tracked."""
        return self._state.commands.get(name)

    def get_summary(self) -> dict[str, Any]:
        """Get a JSON-friendly performance summary.

        Returns:
            Dict with uptime, command, cache, session and error stats.
        """
        with self._lock:
            state = self._state
            total_commands = sum(m.count for m in state.commands.values())
            total_time = sum(m.total_time_ms for m in state.commands.values())
            return {
                "uptime_seconds": round(time.time() - state.started_at),
                "total_commands": total_commands,
                "avg_command_time_ms": round(total_time / total_commands) if total_commands else 0,
                "cache": {
                    "hits": state.cache.hits,
                    "misses": state.cache.misses,
                    "hit_rate": round(state.cache.hit_rate, 4),
                },
                "sessions": asdict(state.sessions),
                "commands": {
                    name: {
                        "count": m.count,
                        "avg_time_ms": round(m.avg_time_ms),
                        "min_time_ms": round(m.min_time_ms or 0),
                        "max_time_ms": round(m.max_time_ms),
                        "success_rate": round(m.success_rate, 4),
                    }
                    for name, m in state.commands.items()
                },
                "errors": dict(state.errors),
            }

    def reset(self) -> None:
        """Reset all counters."""
        with self._lock:
            self._state = _MetricsState()

    def save_metrics(self, path: str | Path) -> bool:
        """Write the summary plus raw counters to a JSON file (best-effort).

        Returns:
            True if the file was written.
        """
        path = Path(path)
        with self._lock:
            raw = {
                "commands": {name: asdict(m) for name, m in self._state.commands.items()},
                "cache": asdict(self._state.cache),
                "sessions": asdict(self._state.sessions),
                "errors": dict(self._state.errors),
            }
        data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "summary": self.get_summary(),
            "raw": raw,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            return True
        except OSError as e:
            logger.error("Failed to save metrics", path=str(path), error=str(e))
            return False

    def load_metrics(self, path: str | Path) -> bool:
        """Restore raw counters from a file written by save_metrics (best-effort).

        Returns:
            True if counters were restored.
        """
        path = Path(path)
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            raw = data.get("raw") or {}
            state = _MetricsState(
                commands={
                    name: CommandMetrics(**values)
                    for name, values in (raw.get("commands") or {}).items()
                },
                cache=CacheCounters(**(raw.get("cache") or {})),
                sessions=SessionCounters(**(raw.get("sessions") or {})),
                errors={k: int(v) for k, v in (raw.get("errors") or {}).items()},
            )
        except (OSError, ValueError, TypeError) as e:
            logger.error("Failed to load metrics", path=str(path), error=str(e))
            return False

        with self._lock:
            self._state = state
        return True
