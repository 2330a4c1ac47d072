"""
Smart cache for expensive scraped records.

Design:
- In-memory key -> entry map; the in-memory state is always authoritative
- Per-entry TTL, evaluated on read and by a periodic asyncio sweep
- At capacity, the least-recently-accessed ~10% of entries are evicted
- Optional JSON snapshot rewritten after every mutation (best-effort)
- One RLock per instance guards every read-modify-write of the map
"""

from __future__ import annotations

import asyncio
import json
import math
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dembot.errors import CacheIOError
from dembot.utils.logging import get_logger

if TYPE_CHECKING:
    from dembot.utils.metrics import PerformanceMonitor

logger = get_logger(__name__)

SNAPSHOT_VERSION = "1.0"
EVICTION_FRACTION = 0.1


@dataclass
class CacheEntry:
    """A cached value with its bookkeeping timestamps (epoch seconds)."""

    value: Any
    timestamp: float
    last_accessed: float
    ttl: float

    def is_expired(self, now: float | None = None) -> bool:
        """Expired iff more than ``ttl`` seconds passed since it was set."""
        if now is None:
            now = time.time()
        return now - self.timestamp > self.ttl

    def to_dict(self) -> dict[str, Any]:
        """Convert to the snapshot representation."""
        return {
            "value": self.value,
            "timestamp": self.timestamp,
            "lastAccessed": self.last_accessed,
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        default_ttl: float,
        time_scale: float = 1.0,
    ) -> CacheEntry:
        """Create from the snapshot representation.

        Args:
            data: Serialized entry.
            default_ttl: TTL used when the entry carries none.
            time_scale: Divisor applied to stored times (1000 for millisecond snapshots).
        """
        timestamp = float(data["timestamp"]) / time_scale
        ttl = data.get("ttl")
        return cls(
            value=data.get("value"),
            timestamp=timestamp,
            last_accessed=float(data.get("lastAccessed", data["timestamp"])) / time_scale,
            ttl=float(ttl) / time_scale if ttl is not None else default_ttl,
        )


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time cache statistics."""

    total: int
    active: int
    expired: int
    hit_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "active": self.active,
            "expired": self.expired,
            "hit_rate": self.hit_rate,
        }


class SmartCache:
    """TTL cache with LRU-style eviction and best-effort disk snapshots.

    Example:
        cache = SmartCache(ttl=600, max_size=2000, cache_file=Path("data/cache.json"))
        cache.start_cleanup()
        cache.set(profile_key(42), {"name": "Jane Doe"})
        info = cache.get(profile_key(42))
        ...
        cache.close()

    Args:
        ttl: Default time-to-live in seconds for entries set without one.
        max_size: Maximum number of entries held at once.
        cleanup_interval: Seconds between periodic expiry sweeps.
        persistent: Whether to snapshot to ``cache_file``.
        cache_file: Snapshot path. Required when ``persistent`` is True.
        monitor: Optional PerformanceMonitor receiving hit/miss events.
    """

    def __init__(
        self,
        ttl: float = 600.0,
        max_size: int = 1000,
        cleanup_interval: float = 60.0,
        persistent: bool = True,
        cache_file: str | Path | None = None,
        monitor: PerformanceMonitor | None = None,
    ) -> None:
        if ttl < 0:
            raise ValueError("ttl must be non-negative")
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")
        if persistent and cache_file is None:
            raise ValueError("cache_file is required when persistent=True")

        self._ttl = ttl
        self._max_size = max_size
        self._cleanup_interval = cleanup_interval
        self._persistent = persistent
        self._cache_file = Path(cache_file) if cache_file is not None else None
        self._monitor = monitor

        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._cleanup_task: asyncio.Task[None] | None = None

        if self._persistent:
            self.load_from_disk()

    # =========================================================================
    # Public API
    # =========================================================================

    def get(self, key: str) -> Any | None:
        """Get a value, or None if absent or expired.

        An expired entry is removed on read.
        """
        with self._lock:
            entry = self._entries.get(key)
            now = time.time()
            if entry is None or entry.is_expired(now):
                if entry is not None:
                    del self._entries[key]
                self._record_lookup(hit=False)
                return None

            entry.last_accessed = now
            self._record_lookup(hit=True)
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value.

        Args:
            key: Cache key.
            value: JSON-serializable value (when persistence is on).
            ttl: Seconds to live; falls back to the cache-wide default.
        """
        if ttl is not None and ttl < 0:
            raise ValueError("ttl must be non-negative")

        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_size:
                self._evict_oldest()

            now = time.time()
            self._entries[key] = CacheEntry(
                value=value,
                timestamp=now,
                last_accessed=now,
                ttl=self._ttl if ttl is None else ttl,
            )
            self._persist()

    def has(self, key: str) -> bool:
        """Check if key exists and is not expired.

        Does not count as an access for eviction or hit-rate purposes.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired():
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        """Remove a key.

        Returns:
            True if the key was present.
        """
        with self._lock:
            existed = self._entries.pop(key, None) is not None
            self._persist()
            return existed

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()
            self._persist()

    def stats(self) -> CacheStats:
        """Get cache statistics."""
        with self._lock:
            now = time.time()
            expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))
            lookups = self._hits + self._misses
            return CacheStats(
                total=len(self._entries),
                active=len(self._entries) - expired,
                expired=expired,
                hit_rate=self._hits / lookups if lookups else 0.0,
            )

    def cleanup(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            now = time.time()
            expired_keys = [k for k, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired_keys:
                del self._entries[key]
            if expired_keys:
                self._persist()

        logger.debug("Cache sweep finished", removed=len(expired_keys))
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def default_ttl(self) -> float:
        return self._ttl

    # =========================================================================
    # Eviction
    # =========================================================================

    def _evict_oldest(self) -> list[str]:
        """Evict the least-recently-accessed ~10% of entries.

        Caller must hold the lock.

        Returns:
            Evicted keys, oldest first.
        """
        by_access = sorted(self._entries.items(), key=lambda kv: kv[1].last_accessed)
        to_remove = math.ceil(len(by_access) * EVICTION_FRACTION)
        evicted = [key for key, _ in by_access[:to_remove]]
        for key in evicted:
            del self._entries[key]

        logger.debug("Cache eviction", evicted=len(evicted), remaining=len(self._entries))
        return evicted

    def _record_lookup(self, hit: bool) -> None:
        if hit:
            self._hits += 1
        else:
            self._misses += 1
        if self._monitor is not None:
            self._monitor.track_cache(hit)

    # =========================================================================
    # Periodic sweep
    # =========================================================================

    def start_cleanup(self) -> None:
        """Start the periodic expiry sweep on the running event loop.

        Calling it again while the sweep is running is a no-op.
        """
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        logger.debug("Cache sweep started", interval=self._cleanup_interval)

    def stop_cleanup(self) -> None:
        """Stop the periodic expiry sweep."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error("Cache sweep failed", error=str(e))

    def close(self) -> None:
        """Stop the sweep and write a final snapshot."""
        self.stop_cleanup()
        if self._persistent:
            self.save_to_disk()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _persist(self) -> None:
        """Snapshot after a mutation if persistence is on. Caller holds the lock."""
        if self._persistent:
            self.save_to_disk()

    def save_to_disk(self) -> bool:
        """Write the full entry map to the snapshot file.

        Failures are logged and swallowed; the in-memory cache is unaffected.

        Returns:
            True if the snapshot was written.
        """
        if self._cache_file is None:
            return False
        try:
            with self._lock:
                self._write_snapshot(self._cache_file)
            return True
        except CacheIOError as e:
            logger.warning("Failed to save cache to disk", **e.to_dict())
            return False

    def load_from_disk(self) -> int:
        """Replace the in-memory map with the snapshot file, then sweep it.

        A missing file is not an error. Unreadable or malformed snapshots are
        logged and ignored.

        Returns:
            Number of live entries loaded.
        """
        if self._cache_file is None or not self._cache_file.exists():
            return 0
        try:
            entries = self._read_snapshot(self._cache_file)
        except CacheIOError as e:
            logger.warning("Failed to load cache from disk", **e.to_dict())
            return 0

        with self._lock:
            self._entries = entries
            now = time.time()
            for key in [k for k, entry in entries.items() if entry.is_expired(now)]:
                del self._entries[key]
            loaded = len(self._entries)

        logger.info("Cache snapshot loaded", path=str(self._cache_file), entries=loaded)
        return loaded

    def _write_snapshot(self, path: Path) -> None:
        data = {
            "entries": [[key, entry.to_dict()] for key, entry in self._entries.items()],
            "metadata": {
                "version": SNAPSHOT_VERSION,
                "timestamp": time.time(),
            },
        }
        tmp_name: str | None = None
        try:
            payload = json.dumps(data, ensure_ascii=False)
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CacheIOError(f"Cannot write cache snapshot: {e}", path=str(path)) from e

    def _read_snapshot(self, path: Path) -> dict[str, CacheEntry]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheIOError(f"Cannot read cache snapshot: {e}", path=str(path)) from e

        if not isinstance(data, dict):
            raise CacheIOError("Cache snapshot is not an object", path=str(path))

        # Snapshots from the JavaScript bot use "cache" and millisecond times
        time_scale = 1.0
        raw_entries = data.get("entries")
        if raw_entries is None and "cache" in data:
            raw_entries = data["cache"]
            time_scale = 1000.0
        if not isinstance(raw_entries, list):
            raise CacheIOError("Cache snapshot has no entry list", path=str(path))

        entries: dict[str, CacheEntry] = {}
        for pair in raw_entries:
            try:
                key, raw = pair
                entries[str(key)] = CacheEntry.from_dict(raw, self._ttl, time_scale)
            except (TypeError, ValueError, KeyError) as e:
                logger.debug("Skipping malformed snapshot entry", error=str(e))
        return entries
