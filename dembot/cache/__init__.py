"""
DemBot cache module.

Provides the TTL/LRU SmartCache and deterministic key builders.
"""

from dembot.cache.keys import profile_key, race_key
from dembot.cache.smart_cache import CacheEntry, CacheStats, SmartCache

__all__ = [
    "SmartCache",
    "CacheEntry",
    "CacheStats",
    "profile_key",
    "race_key",
]
