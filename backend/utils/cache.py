"""
In-process TTL cache.

Used for data that is cheap to refetch and never correctness-critical
(e.g. the recent-speaker list per channel). Entries expire lazily on read and
are swept periodically by the janitor via ``cleanup_expired()``.
"""

import logging
import time
from typing import Any, Optional

logger = logging.getLogger("Cache")


class TTLCache:
    def __init__(self, default_ttl_seconds: float = 60.0, clock=time.monotonic):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = (value, self._clock() + ttl)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_pattern(self, prefix: str) -> int:
        """Drop every key starting with prefix. Returns the number removed."""
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def log_stats(self) -> None:
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total else 0.0
        logger.debug(f"📦 Cache stats | entries={len(self._entries)} hits={self.hits} misses={self.misses} ({hit_rate:.1f}%)")


def speakers_key(channel_id: str) -> str:
    return f"speakers:{channel_id}"


_cache: Optional[TTLCache] = None


def get_cache() -> TTLCache:
    global _cache
    if _cache is None:
        _cache = TTLCache()
    return _cache


def reset_cache() -> None:
    global _cache
    _cache = None
