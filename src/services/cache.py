"""In-memory TTL cache for collaborator lookups."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Optional

from core.config import get_settings
from core.logging_config import get_logger

LOGGER = get_logger(__name__)
SETTINGS = get_settings()


@dataclass
class CacheEntry:
    """A cached value and the monotonic time it stops being valid."""

    value: Any
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.monotonic()) >= self.expires_at


class TTLCache:
    """
    Small per-process cache keyed by any hashable value.

    Not shared between workers; stale participant contact info is tolerable
    for at most ``default_ttl_seconds``.
    """

    def __init__(self, default_ttl_seconds: float = 900):
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._default_ttl = default_ttl_seconds
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired():
            self._entries.pop(key, None)
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        if ttl <= 0:
            return
        self._entries[key] = CacheEntry(value=value, expires_at=time.monotonic() + ttl)

    def delete(self, key: Hashable) -> bool:
        """Drop one key. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def cleanup_expired(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = time.monotonic()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    @property
    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": self.size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 3) if total else 0.0,
        }


_participant_cache = TTLCache(default_ttl_seconds=SETTINGS.directory_cache_ttl_seconds)


def get_participant_cache() -> TTLCache:
    """Get the process-wide participant directory cache."""
    return _participant_cache


__all__ = [
    "TTLCache",
    "CacheEntry",
    "get_participant_cache",
]
