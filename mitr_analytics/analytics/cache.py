import fnmatch
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from mitr_analytics.config import get_section

logger = logging.getLogger(__name__)

ANALYTICS_PATTERN = "analytics:*"
DEFAULT_TTL_SECONDS = 300


class CacheBackend(ABC):
    """Key/value store with per-entry TTL and glob-pattern invalidation."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]: ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None): ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def delete_pattern(self, pattern: str) -> int: ...

    @abstractmethod
    def clear(self): ...

    @abstractmethod
    def cleanup(self) -> int:
        """Drop expired entries, returning how many were removed."""

    @abstractmethod
    def stats(self) -> dict: ...


class InMemoryTTLCache(CacheBackend):
    def __init__(self, default_ttl_seconds: float = DEFAULT_TTL_SECONDS, clock=time.monotonic):
        self.default_ttl_seconds = float(default_ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        ttl = self.default_ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        keys = [k for k in list(self._entries) if fnmatch.fnmatchcase(k, pattern)]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def clear(self):
        self._entries.clear()

    def cleanup(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in list(self._entries.items()) if now >= expires_at]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def stats(self) -> dict:
        return {"size": len(self._entries), "keys": sorted(self._entries)}


_cache: Optional[CacheBackend] = None


def get_cache() -> CacheBackend:
    global _cache
    if _cache is None:
        ttl = get_section("analytics_cache").get("ttl_seconds", DEFAULT_TTL_SECONDS)
        _cache = InMemoryTTLCache(default_ttl_seconds=float(ttl))
    return _cache


def set_cache(cache: CacheBackend):
    global _cache
    _cache = cache


def invalidate_analytics_cache() -> int:
    removed = get_cache().delete_pattern(ANALYTICS_PATTERN)
    if removed:
        logger.debug(f"Invalidated {removed} analytics cache entries")
    return removed


def generate_filter_hash(filters: Optional[dict]) -> str:
    clean = {k: v for k, v in (filters or {}).items() if v not in (None, "", [], {})}
    payload = json.dumps(clean, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]


def generate_cache_key(prefix: str, params: Optional[dict] = None) -> str:
    if not params:
        return prefix
    return f"{prefix}:{generate_filter_hash(params)}"
