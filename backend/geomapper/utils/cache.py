import hashlib
from typing import Any, Dict, Optional

import orjson
from cachetools import TTLCache

from .logging import get_logger

logger = get_logger(__name__)


class PayloadCache:
    """TTL cache for raw remote payloads, keyed by a hash of the request."""

    def __init__(self, max_size: int = 256, ttl: int = 900):
        self.cache: TTLCache = TTLCache(maxsize=max_size, ttl=ttl)
        self.stats = {"hits": 0, "misses": 0, "sets": 0}

    def _make_key(self, key: Any) -> str:
        if isinstance(key, str):
            raw = key.encode("utf-8")
        else:
            raw = orjson.dumps(key, option=orjson.OPT_SORT_KEYS)
        return hashlib.sha256(raw).hexdigest()[:24]

    def get(self, key: Any) -> Optional[Any]:
        cache_key = self._make_key(key)
        try:
            value = self.cache[cache_key]
        except KeyError:
            self.stats["misses"] += 1
            logger.debug("Cache miss", extra={"cache_key": cache_key})
            return None
        self.stats["hits"] += 1
        logger.debug("Cache hit", extra={"cache_key": cache_key})
        return value

    def set(self, key: Any, value: Any) -> None:
        cache_key = self._make_key(key)
        self.cache[cache_key] = value
        self.stats["sets"] += 1

    def clear(self) -> None:
        self.cache.clear()
        logger.info("Payload cache cleared")

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": self.stats["hits"] / lookups if lookups else 0,
            "size": len(self.cache),
            "max_size": self.cache.maxsize,
        }


_cache: Optional[PayloadCache] = None


def get_cache(ttl: int = 900, max_size: int = 256) -> PayloadCache:
    """Return the process-wide payload cache, creating it on first use."""
    global _cache
    if _cache is None:
        _cache = PayloadCache(max_size=max_size, ttl=ttl)
        logger.info(f"Initialized payload cache with TTL={ttl}s, max_size={max_size}")
    return _cache
