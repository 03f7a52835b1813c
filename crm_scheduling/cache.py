"""
Redis-backed JSON cache for geocoding lookups.

Booking forms resolve the same handful of addresses over and over; caching
keeps us inside provider usage policies. Every operation fails open: with
Redis down, reads miss and writes are dropped.
"""

import hashlib
import json
import logging
from typing import Any, Callable, Optional

from .rate_limiter import get_redis_client

logger = logging.getLogger(__name__)


class Cache:
    """JSON values in Redis with a TTL"""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self._client = None

    def _redis(self):
        if self._client is None:
            try:
                self._client = get_redis_client()
            except Exception as e:
                logger.warning(f"⚠️ Redis cache unavailable: {e}")
        return self._client

    def _run(self, op: str, key: str, fn: Callable, default=None):
        client = self._redis()
        if client is None:
            return default
        try:
            return fn(client, f"{self.prefix}{key}")
        except Exception as e:
            logger.error(f"❌ Cache {op} error for {key}: {e}")
            return default

    def get(self, key: str) -> Optional[Any]:
        raw = self._run("get", key, lambda c, k: c.get(k))
        if raw is None:
            logger.debug(f"Cache MISS: {key}")
            return None
        logger.debug(f"Cache HIT: {key}")
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        payload = json.dumps(value)
        return self._run("set", key, lambda c, k: bool(c.setex(k, ttl, payload)), default=False)


cache = Cache()


def build_geocode_key(provider: str, country: Optional[str], address: str) -> str:
    """Cache key for one lookup; the address is hashed since it can identify a person"""
    normalized = " ".join(address.lower().split())
    digest = hashlib.sha256(normalized.encode()).hexdigest()[:32]
    return f"geo:{provider}:{country or 'all'}:{digest}"


def get_cache_stats() -> dict:
    """Hit/miss counters from the Redis server, for /health/redis"""
    client = cache._redis()
    if client is None:
        return {"available": False}

    try:
        info = client.info("stats")
    except Exception as e:
        logger.error(f"❌ Failed to get cache stats: {e}")
        return {"available": False, "error": str(e)}

    hits = info.get("keyspace_hits", 0)
    misses = info.get("keyspace_misses", 0)
    return {
        "available": True,
        "keyspace_hits": hits,
        "keyspace_misses": misses,
        "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
    }
