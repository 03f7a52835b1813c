"""
Fixed-window rate limiting for the geocoding proxy.

Counts are kept in process memory and pushed to Redis every few seconds, so
several API workers converge on a shared budget without a Redis round trip
per request. When Redis is unreachable each worker simply counts on its own.
"""

import logging
import os
import time
from dataclasses import dataclass
from threading import Lock
from typing import Optional

import redis
from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

REDIS_SYNC_INTERVAL = int(os.getenv("RATE_LIMIT_SYNC_SECONDS", "10"))
SWEEP_INTERVAL = 60  # Drop expired windows at most once a minute

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """
    Shared Redis connection (REDIS_URL, or REDIS_HOST/REDIS_PORT/REDIS_PASSWORD/
    REDIS_DB/REDIS_SSL). Raises when the server cannot be reached.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    options = {
        "decode_responses": True,
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "retry_on_timeout": True,
        "health_check_interval": 30,
    }
    try:
        if os.getenv("REDIS_URL"):
            client = redis.from_url(os.environ["REDIS_URL"], **options)
        else:
            client = redis.Redis(
                host=os.getenv("REDIS_HOST", "localhost"),
                port=int(os.getenv("REDIS_PORT", "6379")),
                password=os.getenv("REDIS_PASSWORD") or None,
                db=int(os.getenv("REDIS_DB", "0")),
                ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
                **options,
            )
        client.ping()
    except Exception as e:
        logger.error(f"❌ Failed to connect to Redis: {e}")
        raise

    logger.info("✅ Redis connected")
    _redis_client = client
    return client


@dataclass
class _Window:
    count: int
    resets_at: int
    synced_at: int


_windows: dict[str, _Window] = {}
_windows_lock = Lock()
_last_sweep = 0


def _sweep_expired(now: int) -> None:
    """Forget windows that have run out; caller holds ``_windows_lock``"""
    global _last_sweep

    if now - _last_sweep < SWEEP_INTERVAL:
        return

    expired = [key for key, window in _windows.items() if now >= window.resets_at]
    for key in expired:
        del _windows[key]
    if expired:
        logger.debug(f"🧹 Dropped {len(expired)} expired rate limit window(s)")
    _last_sweep = now


def _load_window(key: str, window_seconds: int, now: int, client: Optional[redis.Redis]) -> _Window:
    """Start a window for ``key``, resuming another worker's count when Redis has one"""
    window = _Window(count=0, resets_at=now + window_seconds, synced_at=now)
    if client is None:
        return window
    try:
        stored, ttl = client.get(key), client.ttl(key)
        if stored and ttl > 0:
            window.count = int(stored)
            window.resets_at = now + ttl
    except Exception as e:
        logger.warning(f"⚠️ Could not read rate limit from Redis, counting locally: {e}")
    return window


def check_rate_limit(
    key: str, limit: int, window_seconds: int, client: Optional[redis.Redis]
) -> tuple[bool, int, int]:
    """Count one request against ``key``

    Args:
        key: Counter name, e.g. ``geocode:203.0.113.7``
        limit: Requests allowed per window
        window_seconds: Window length
        client: Redis connection, or None to count in memory only

    Returns:
        (allowed, count_in_window, seconds_until_reset)
    """
    now = int(time.time())

    with _windows_lock:
        _sweep_expired(now)

        window = _windows.get(key)
        if window is None:
            window = _windows[key] = _load_window(key, window_seconds, now, client)
        elif now >= window.resets_at:
            window.count = 0
            window.resets_at = now + window_seconds
            window.synced_at = 0

        allowed = window.count < limit
        if allowed:
            window.count += 1

        if client is not None and now - window.synced_at >= REDIS_SYNC_INTERVAL:
            try:
                client.set(key, window.count, ex=max(window.resets_at - now, 1))
                window.synced_at = now
            except Exception as e:
                logger.warning(f"⚠️ Could not push rate limit to Redis: {e}")

        return allowed, window.count, max(0, window.resets_at - now)


def _client_key(request: Request, key_prefix: str, use_ip: bool) -> str:
    if not use_ip:
        return f"{key_prefix}:global"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else "unknown"
    return f"{key_prefix}:{ip}"


def create_rate_limiter(
    limit: int, window_seconds: int, key_prefix: str = "rate_limit", use_ip: bool = True
):
    """
    Build a FastAPI dependency enforcing ``limit`` requests per ``window_seconds``

    Example:
        rate_limit_geocode = create_rate_limiter(limit=60, window_seconds=60, key_prefix="geocode")

        @router.get("/geocode")
        def geocode(address: str, _: None = Depends(rate_limit_geocode)):
            ...
    """

    async def rate_limiter(request: Request):
        try:
            client = get_redis_client()
        except Exception:
            client = None

        key = _client_key(request, key_prefix, use_ip)
        allowed, count, retry_after = check_rate_limit(key, limit, window_seconds, client)

        if not allowed:
            logger.warning(f"🚫 Rate limit exceeded for {key} ({count}/{limit})")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                    "retry_after": retry_after,
                    "limit": limit,
                    "window_seconds": window_seconds,
                },
                headers={"Retry-After": str(retry_after)},
            )

        request.state.rate_limit_remaining = limit - count

    return rate_limiter
