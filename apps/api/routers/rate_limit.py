"""Fixed-window request quotas kept in Redis, or in process when Redis is off."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

QUOTA_KEY_PREFIX = "aic:rate:"

# key -> (hits, window end)
_windows: Dict[str, Tuple[int, float]] = {}
_windows_lock = asyncio.Lock()


@dataclass
class Quota:
    allowed: bool
    hits: int
    limit: int
    retry_after: int


def _requester(request: Request) -> str:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client and request.client.host else "unknown"


async def _hit_in_process(key: str, limit: int, window_seconds: int) -> Quota:
    now = time.time()
    async with _windows_lock:
        hits, window_end = _windows.get(key, (0, now + window_seconds))
        if now >= window_end:
            hits, window_end = 0, now + window_seconds
        hits += 1
        _windows[key] = (hits, window_end)
    return Quota(hits <= limit, hits, limit, max(int(window_end - now), 1))


async def _hit_in_redis(key: str, limit: int, window_seconds: int) -> Quota:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            hits, ttl = await pipe.execute()
        if ttl is None or int(ttl) < 0:
            await client.expire(key, window_seconds)
            ttl = window_seconds
    finally:
        await client.aclose()
    return Quota(int(hits) <= limit, int(hits), limit, max(int(ttl), 1))


async def consume_quota(key: str, limit: int, window_seconds: int) -> Quota:
    """Record one hit against ``key`` for the current window."""
    full_key = f"{QUOTA_KEY_PREFIX}{key}"
    if settings.REDIS_ENABLED:
        try:
            return await _hit_in_redis(full_key, limit, window_seconds)
        except Exception:
            logger.warning("Redis quota check failed for %s; counting in process", full_key)
    return await _hit_in_process(full_key, limit, window_seconds)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Dependency limiting each requester to ``limit`` calls per window on a route."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        quota = await consume_quota(f"{prefix}:{_requester(request)}", limit, window_seconds)
        if not quota.allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many {prefix} requests. Retry in {quota.retry_after}s.",
                headers={"Retry-After": str(quota.retry_after)},
            )

    return _dependency


def reset_local_counters() -> None:
    _windows.clear()
