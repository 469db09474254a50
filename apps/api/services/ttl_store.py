"""Short-lived key/value entries in Redis with an in-process fallback."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "aic:ttl:"

_local_entries: Dict[str, Tuple[str, float]] = {}
_local_lock = asyncio.Lock()


async def _local_set(key: str, raw: str, ttl_seconds: int) -> None:
    now = time.time()
    async with _local_lock:
        for stale_key in [k for k, (_, expires_at) in _local_entries.items() if now >= expires_at]:
            del _local_entries[stale_key]
        _local_entries[key] = (raw, now + ttl_seconds)


async def _local_get(key: str) -> Optional[str]:
    async with _local_lock:
        entry = _local_entries.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if time.time() >= expires_at:
            _local_entries.pop(key, None)
            return None
        return raw


async def _local_pop(key: str) -> Optional[str]:
    async with _local_lock:
        entry = _local_entries.pop(key, None)
    if entry is None or time.time() >= entry[1]:
        return None
    return entry[0]


async def set_value(key: str, value: Any, ttl_seconds: int) -> None:
    full_key = f"{KEY_PREFIX}{key}"
    raw = json.dumps(value, default=str)
    ttl_seconds = max(int(ttl_seconds), 1)
    if settings.REDIS_ENABLED:
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            try:
                await client.setex(full_key, ttl_seconds, raw)
            finally:
                await client.aclose()
            return
        except Exception:
            logger.warning("Redis unavailable for %s; using local store", full_key)
    await _local_set(full_key, raw, ttl_seconds)


async def get_value(key: str) -> Optional[Any]:
    full_key = f"{KEY_PREFIX}{key}"
    raw: Optional[str] = None
    if settings.REDIS_ENABLED:
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            try:
                raw = await client.get(full_key)
            finally:
                await client.aclose()
        except Exception:
            logger.warning("Redis unavailable for %s; using local store", full_key)
            raw = await _local_get(full_key)
    else:
        raw = await _local_get(full_key)
    if raw is None:
        return None
    return json.loads(raw)


async def pop_value(key: str) -> Optional[Any]:
    """Read and remove an entry in one step; only one caller gets it."""
    full_key = f"{KEY_PREFIX}{key}"
    raw: Optional[str] = None
    if settings.REDIS_ENABLED:
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            try:
                raw = await client.getdel(full_key)
            finally:
                await client.aclose()
        except Exception:
            logger.warning("Redis unavailable for %s; using local store", full_key)
            raw = await _local_pop(full_key)
    else:
        raw = await _local_pop(full_key)
    if raw is None:
        return None
    return json.loads(raw)


def clear_local() -> None:
    _local_entries.clear()
