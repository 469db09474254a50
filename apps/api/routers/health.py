"""
Health probes for the API, its stores and the upstream providers it depends on.
"""

import asyncio
from typing import Any, Dict, List, Tuple

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.task_queue import get_image_queue

router = APIRouter()


def _missing_settings() -> List[str]:
    missing = []
    if not settings.OPENAI_API_KEY:
        missing.append("OPENAI_API_KEY")
    if not settings.ZPAY_PID or not settings.ZPAY_KEY:
        missing.append("ZPAY_PID/ZPAY_KEY")
    return missing


async def _check_database() -> Tuple[bool, str]:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return False, f"down: {exc}"
    return True, "up"


async def _check_redis() -> Tuple[bool, str]:
    if not settings.REDIS_ENABLED:
        return True, "disabled"
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as exc:
        return False, f"down: {exc}"
    finally:
        await client.aclose()
    return True, "up"


async def _image_queue_depth() -> Any:
    if not settings.REDIS_ENABLED:
        return None
    try:
        return await asyncio.to_thread(lambda: get_image_queue().count)
    except Exception:
        return "unknown"


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Component status; any store that is down marks the API degraded."""
    database_ok, database_status = await _check_database()
    redis_ok, redis_status = await _check_redis()
    return {
        "status": "healthy" if database_ok and redis_ok else "degraded",
        "api": "up",
        "database": database_status,
        "redis": redis_status,
        "image_queue_depth": await _image_queue_depth(),
        "image_api_key": "configured" if settings.OPENAI_API_KEY else "missing",
        "payment_gateway": "configured" if settings.ZPAY_PID and settings.ZPAY_KEY else "missing",
    }


@router.get("/health/ready")
async def readiness_check():
    """Not ready until image generation and payments are configured."""
    missing = _missing_settings()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
