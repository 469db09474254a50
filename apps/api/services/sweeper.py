"""Fail tasks stuck in pending or processing and return their credits."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.image_task import ImageTask
from services.credits import REFUNDABLE_TASK_STATUSES, refund_if_needed
from services.tasks import ACTIVE_STATUSES, mark_failed

logger = logging.getLogger(__name__)


def timeout_message(threshold_minutes: int) -> str:
    return f"任务处理超时 (timed out after more than {threshold_minutes} minutes)"


def _cutoff(threshold_minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=max(int(threshold_minutes), 1))


async def count_stuck_tasks(threshold_minutes: int, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(ImageTask.task_id)).where(
            ImageTask.status.in_(ACTIVE_STATUSES),
            ImageTask.created_at < _cutoff(threshold_minutes),
        )
    )
    return int(result.scalar() or 0)


async def sweep_stuck_tasks(threshold_minutes: int, db: AsyncSession) -> Dict[str, Any]:
    """Fail pending or processing tasks older than the threshold and settle owed refunds.

    Running it again only touches tasks that still need work.
    """
    threshold_minutes = max(int(threshold_minutes), 1)
    cutoff = _cutoff(threshold_minutes)
    message = timeout_message(threshold_minutes)

    stuck = await db.execute(
        select(ImageTask.task_id).where(
            ImageTask.status.in_(ACTIVE_STATUSES),
            ImageTask.created_at < cutoff,
        )
    )
    stuck_ids = [row[0] for row in stuck.all()]

    results: List[Dict[str, Any]] = []
    failed_count = 0
    refunded_count = 0
    for task_id in stuck_ids:
        try:
            transition = await mark_failed(task_id, message, db)
            refunded = await refund_if_needed(task_id, db)
        except Exception as exc:
            await db.rollback()
            logger.exception("Could not sweep stuck task %s", task_id)
            results.append({"taskId": task_id, "action": "error", "error": str(exc)})
            continue
        failed_count += int(transition.changed)
        refunded_count += int(refunded)
        results.append(
            {
                "taskId": task_id,
                "action": "failed" if transition.changed else "skipped",
                "status": transition.status,
                "refunded": refunded,
            }
        )

    owed = await db.execute(
        select(ImageTask.task_id).where(
            ImageTask.status.in_(REFUNDABLE_TASK_STATUSES),
            ImageTask.credits_deducted.is_(True),
            ImageTask.credits_refunded.is_(False),
        )
    )
    for task_id in [row[0] for row in owed.all()]:
        try:
            refunded = await refund_if_needed(task_id, db)
        except Exception as exc:
            await db.rollback()
            logger.exception("Could not retry refund for task %s", task_id)
            results.append({"taskId": task_id, "action": "error", "error": str(exc)})
            continue
        if refunded:
            refunded_count += 1
            results.append({"taskId": task_id, "action": "refund_retried", "refunded": True})

    if stuck_ids or refunded_count:
        logger.info(
            "Stuck-task sweep: found=%s failed=%s refunded=%s",
            len(stuck_ids),
            failed_count,
            refunded_count,
        )
    return {
        "thresholdMinutes": threshold_minutes,
        "cutoff": cutoff.isoformat(),
        "found": len(stuck_ids),
        "failed": failed_count,
        "refunded": refunded_count,
        "results": results,
    }


async def run_stuck_task_sweep(threshold_minutes: int = 0) -> Dict[str, Any]:
    """Sweep in a fresh session, for schedulers and scripts."""
    minutes = threshold_minutes or int(settings.STUCK_TASK_THRESHOLD_MINUTES)
    async with async_session_maker() as db:
        return await sweep_stuck_tasks(minutes, db)
