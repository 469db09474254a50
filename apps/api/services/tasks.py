"""Image task records and their status transitions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.image_task import ImageTask
from services import task_notifier
from services.credits import InsufficientCreditsError, apply_delta, ensure_balance, refund_if_needed

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
PROGRESS_BACKOFF_SECONDS = 0.05
CANCELLED_MESSAGE = "Task cancelled by user"


class TaskNotFoundError(Exception):
    pass


class TaskPermissionError(Exception):
    pass


class TaskConflictError(Exception):
    """Raised when a progress update keeps losing the version race."""


@dataclass
class TransitionResult:
    changed: bool
    status: Optional[str]
    task: Optional[ImageTask] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def wait_seconds(task: ImageTask, now: Optional[datetime] = None) -> int:
    created_at = _as_utc(task.created_at)
    if created_at is None:
        return 0
    current = now or _utcnow()
    return max(int((current - created_at).total_seconds()), 0)


def estimate_stage(wait_time: float) -> str:
    if wait_time < 5:
        return "preparing"
    if wait_time < 10:
        return "configuring"
    if wait_time < 15:
        return "sending_request"
    if wait_time < 120:
        return "processing"
    return "extracting_image"


def estimate_progress(wait_time: float) -> int:
    """Approximate progress for tasks that have not reported any."""
    if wait_time < 5:
        return 5
    if wait_time < 10:
        return 10
    if wait_time < 15:
        return 20
    if wait_time < 30:
        return int(30 + min(30, wait_time))
    if wait_time < 120:
        return int(min(80, 30 + wait_time / 2))
    return int(min(85, 60 + wait_time / 10))


def serialize_task(task: ImageTask, include_estimate: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "taskId": task.task_id,
        "status": task.status,
        "progress": int(task.progress or 0),
        "stage": task.stage,
        "imageUrl": task.image_url,
        "error": task.error_message,
        "prompt": task.prompt,
        "style": task.style,
        "aspectRatio": task.aspect_ratio,
        "model": task.model,
        "creditsRefunded": bool(task.credits_refunded),
        "createdAt": _isoformat(task.created_at),
        "updatedAt": _isoformat(task.updated_at),
        "completedAt": _isoformat(task.completed_at),
    }
    if include_estimate and task.status in ACTIVE_STATUSES:
        waited = wait_seconds(task)
        payload["waitTime"] = waited
        if not task.progress:
            payload["progress"] = estimate_progress(waited)
            payload["stage"] = task.stage if task.stage not in (None, "queued") else estimate_stage(waited)
    return payload


async def get_task(task_id: str, db: AsyncSession) -> Optional[ImageTask]:
    result = await db.execute(
        select(ImageTask).where(ImageTask.task_id == task_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user_task(task_id: str, user_id: str, db: AsyncSession) -> ImageTask:
    task = await get_task(task_id, db)
    if task is None:
        raise TaskNotFoundError(f"Task {task_id} not found")
    if task.user_id != user_id:
        raise TaskPermissionError("Task belongs to another user")
    return task


async def list_user_tasks(
    user_id: str,
    db: AsyncSession,
    active_only: bool = False,
    limit: int = 20,
) -> List[ImageTask]:
    query = select(ImageTask).where(ImageTask.user_id == user_id)
    if active_only:
        query = query.where(ImageTask.status.in_(ACTIVE_STATUSES))
    query = query.order_by(ImageTask.created_at.desc()).limit(max(1, min(int(limit), 100)))
    result = await db.execute(query)
    return list(result.scalars().all())


async def read_task_snapshot(task_id: str) -> Optional[Dict[str, Any]]:
    """Read a serialized task in a fresh session, for long-lived streams."""
    async with async_session_maker() as db:
        task = await get_task(task_id, db)
        if task is None:
            return None
        return serialize_task(task, include_estimate=True)


async def _notify(task: ImageTask) -> None:
    await task_notifier.publish(task.task_id, serialize_task(task))


async def create_task(user_id: str, prompt: str, params: Dict[str, Any], db: AsyncSession) -> ImageTask:
    """Charge the generation cost and insert the pending task in one transaction."""
    prompt = (prompt or "").strip()
    if not prompt:
        raise ValueError("prompt is required")

    task_id = uuid.uuid4().hex
    cost = max(int(settings.TASK_CREDIT_COST), 0)
    await ensure_balance(user_id, db)

    try:
        if cost:
            await apply_delta(
                user_id,
                -cost,
                "consume",
                db,
                note="Image generation",
                idempotency_key=f"consume:{task_id}",
            )
        task = ImageTask(
            task_id=task_id,
            user_id=user_id,
            prompt=prompt,
            style=params.get("style"),
            aspect_ratio=params.get("aspect_ratio"),
            model=params.get("model") or settings.OPENAI_MODEL,
            status="pending",
            progress=0,
            stage="queued",
            lock_version=0,
            credits_deducted=bool(cost),
            credits_refunded=False,
            updated_at=_utcnow(),
        )
        db.add(task)
        await db.commit()
    except InsufficientCreditsError:
        await db.rollback()
        raise
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Could not create task for user %s; credit charge rolled back", user_id)
        raise

    await db.refresh(task)
    logger.info("Created image task %s for user %s", task_id, user_id)
    return task


async def _transition(
    task_id: str,
    allowed: tuple,
    target: str,
    db: AsyncSession,
    **values: Any,
) -> TransitionResult:
    now = _utcnow()
    values.update(status=target, updated_at=now, lock_version=ImageTask.lock_version + 1)
    if target in TERMINAL_STATUSES:
        values["completed_at"] = now

    result = await db.execute(
        update(ImageTask)
        .where(ImageTask.task_id == task_id, ImageTask.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    task = await get_task(task_id, db)
    if result.rowcount != 1:
        current = task.status if task else None
        logger.info("Task %s not moved to %s (current status %s)", task_id, target, current)
        return TransitionResult(changed=False, status=current, task=task)

    await _notify(task)
    return TransitionResult(changed=True, status=target, task=task)


async def mark_processing(task_id: str, db: AsyncSession) -> TransitionResult:
    return await _transition(task_id, ("pending",), "processing", db, stage="processing")


async def mark_completed(task_id: str, image_url: str, db: AsyncSession) -> TransitionResult:
    return await _transition(
        task_id,
        ACTIVE_STATUSES,
        "completed",
        db,
        image_url=image_url,
        progress=100,
        stage="completed",
        error_message=None,
    )


async def mark_failed(task_id: str, error_message: str, db: AsyncSession) -> TransitionResult:
    return await _transition(task_id, ACTIVE_STATUSES, "failed", db, error_message=error_message, stage="failed")


async def mark_cancelled(task_id: str, db: AsyncSession) -> TransitionResult:
    return await _transition(
        task_id,
        ACTIVE_STATUSES,
        "cancelled",
        db,
        error_message=CANCELLED_MESSAGE,
        stage="cancelled",
    )


async def cancel_task(task_id: str, requesting_user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Cancel a task on behalf of its owner and return the charged credit."""
    task = await get_user_task(task_id, requesting_user_id, db)
    if task.status in TERMINAL_STATUSES:
        return {"changed": False, "status": task.status, "refunded": False}

    result = await mark_cancelled(task_id, db)
    refunded = False
    if result.changed:
        refunded = await refund_if_needed(task_id, db)
    return {"changed": result.changed, "status": result.status, "refunded": refunded}


async def update_progress(
    task_id: str,
    progress: int,
    stage: Optional[str],
    db: AsyncSession,
) -> TransitionResult:
    """Raise a task's progress with a version compare-and-swap.

    Progress never goes backwards and terminal tasks are left alone.
    """
    progress = max(0, min(100, int(progress)))
    max_retries = max(int(settings.TASK_PROGRESS_MAX_RETRIES), 0)

    for attempt in range(max_retries + 1):
        task = await get_task(task_id, db)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status in TERMINAL_STATUSES:
            return TransitionResult(changed=False, status=task.status, task=task)

        current_progress = int(task.progress or 0)
        next_progress = max(current_progress, progress)
        next_stage = stage or task.stage
        if next_progress == current_progress and next_stage == task.stage:
            return TransitionResult(changed=False, status=task.status, task=task)

        result = await db.execute(
            update(ImageTask)
            .where(
                ImageTask.task_id == task_id,
                ImageTask.lock_version == task.lock_version,
                ImageTask.status.in_(ACTIVE_STATUSES),
            )
            .values(
                progress=next_progress,
                stage=next_stage,
                lock_version=ImageTask.lock_version + 1,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 1:
            task = await get_task(task_id, db)
            await _notify(task)
            return TransitionResult(changed=True, status=task.status, task=task)

        await asyncio.sleep(PROGRESS_BACKOFF_SECONDS * (2 ** attempt))

    raise TaskConflictError(f"Progress update for task {task_id} lost {max_retries + 1} version races")
