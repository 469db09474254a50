"""
Image task endpoints: submission, status streams, cancellation and progress.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import (
    AuthContext,
    CallerContext,
    get_auth_context,
    get_caller_context,
    require_internal,
)
from routers.rate_limit import rate_limit
from services import task_notifier
from services.credits import InsufficientCreditsError, refund_if_needed
from services.task_queue import enqueue_image_task
from services.tasks import (
    TERMINAL_STATUSES,
    TaskConflictError,
    TaskNotFoundError,
    TaskPermissionError,
    cancel_task,
    create_task,
    get_task,
    get_user_task,
    list_user_tasks,
    mark_cancelled,
    mark_completed,
    mark_failed,
    mark_processing,
    read_task_snapshot,
    serialize_task,
    update_progress,
)

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class GenerateImageRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    style: Optional[str] = None
    aspectRatio: Optional[str] = None
    model: Optional[str] = None


class TaskNotificationRequest(BaseModel):
    taskId: str
    status: str
    imageUrl: Optional[str] = None
    error: Optional[str] = None


class TaskProgressRequest(BaseModel):
    taskId: str
    progress: int = Field(ge=0, le=100)
    stage: Optional[str] = None


class FinalCheckRequest(BaseModel):
    action: str = "cancel"


def _task_error(exc: Exception) -> HTTPException:
    if isinstance(exc, TaskNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TaskPermissionError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, TaskConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


async def _load_for_caller(task_id: str, caller: CallerContext, db: AsyncSession):
    try:
        if caller.internal:
            task = await get_task(task_id, db)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found")
            return task
        return await get_user_task(task_id, caller.user_id, db)
    except (TaskNotFoundError, TaskPermissionError) as exc:
        raise _task_error(exc) from exc


async def _task_event_stream(task_id: str, snapshot: Dict[str, Any]) -> AsyncIterator[bytes]:
    """Live events for one task, falling back to reading the record between events."""
    handle = task_notifier.subscribe(task_id)
    loop = asyncio.get_running_loop()
    try:
        yield task_notifier.encode_event({"type": "connected", **snapshot})
        if snapshot.get("status") in TERMINAL_STATUSES:
            yield task_notifier.encode_event({"taskId": task_id, "status": snapshot["status"]}, "close")
            return

        deadline = loop.time() + settings.TASK_STREAM_MAX_SECONDS
        while loop.time() < deadline:
            frame = await handle.next_message(timeout=settings.TASK_STREAM_POLL_SECONDS)
            if frame is not None:
                yield frame
                continue
            if handle.closed:
                return

            current = await read_task_snapshot(task_id)
            if current is None:
                yield task_notifier.encode_event({"taskId": task_id, "error": "Task not found"}, "error")
                return
            yield task_notifier.encode_event(current)
            if current.get("status") in TERMINAL_STATUSES:
                yield task_notifier.encode_event({"taskId": task_id, "status": current["status"]}, "close")
                return

        yield task_notifier.encode_event({"taskId": task_id, "status": "timeout"}, "close")
    finally:
        task_notifier.unsubscribe(task_id, handle)


def _stream_response(task_id: str, snapshot: Dict[str, Any]) -> StreamingResponse:
    return StreamingResponse(
        _task_event_stream(task_id, snapshot),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post(
    "/generate-image",
    dependencies=[Depends(rate_limit("generate_image", limit=10, window_seconds=60))],
)
async def generate_image(
    request: GenerateImageRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Charge one credit, record the task and hand it to the image worker."""
    params = {"style": request.style, "aspect_ratio": request.aspectRatio, "model": request.model}
    try:
        task = await create_task(auth.user_id, request.prompt, params, db)
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=402,
            detail={"message": "Insufficient credits", "credits": exc.balance},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    task_id = task.task_id
    try:
        job = enqueue_image_task(task_id)
        task.queue_job_id = job.id
        await db.commit()
    except Exception as exc:
        logger.exception("Could not enqueue image task %s", task_id)
        await db.rollback()
        await mark_failed(task_id, "Image queue unavailable", db)
        await refund_if_needed(task_id, db)
        raise HTTPException(status_code=503, detail="Image generation queue unavailable. Credit refunded.") from exc

    return {"success": True, "taskId": task_id, "status": task.status}


@router.get("/generate-image/pending-tasks")
async def pending_tasks(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Active tasks the client should resume watching after a reload."""
    tasks = await list_user_tasks(auth.user_id, db, active_only=True)
    return {"success": True, "tasks": [serialize_task(task, include_estimate=True) for task in tasks]}


@router.get("/generate-image/recent-tasks")
async def recent_tasks(
    limit: int = 20,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    tasks = await list_user_tasks(auth.user_id, db, limit=limit)
    return {"success": True, "tasks": [serialize_task(task) for task in tasks]}


@router.post("/task-notification")
async def post_task_notification(
    request: TaskNotificationRequest,
    caller: CallerContext = Depends(get_caller_context),
    db: AsyncSession = Depends(get_db),
):
    """Status report from the worker, or a cancel request from the task's owner."""
    status = request.status.strip().lower()
    if not caller.internal:
        if status != "cancelled":
            raise HTTPException(status_code=403, detail="Only cancellation is allowed for users.")
        try:
            result = await cancel_task(request.taskId, caller.user_id, db)
        except (TaskNotFoundError, TaskPermissionError) as exc:
            raise _task_error(exc) from exc
        return {"success": True, **result}

    task = await _load_for_caller(request.taskId, caller, db)
    if status == "processing":
        transition = await mark_processing(task.task_id, db)
    elif status == "completed":
        if not request.imageUrl:
            raise HTTPException(status_code=400, detail="imageUrl is required for completed tasks")
        transition = await mark_completed(task.task_id, request.imageUrl, db)
    elif status == "failed":
        transition = await mark_failed(task.task_id, request.error or "Image generation failed", db)
        await refund_if_needed(task.task_id, db)
    elif status == "cancelled":
        transition = await mark_cancelled(task.task_id, db)
        await refund_if_needed(task.task_id, db)
    else:
        raise HTTPException(status_code=400, detail=f"Unsupported status: {request.status}")
    return {"success": True, "changed": transition.changed, "status": transition.status}


@router.get("/task-notification")
async def get_task_notification(
    taskId: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Final state as JSON for finished tasks, otherwise an event stream."""
    try:
        task = await get_user_task(taskId, auth.user_id, db)
    except (TaskNotFoundError, TaskPermissionError) as exc:
        raise _task_error(exc) from exc
    snapshot = serialize_task(task, include_estimate=True)
    if task.status in TERMINAL_STATUSES:
        return {"success": True, "task": snapshot}
    return _stream_response(taskId, snapshot)


@router.get("/tasks/stream/{task_id}")
async def stream_task(
    task_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        task = await get_user_task(task_id, auth.user_id, db)
    except (TaskNotFoundError, TaskPermissionError) as exc:
        raise _task_error(exc) from exc
    return _stream_response(task_id, serialize_task(task, include_estimate=True))


@router.get("/task-final-check/{task_id}")
async def final_check(
    task_id: str,
    caller: CallerContext = Depends(get_caller_context),
    db: AsyncSession = Depends(get_db),
):
    task = await _load_for_caller(task_id, caller, db)
    return {"success": True, "task": serialize_task(task, include_estimate=True)}


@router.post("/task-final-check/{task_id}")
async def final_check_action(
    task_id: str,
    request: Optional[FinalCheckRequest] = None,
    caller: CallerContext = Depends(get_caller_context),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a task that the client has given up on."""
    action = request.action if request else "cancel"
    if action != "cancel":
        raise HTTPException(status_code=400, detail=f"Unsupported action: {action}")

    task = await _load_for_caller(task_id, caller, db)
    try:
        result = await cancel_task(task_id, task.user_id, db)
    except (TaskNotFoundError, TaskPermissionError) as exc:
        raise _task_error(exc) from exc
    task = await get_task(task_id, db)
    return {"success": True, **result, "task": serialize_task(task)}


@router.post("/update-task-progress", dependencies=[Depends(require_internal)])
async def post_task_progress(
    request: TaskProgressRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await update_progress(request.taskId, request.progress, request.stage, db)
    except (TaskNotFoundError, TaskConflictError) as exc:
        raise _task_error(exc) from exc
    return {
        "success": True,
        "updated": result.changed,
        "task": serialize_task(result.task) if result.task else None,
    }
