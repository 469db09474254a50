"""
Operational endpoints guarded by the admin secret.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import require_admin
from services.sweeper import count_stuck_tasks, sweep_stuck_tasks

router = APIRouter(dependencies=[Depends(require_admin)])


class StuckTaskSweepRequest(BaseModel):
    timeThresholdMinutes: Optional[int] = Field(default=None, ge=1)


@router.post("/fix-stuck-tasks")
async def fix_stuck_tasks(
    body: Optional[StuckTaskSweepRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """Fail tasks stuck in pending or processing and refund them."""
    minutes = (body.timeThresholdMinutes if body else None) or settings.STUCK_TASK_THRESHOLD_MINUTES
    result = await sweep_stuck_tasks(minutes, db)
    return {"success": True, **result}


@router.get("/fix-stuck-tasks")
async def stuck_task_count(
    timeThresholdMinutes: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
):
    minutes = timeThresholdMinutes or settings.STUCK_TASK_THRESHOLD_MINUTES
    return {
        "success": True,
        "thresholdMinutes": minutes,
        "stuckCount": await count_stuck_tasks(minutes, db),
    }
