"""
Generation history endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.generation_history import GenerationHistory
from routers.auth_scope import AuthContext, get_auth_context

router = APIRouter()


def _serialize(entry: GenerationHistory):
    return {
        "id": entry.id,
        "taskId": entry.task_id,
        "imageUrl": entry.image_url,
        "prompt": entry.prompt,
        "style": entry.style,
        "aspectRatio": entry.aspect_ratio,
        "modelUsed": entry.model_used,
        "status": entry.status,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


@router.get("")
async def list_history(
    limit: int = 20,
    offset: int = 0,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    limit = max(1, min(limit, 100))
    result = await db.execute(
        select(GenerationHistory)
        .where(GenerationHistory.user_id == auth.user_id)
        .order_by(GenerationHistory.created_at.desc())
        .offset(max(offset, 0))
        .limit(limit)
    )
    return {"success": True, "history": [_serialize(entry) for entry in result.scalars().all()]}


@router.get("/count")
async def count_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(func.count(GenerationHistory.id)).where(GenerationHistory.user_id == auth.user_id)
    )
    return {"success": True, "count": int(result.scalar() or 0)}


@router.delete("/{entry_id}")
async def delete_history(
    entry_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(GenerationHistory).where(GenerationHistory.id == entry_id))
    entry = result.scalar_one_or_none()
    if not entry:
        raise HTTPException(status_code=404, detail="History entry not found")
    if entry.user_id != auth.user_id:
        raise HTTPException(status_code=403, detail="History entry belongs to another user")
    await db.delete(entry)
    await db.commit()
    return {"success": True}
