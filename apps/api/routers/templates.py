"""
Template gallery endpoints.
"""

from datetime import datetime, timezone
import math
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import String, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.template import Template
from routers.auth_scope import require_admin

router = APIRouter()

SORT_COLUMNS = {
    "created_at": Template.created_at,
    "name": Template.name,
    "use_count": Template.use_count,
}
TEMPLATE_STATUSES = ("draft", "published", "archived")


class TemplatePayload(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    preview_image: str
    base_prompt: str
    style_id: Optional[str] = None
    requires_image: bool = False
    prompt_required: bool = True
    prompt_guide: Optional[str] = None
    prompt_placeholder: Optional[str] = None
    tags: List[str] = []
    status: str = "draft"


class TemplateUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    preview_image: Optional[str] = None
    base_prompt: Optional[str] = None
    style_id: Optional[str] = None
    requires_image: Optional[bool] = None
    prompt_required: Optional[bool] = None
    prompt_guide: Optional[str] = None
    prompt_placeholder: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[str] = None


def _serialize(template: Template) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "preview_image": template.preview_image,
        "base_prompt": template.base_prompt,
        "style_id": template.style_id,
        "requires_image": template.requires_image,
        "prompt_required": template.prompt_required,
        "prompt_guide": template.prompt_guide,
        "prompt_placeholder": template.prompt_placeholder,
        "tags": template.tags or [],
        "status": template.status,
        "use_count": template.use_count,
        "created_at": template.created_at.isoformat() if template.created_at else None,
        "updated_at": template.updated_at.isoformat() if template.updated_at else None,
    }


def _check_status(status: Optional[str]) -> None:
    if status is not None and status not in TEMPLATE_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(TEMPLATE_STATUSES)}")


async def _get_template_or_404(template_id: str, db: AsyncSession) -> Template:
    result = await db.execute(
        select(Template).where(Template.id == template_id).execution_options(populate_existing=True)
    )
    template = result.scalar_one_or_none()
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


@router.get("")
async def list_templates(
    page: int = 1,
    limit: int = 12,
    sort: str = "created_at",
    order: str = "desc",
    status: str = "published",
    tag: Optional[str] = None,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    page = max(1, page)
    limit = min(24, max(4, limit))
    sort_column = SORT_COLUMNS.get(sort, Template.created_at)
    ordering = sort_column.asc() if order.lower() == "asc" else sort_column.desc()

    filters = [Template.status == status]
    if tag:
        filters.append(Template.tags.cast(String).like(f'%"{tag}"%'))
    if search:
        term = f"%{search}%"
        filters.append(or_(Template.name.ilike(term), Template.description.ilike(term)))

    total_result = await db.execute(select(func.count(Template.id)).where(*filters))
    total = int(total_result.scalar() or 0)
    result = await db.execute(
        select(Template).where(*filters).order_by(ordering).offset((page - 1) * limit).limit(limit)
    )
    return {
        "success": True,
        "data": [_serialize(template) for template in result.scalars().all()],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@router.get("/{template_id}")
async def get_template(template_id: str, db: AsyncSession = Depends(get_db)):
    template = await _get_template_or_404(template_id, db)
    return {"success": True, "data": _serialize(template)}


@router.post("", dependencies=[Depends(require_admin)])
async def create_template(payload: TemplatePayload, db: AsyncSession = Depends(get_db)):
    _check_status(payload.status)
    template = Template(**payload.model_dump())
    db.add(template)
    await db.commit()
    await db.refresh(template)
    return {"success": True, "data": _serialize(template)}


@router.put("/{template_id}", dependencies=[Depends(require_admin)])
async def update_template(template_id: str, payload: TemplateUpdate, db: AsyncSession = Depends(get_db)):
    template = await _get_template_or_404(template_id, db)
    changes = payload.model_dump(exclude_unset=True)
    _check_status(changes.get("status"))
    for key, value in changes.items():
        setattr(template, key, value)
    template.updated_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(template)
    return {"success": True, "data": _serialize(template)}


@router.delete("/{template_id}", dependencies=[Depends(require_admin)])
async def delete_template(template_id: str, db: AsyncSession = Depends(get_db)):
    template = await _get_template_or_404(template_id, db)
    await db.delete(template)
    await db.commit()
    return {"success": True}


@router.patch("/{template_id}")
async def increment_use_count(template_id: str, db: AsyncSession = Depends(get_db)):
    """Record one use of a template."""
    result = await db.execute(
        update(Template)
        .where(Template.id == template_id)
        .values(use_count=Template.use_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        raise HTTPException(status_code=404, detail="Template not found")
    return {"success": True, "data": {"message": "Template use count updated"}}
