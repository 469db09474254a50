"""
Credit balance endpoints.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import (
    AuthContext,
    CallerContext,
    ensure_user_scope,
    get_auth_context,
    get_caller_context,
    get_optional_auth_context,
    is_admin_request,
)
from routers.rate_limit import consume_quota
from services import ttl_store
from services.credits import (
    CreditLedgerError,
    InsufficientCreditsError,
    adjust,
    get_balance,
    get_credit_summary,
    reconcile,
    reconcile_all,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class CreditUpdateRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    action: str
    amount: Optional[int] = Field(default=None, ge=1)


class CreditSyncRequest(BaseModel):
    userId: Optional[str] = None


def _cache_key(user_id: str) -> str:
    return f"credits:{user_id}"


async def _cache_balance(user_id: str, credits: int) -> None:
    await ttl_store.set_value(_cache_key(user_id), credits, settings.CREDITS_CACHE_TTL_SECONDS)


@router.post("/update")
async def update_credits(
    request: CreditUpdateRequest,
    caller: CallerContext = Depends(get_caller_context),
    db: AsyncSession = Depends(get_db),
):
    """Deduct from the caller's own balance, or add credits as an internal service."""
    action = request.action.strip().lower()
    if action not in ("deduct", "add"):
        raise HTTPException(status_code=400, detail="action must be 'deduct' or 'add'")
    if action == "add" and not caller.internal:
        raise HTTPException(status_code=403, detail="Adding credits requires an internal caller.")
    user_id = request.userId if caller.internal else ensure_user_scope(caller.user_id, request.userId)

    amount = request.amount or max(int(settings.TASK_CREDIT_COST), 1)
    delta = amount if action == "add" else -amount
    operation_type = "recharge" if action == "add" else "consume"
    try:
        change = await adjust(user_id, delta, operation_type, db, note=f"credits/update {action}")
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": "Insufficient credits", "credits": exc.balance},
        ) from exc
    except CreditLedgerError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    await _cache_balance(user_id, change.new_value)
    return {"success": True, "credits": change.new_value}


@router.get("/get")
async def get_credits(
    request: Request,
    force: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Read the balance; callers over the per-user quota get the cached value."""
    if not getattr(request.app.state, "disable_rate_limits", False):
        quota = await consume_quota(
            f"credits_get:{auth.user_id}",
            settings.CREDITS_GET_RATE_LIMIT,
            settings.CREDITS_GET_RATE_WINDOW_SECONDS,
        )
        if not quota.allowed:
            cached = None if force in ("1", "true") else await ttl_store.get_value(_cache_key(auth.user_id))
            if cached is None:
                raise HTTPException(status_code=429, detail="Too many credit requests. Try again later.")
            return {"success": True, "credits": int(cached), "cached": True}

    try:
        credits = await get_balance(auth.user_id, db)
    except CreditLedgerError:
        # Degraded read: report the default grant rather than failing the page.
        logger.exception("Credit ledger unavailable for user %s", auth.user_id)
        return {"success": True, "credits": int(settings.DEFAULT_CREDIT_GRANT), "degraded": True}

    await _cache_balance(auth.user_id, credits)
    return {"success": True, "credits": credits}


@router.get("/summary")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_credit_summary(auth.user_id, db)
    except CreditLedgerError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.post("/sync")
async def sync_credits(
    request: Request,
    body: Optional[CreditSyncRequest] = None,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Reconcile balances with the credit log: all users for admins, else the caller."""
    target_user = body.userId if body else None
    if is_admin_request(request):
        if target_user:
            return {"success": True, "results": [await reconcile(target_user, db)]}
        results = await reconcile_all(db)
        return {
            "success": True,
            "corrected": sum(1 for item in results if item["diff"]),
            "results": results,
        }

    if auth is None:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    result = await reconcile(ensure_user_scope(auth.user_id, target_user), db)
    await _cache_balance(auth.user_id, result["new"])
    return {"success": True, "results": [result]}
