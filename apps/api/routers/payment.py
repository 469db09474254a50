"""
Payment endpoints: checkout, gateway notifications and reconciliation.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.payments import (
    CREDIT_PACKAGES,
    PaymentNotFoundError,
    check_payment,
    create_payment,
    handle_webhook,
    list_user_payments,
    manual_fix,
    manual_sync,
    serialize_payment,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentUrlRequest(BaseModel):
    packageId: str
    paymentType: str = "alipay"


async def _notification_params(request: Request) -> Dict[str, Any]:
    params: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if "application/json" in content_type:
            body = await request.json()
            if isinstance(body, dict):
                params.update(body)
        else:
            form = await request.form()
            params.update({key: value for key, value in form.items() if isinstance(value, str)})
    return params


@router.get("/packages")
async def list_packages():
    return {
        "success": True,
        "packages": [
            {**package, "price": float(package["price"])}
            for package in CREDIT_PACKAGES.values()
        ],
    }


@router.post(
    "/url",
    dependencies=[Depends(rate_limit("payment_url", limit=10, window_seconds=60))],
)
async def payment_url(
    request: PaymentUrlRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Create a pending order and the signed form for the gateway."""
    try:
        data = await create_payment(auth.user_id, request.packageId, request.paymentType, db)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "data": data}


@router.api_route("/webhook", methods=["GET", "POST"])
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Gateway notification; answers with the gateway's plaintext tokens."""
    params = await _notification_params(request)
    result = await handle_webhook(params, db)
    if not result.ok:
        logger.warning("Payment webhook rejected: %s", result.reason)
    return PlainTextResponse(result.message, status_code=result.status_code)


@router.get("/check")
async def payment_check(
    order_no: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await check_payment(order_no, auth.user_id, db)
    except PaymentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True, **result}


@router.get("/history")
async def payment_history(
    limit: int = 20,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    payments = await list_user_payments(auth.user_id, db, limit=limit)
    return {"success": True, "orders": [serialize_payment(payment) for payment in payments]}


@router.get("/fix", dependencies=[Depends(require_admin)])
async def payment_fix(order_no: str, db: AsyncSession = Depends(get_db)):
    result = await manual_fix(order_no, db)
    if not result.get("success"):
        status_code = 404 if result.get("error") == "Order not found" else 500
        raise HTTPException(status_code=status_code, detail=result.get("error"))
    return result


@router.get("/manual-sync", dependencies=[Depends(require_admin)])
async def payment_manual_sync(days: Optional[int] = 7, db: AsyncSession = Depends(get_db)):
    return await manual_sync(days or 7, db)
