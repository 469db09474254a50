"""Credit top-ups through the MD5-signed epay gateway (ZPay)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment import Payment, PaymentLog
from services.credits import apply_delta, ensure_balance, has_log_entry

logger = logging.getLogger(__name__)

CREDIT_PACKAGES: Dict[str, Dict[str, Any]] = {
    "basic": {"id": "basic", "name": "Basic", "price": Decimal("30.00"), "base_credits": 30, "credits": 35},
    "standard": {"id": "standard", "name": "Standard", "price": Decimal("98.00"), "base_credits": 98, "credits": 120},
    "premium": {"id": "premium", "name": "Premium", "price": Decimal("198.00"), "base_credits": 198, "credits": 260},
}
PAYMENT_TYPES = ("alipay", "wxpay")
SIGN_EXCLUDED_FIELDS = ("sign", "sign_type")
CHECK_MIN_AGE = timedelta(minutes=1)
CHECK_MAX_AGE = timedelta(hours=24)


class PaymentGatewayError(Exception):
    pass


class PaymentNotFoundError(Exception):
    pass


@dataclass
class PaymentNotification:
    order_no: str
    trade_no: Optional[str]
    amount: Optional[Decimal]
    success: bool
    valid_sign: bool
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookResult:
    ok: bool
    status_code: int
    message: str
    reason: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        return None


def generate_order_no() -> str:
    """Millisecond timestamp followed by four random digits."""
    return f"{int(time.time() * 1000)}{secrets.randbelow(10000):04d}"


def generate_sign(params: Mapping[str, Any], key: str) -> str:
    """Lowercase MD5 over the sorted non-empty params followed by the merchant key."""
    filtered = {
        name: str(value).strip()
        for name, value in params.items()
        if name not in SIGN_EXCLUDED_FIELDS and value is not None and str(value).strip() != ""
    }
    payload = "&".join(f"{name}={filtered[name]}" for name in sorted(filtered))
    return hashlib.md5((payload + key).encode("utf-8")).hexdigest().lower()


def verify_sign(params: Mapping[str, Any], key: str) -> bool:
    received = str(params.get("sign") or "").strip().lower()
    if not received or not key:
        return False
    return hmac.compare_digest(received, generate_sign(params, key))


def build_payment_form(order_no: str, amount: Decimal, credits: int, payment_type: str) -> Dict[str, Any]:
    """Signed form the browser posts to the gateway's submit page."""
    base_url = settings.SITE_BASE_URL.rstrip("/")
    params = {
        "pid": settings.ZPAY_PID,
        "type": payment_type,
        "out_trade_no": order_no,
        "notify_url": f"{base_url}/api/payment/webhook",
        "return_url": f"{base_url}/pay?o={order_no}",
        "name": f"AI{credits}",
        "money": f"{Decimal(amount):.2f}",
        "sign_type": "MD5",
        "param": order_no,
    }
    params["sign"] = generate_sign(params, settings.ZPAY_KEY)
    return {"url": settings.ZPAY_SUBMIT_URL, "formData": params}


def _is_success_notification(data: Mapping[str, Any]) -> bool:
    return (
        data.get("trade_status") == "TRADE_SUCCESS"
        or data.get("status") in ("success", "1")
        or data.get("pay_status") == "success"
        or data.get("result") == "success"
        or data.get("return_code") == "SUCCESS"
        or data.get("result_code") == "SUCCESS"
        or data.get("paid") in ("1", "true")
    )


def parse_notification(params: Mapping[str, Any]) -> PaymentNotification:
    """Normalize the gateway's field variants into one notification."""
    data = {name: value for name, value in params.items()}
    order_no = str(data.get("out_trade_no") or data.get("order_no") or data.get("orderno") or "").strip()
    trade_no = data.get("trade_no") or data.get("transaction_id") or None
    amount = None
    for name in ("money", "amount", "total_amount"):
        if data.get(name):
            amount = _to_decimal(data.get(name))
            break
    return PaymentNotification(
        order_no=order_no,
        trade_no=str(trade_no) if trade_no else None,
        amount=amount,
        success=_is_success_notification(data),
        valid_sign=verify_sign(data, settings.ZPAY_KEY),
        raw=data,
    )


async def query_gateway_order(order_no: str) -> Optional[Dict[str, Any]]:
    """Ask the gateway for an order's status; None when it cannot say."""
    if settings.MOCK_PAYMENT_SUCCESS:
        return {"paid": True, "trade_no": f"mock_{order_no}", "money": None, "raw": {"mock": True}}
    if not settings.ZPAY_PID or not settings.ZPAY_KEY:
        return None

    params = {"act": "order", "pid": settings.ZPAY_PID, "key": settings.ZPAY_KEY, "out_trade_no": order_no}
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(settings.ZPAY_API_URL, params=params)
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Gateway order query failed for %s: %s", order_no, exc)
        return None

    if str(data.get("code")) != "1":
        return None
    return {
        "paid": str(data.get("status")) == "1",
        "trade_no": data.get("trade_no"),
        "money": _to_decimal(data.get("money")),
        "raw": data,
    }


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    created_at = _as_utc(payment.created_at)
    paid_at = _as_utc(payment.paid_at)
    return {
        "orderNo": payment.order_no,
        "amount": float(payment.amount) if payment.amount is not None else None,
        "credits": payment.credits,
        "paymentType": payment.payment_type,
        "status": payment.status,
        "tradeNo": payment.trade_no,
        "paidAt": paid_at.isoformat() if paid_at else None,
        "createdAt": created_at.isoformat() if created_at else None,
    }


async def get_payment(order_no: str, db: AsyncSession) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.order_no == order_no).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_payment(user_id: str, package_id: str, payment_type: str, db: AsyncSession) -> Dict[str, Any]:
    package = CREDIT_PACKAGES.get(package_id)
    if package is None:
        raise ValueError(f"Unknown credit package: {package_id}")
    if payment_type not in PAYMENT_TYPES:
        raise ValueError(f"Unsupported payment type: {payment_type}")

    order_no = generate_order_no()
    payment = Payment(
        order_no=order_no,
        user_id=user_id,
        amount=package["price"],
        credits=package["credits"],
        payment_type=payment_type,
        status="pending",
        updated_at=_utcnow(),
    )
    db.add(payment)
    await db.commit()
    logger.info("Created payment %s for user %s (%s)", order_no, user_id, package_id)

    form = build_payment_form(order_no, package["price"], package["credits"], payment_type)
    return {
        "orderNo": order_no,
        "amount": float(package["price"]),
        "credits": package["credits"],
        "paymentUrl": form["url"],
        "formData": form["formData"],
    }


async def list_user_payments(user_id: str, db: AsyncSession, limit: int = 20) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(max(1, min(int(limit), 100)))
    )
    return list(result.scalars().all())


async def settle_payment(
    payment: Payment,
    process_type: str,
    db: AsyncSession,
    *,
    trade_no: Optional[str] = None,
    callback_data: Optional[Dict[str, Any]] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark an order paid and grant its credits once, in one transaction."""
    order_no = payment.order_no
    user_id = payment.user_id
    credits = int(payment.credits)
    amount = payment.amount
    now = _utcnow()

    await ensure_balance(user_id, db)

    values: Dict[str, Any] = {
        "status": "success",
        "updated_at": now,
        "paid_at": func.coalesce(Payment.paid_at, now),
    }
    if trade_no:
        values["trade_no"] = trade_no
    if callback_data is not None:
        values["callback_data"] = callback_data
    if process_type != "webhook":
        values["manual_processed"] = True

    await db.execute(
        update(Payment)
        .where(Payment.order_no == order_no)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    granted = False
    balance_after = None
    try:
        if not await has_log_entry(order_no, "recharge", db):
            change = await apply_delta(
                user_id,
                credits,
                "recharge",
                db,
                order_no=order_no,
                note=f"Recharge for order {order_no}",
                idempotency_key=f"recharge:{order_no}",
            )
            granted = not change.duplicate
            balance_after = change.new_value
        db.add(
            PaymentLog(
                order_no=order_no,
                user_id=user_id,
                process_type=process_type,
                amount=amount,
                credits=credits,
                status="success",
                note=note or ("Credits granted" if granted else "Credits already granted"),
            )
        )
        await db.commit()
    except IntegrityError:
        # A concurrent settlement recorded the recharge first.
        await db.rollback()
        logger.info("Recharge for order %s already recorded", order_no)
        return {"orderNo": order_no, "status": "success", "granted": False, "credits": None}

    if granted:
        logger.info("Granted %s credits to user %s for order %s (%s)", credits, user_id, order_no, process_type)
    return {"orderNo": order_no, "status": "success", "granted": granted, "credits": balance_after}


async def mark_payment_failed(
    payment: Payment,
    process_type: str,
    db: AsyncSession,
    *,
    note: str,
    callback_data: Optional[Dict[str, Any]] = None,
) -> None:
    """Move a pending order to failed; settled orders are never downgraded."""
    values: Dict[str, Any] = {"status": "failed", "updated_at": _utcnow()}
    if callback_data is not None:
        values["callback_data"] = callback_data
    await db.execute(
        update(Payment)
        .where(Payment.order_no == payment.order_no, Payment.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.add(
        PaymentLog(
            order_no=payment.order_no,
            user_id=payment.user_id,
            process_type=process_type,
            amount=payment.amount,
            credits=payment.credits,
            status="failed",
            note=note,
        )
    )
    await db.commit()
    logger.warning("Payment %s marked failed: %s", payment.order_no, note)


async def handle_webhook(params: Mapping[str, Any], db: AsyncSession) -> WebhookResult:
    """Process one asynchronous gateway notification."""
    try:
        notification = parse_notification(params)
        if not notification.valid_sign:
            logger.warning("Rejected payment notification with invalid signature (order %s)", notification.order_no)
            return WebhookResult(False, 400, "fail", "invalid signature")
        if not notification.order_no:
            return WebhookResult(False, 400, "fail", "missing order number")

        payment = await get_payment(notification.order_no, db)
        if payment is None:
            logger.warning("Payment notification for unknown order %s", notification.order_no)
            return WebhookResult(False, 400, "fail", "unknown order")
        if payment.status == "success":
            return WebhookResult(True, 200, "success", "already processed")

        expected = Decimal(str(payment.amount))
        epsilon = Decimal(str(settings.PAYMENT_AMOUNT_EPSILON))
        if notification.amount is None or abs(notification.amount - expected) > epsilon:
            await mark_payment_failed(
                payment,
                "webhook",
                db,
                note=f"Amount mismatch: expected {expected}, received {notification.amount}",
                callback_data=notification.raw,
            )
            return WebhookResult(False, 400, "fail", "amount mismatch")

        if notification.success:
            await settle_payment(
                payment,
                "webhook",
                db,
                trade_no=notification.trade_no,
                callback_data=notification.raw,
            )
            return WebhookResult(True, 200, "success")

        await mark_payment_failed(
            payment,
            "webhook",
            db,
            note="Gateway reported an unsuccessful payment",
            callback_data=notification.raw,
        )
        return WebhookResult(True, 200, "success", "payment not successful")
    except Exception:
        logger.exception("Payment notification processing failed")
        await db.rollback()
        return WebhookResult(False, 500, "fail", "internal error")


async def manual_fix(order_no: str, db: AsyncSession) -> Dict[str, Any]:
    """Settle one order by hand; safe to repeat."""
    try:
        payment = await get_payment(order_no, db)
        if payment is None:
            return {"success": False, "error": "Order not found", "orderNo": order_no}
        result = await settle_payment(payment, "manual_fix", db, note="Settled manually by admin")
        return {"success": True, "result": result}
    except Exception as exc:
        logger.exception("Manual fix failed for order %s", order_no)
        await db.rollback()
        return {"success": False, "error": str(exc), "orderNo": order_no}


async def manual_sync(days: int, db: AsyncSession) -> Dict[str, Any]:
    """Settle recent orders the gateway confirms and re-grant missing recharges."""
    cutoff = _utcnow() - timedelta(days=max(int(days), 1))
    result = await db.execute(
        select(Payment)
        .where(Payment.created_at >= cutoff, Payment.status.in_(("pending", "success")))
        .order_by(Payment.created_at.asc())
    )
    orders = [payment.order_no for payment in result.scalars().all()]

    results: List[Dict[str, Any]] = []
    fixed = 0
    for order_no in orders:
        try:
            # Reload per order; a rollback on an earlier order expires loaded rows.
            payment = await get_payment(order_no, db)
            if payment is None:
                continue
            if payment.status == "success":
                if await has_log_entry(order_no, "recharge", db):
                    continue
                outcome = await settle_payment(payment, "manual_sync", db, note="Recharge entry was missing")
                results.append({"orderNo": order_no, "action": "granted_missing_recharge", **outcome})
            else:
                gateway = await query_gateway_order(order_no)
                if not gateway or not gateway.get("paid"):
                    results.append({"orderNo": order_no, "action": "still_pending"})
                    continue
                outcome = await settle_payment(
                    payment,
                    "manual_sync",
                    db,
                    trade_no=gateway.get("trade_no"),
                    callback_data=gateway.get("raw"),
                    note="Confirmed paid by gateway",
                )
                results.append({"orderNo": order_no, "action": "settled", **outcome})
            if outcome.get("granted"):
                fixed += 1
        except Exception as exc:
            logger.exception("Manual sync failed for order %s", order_no)
            await db.rollback()
            results.append({"orderNo": order_no, "action": "error", "error": str(exc)})

    return {"success": True, "checked": len(orders), "fixed": fixed, "results": results}


async def check_payment(order_no: str, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Report an order's state without changing it."""
    payment = await get_payment(order_no, db)
    if payment is None or payment.user_id != user_id:
        raise PaymentNotFoundError(f"Order {order_no} not found")

    gateway_paid = None
    if payment.status == "pending":
        created_at = _as_utc(payment.created_at)
        age = _utcnow() - created_at if created_at else None
        if age is not None and CHECK_MIN_AGE <= age <= CHECK_MAX_AGE:
            gateway = await query_gateway_order(order_no)
            if gateway is not None:
                gateway_paid = bool(gateway.get("paid"))

    return {"order": serialize_payment(payment), "gateway_paid": gateway_paid}
