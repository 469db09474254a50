"""Credit ledger: per-user balances backed by an append-only credit log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_balance import CreditBalance
from models.credit_log import CreditLog
from models.image_task import ImageTask

logger = logging.getLogger(__name__)

OPERATION_TYPES = ("recharge", "consume", "refund", "sync")
REFUNDABLE_TASK_STATUSES = ("failed", "cancelled")


class CreditLedgerError(Exception):
    """Raised when the ledger cannot read or write a balance."""


class InsufficientCreditsError(CreditLedgerError):
    """Raised when a debit would take the balance below zero."""

    def __init__(self, balance: int, required: int):
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Required: {required}, available: {balance}.")


@dataclass
class CreditChange:
    old_value: int
    change_value: int
    new_value: int
    duplicate: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _read_credits(user_id: str, db: AsyncSession) -> Optional[int]:
    result = await db.execute(select(CreditBalance.credits).where(CreditBalance.user_id == user_id))
    value = result.scalar_one_or_none()
    return int(value) if value is not None else None


async def ensure_balance(user_id: str, db: AsyncSession) -> int:
    """Return the balance, creating the row with the default grant on first access.

    Creating the row commits, so callers that stage other writes must call this first.
    """
    current = await _read_credits(user_id, db)
    if current is not None:
        return current

    grant = max(int(settings.DEFAULT_CREDIT_GRANT), 0)
    db.add(CreditBalance(user_id=user_id, credits=grant, initial_grant=grant))
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the row first.
        await db.rollback()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise CreditLedgerError(f"Could not create credit balance for {user_id}") from exc

    current = await _read_credits(user_id, db)
    if current is None:
        raise CreditLedgerError(f"Credit balance for {user_id} is missing after creation")
    logger.info("Created credit balance for user %s with %s credits", user_id, grant)
    return current


async def get_balance(user_id: str, db: AsyncSession) -> int:
    try:
        return await ensure_balance(user_id, db)
    except SQLAlchemyError as exc:
        raise CreditLedgerError(f"Could not read credit balance for {user_id}") from exc


async def _find_log_by_key(idempotency_key: str, db: AsyncSession) -> Optional[CreditLog]:
    result = await db.execute(select(CreditLog).where(CreditLog.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def apply_delta(
    user_id: str,
    delta: int,
    operation_type: str,
    db: AsyncSession,
    *,
    order_no: Optional[str] = None,
    note: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> CreditChange:
    """Stage a balance change and its log entry without committing.

    The balance moves through a single conditional increment so concurrent
    debits can never overdraw it. A replayed idempotency key changes nothing.
    """
    if operation_type not in OPERATION_TYPES:
        raise ValueError(f"Unknown credit operation: {operation_type}")
    delta = int(delta)

    if idempotency_key:
        existing = await _find_log_by_key(idempotency_key, db)
        if existing is not None:
            return CreditChange(
                old_value=existing.old_value,
                change_value=existing.change_value,
                new_value=existing.new_value,
                duplicate=True,
            )

    await ensure_balance(user_id, db)

    values: Dict[str, Any] = {"credits": CreditBalance.credits + delta, "updated_at": _utcnow()}
    if order_no and operation_type == "recharge":
        values["last_order_no"] = order_no
    result = await db.execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == user_id, CreditBalance.credits + delta >= 0)
        .values(**values)
        .returning(CreditBalance.credits)
        .execution_options(synchronize_session=False)
    )
    new_value = result.scalar_one_or_none()
    if new_value is None:
        available = await _read_credits(user_id, db) or 0
        raise InsufficientCreditsError(balance=available, required=-delta)

    new_value = int(new_value)
    db.add(
        CreditLog(
            user_id=user_id,
            order_no=order_no,
            operation_type=operation_type,
            old_value=new_value - delta,
            change_value=delta,
            new_value=new_value,
            note=note,
            idempotency_key=idempotency_key,
        )
    )
    await db.flush()
    return CreditChange(old_value=new_value - delta, change_value=delta, new_value=new_value)


async def adjust(
    user_id: str,
    delta: int,
    operation_type: str,
    db: AsyncSession,
    order_no: Optional[str] = None,
    note: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> CreditChange:
    """Apply a balance change and commit it together with its log entry."""
    try:
        change = await apply_delta(
            user_id,
            delta,
            operation_type,
            db,
            order_no=order_no,
            note=note,
            idempotency_key=idempotency_key,
        )
        await db.commit()
    except InsufficientCreditsError:
        await db.rollback()
        raise
    except IntegrityError:
        await db.rollback()
        if not idempotency_key:
            raise
        # Lost a race on the same idempotency key; the winner's entry stands.
        existing = await _find_log_by_key(idempotency_key, db)
        if existing is None:
            raise
        return CreditChange(
            old_value=existing.old_value,
            change_value=existing.change_value,
            new_value=existing.new_value,
            duplicate=True,
        )

    if not change.duplicate:
        logger.info(
            "Credit %s for user %s: %s -> %s (%+d)",
            operation_type,
            user_id,
            change.old_value,
            change.new_value,
            change.change_value,
        )
    return change


async def has_log_entry(order_no: str, operation_type: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(CreditLog.id)
        .where(CreditLog.order_no == order_no, CreditLog.operation_type == operation_type)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def reconcile(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Recompute a balance from its log and correct any drift with a sync entry."""
    await ensure_balance(user_id, db)
    result = await db.execute(
        select(CreditBalance).where(CreditBalance.user_id == user_id).execution_options(populate_existing=True)
    )
    balance = result.scalar_one()

    total = await db.execute(
        select(func.coalesce(func.sum(CreditLog.change_value), 0)).where(
            CreditLog.user_id == user_id,
            CreditLog.operation_type != "sync",
        )
    )
    expected = int(balance.initial_grant or 0) + int(total.scalar() or 0)
    old_value = int(balance.credits)
    diff = expected - old_value

    if diff:
        balance.credits = expected
        balance.updated_at = _utcnow()
        db.add(
            CreditLog(
                user_id=user_id,
                operation_type="sync",
                old_value=old_value,
                change_value=diff,
                new_value=expected,
                note="Balance reconciled from credit log",
            )
        )
        await db.commit()
        logger.warning("Reconciled credits for user %s: %s -> %s", user_id, old_value, expected)

    return {"user_id": user_id, "old": old_value, "new": expected, "diff": diff}


async def reconcile_all(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(select(CreditBalance.user_id))
    user_ids = [row[0] for row in result.all()]
    return [await reconcile(user_id, db) for user_id in user_ids]


async def refund_if_needed(task_id: str, db: AsyncSession) -> bool:
    """Return the task's credit once if it ended in failure after being charged.

    The refund flag flips with a conditional update and the credit is written
    under ``refund:<task_id>`` in the same transaction.
    """
    result = await db.execute(
        select(
            ImageTask.user_id,
            ImageTask.status,
            ImageTask.credits_deducted,
            ImageTask.credits_refunded,
        ).where(ImageTask.task_id == task_id)
    )
    row = result.first()
    if row is None:
        return False
    user_id, status, deducted, refunded = row
    if status not in REFUNDABLE_TASK_STATUSES or not deducted or refunded:
        return False

    await ensure_balance(user_id, db)
    flagged = await db.execute(
        update(ImageTask)
        .where(
            ImageTask.task_id == task_id,
            ImageTask.status.in_(REFUNDABLE_TASK_STATUSES),
            ImageTask.credits_deducted.is_(True),
            ImageTask.credits_refunded.is_(False),
        )
        .values(credits_refunded=True, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    if flagged.rowcount != 1:
        await db.rollback()
        return False

    try:
        change = await apply_delta(
            user_id,
            max(int(settings.TASK_CREDIT_COST), 0),
            "refund",
            db,
            note=f"Refund for task {task_id}",
            idempotency_key=f"refund:{task_id}",
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning("Refund for task %s was already recorded", task_id)
        return False

    if change.duplicate:
        return False
    logger.info("Refunded task %s for user %s (balance %s)", task_id, user_id, change.new_value)
    return True


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_balance(user_id, db)
    result = await db.execute(
        select(CreditLog)
        .where(CreditLog.user_id == user_id)
        .order_by(CreditLog.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": balance,
        "default_grant": max(int(settings.DEFAULT_CREDIT_GRANT), 0),
        "costs": {
            "image_generation": max(int(settings.TASK_CREDIT_COST), 0),
        },
        "recent_entries": [
            {
                "id": entry.id,
                "operation_type": entry.operation_type,
                "order_no": entry.order_no,
                "old_value": entry.old_value,
                "change_value": entry.change_value,
                "new_value": entry.new_value,
                "note": entry.note,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
