from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from config import settings
from conftest import ADMIN_HEADER, ADMIN_OVERRIDE, USER_A, USER_B, ZPAY_KEY, auth_header
from models.credit_log import CreditLog
from models.payment import Payment, PaymentLog
from services.credits import get_balance
from services.payments import (
    build_payment_form,
    check_payment,
    generate_order_no,
    generate_sign,
    manual_sync,
    parse_notification,
    verify_sign,
)


async def _create_order(session_maker, order_no="ORD123", amount="100.00", credits=100, user_id=USER_A):
    async with session_maker() as session:
        session.add(
            Payment(
                order_no=order_no,
                user_id=user_id,
                amount=Decimal(amount),
                credits=credits,
                payment_type="alipay",
                status="pending",
            )
        )
        await session.commit()


def _signed_notification(order_no="ORD123", money="100.00", **extra):
    params = {
        "pid": "1001",
        "trade_no": f"T{order_no}",
        "out_trade_no": order_no,
        "type": "alipay",
        "name": "AI100",
        "money": money,
        "trade_status": "TRADE_SUCCESS",
        "sign_type": "MD5",
    }
    params.update(extra)
    params["sign"] = generate_sign(params, ZPAY_KEY)
    return params


async def _recharge_count(session, order_no):
    result = await session.execute(
        select(func.count(CreditLog.id)).where(
            CreditLog.order_no == order_no,
            CreditLog.operation_type == "recharge",
        )
    )
    return int(result.scalar())


def test_sign_ignores_empty_values_and_sign_fields():
    params = {"pid": "1001", "money": "30.00", "out_trade_no": "A1"}
    signature = generate_sign(params, ZPAY_KEY)

    assert len(signature) == 32
    assert signature == signature.lower()
    assert generate_sign({**params, "param": "", "sign": "x", "sign_type": "MD5"}, ZPAY_KEY) == signature
    assert generate_sign(params, "another-key") != signature


def test_verify_sign_rejects_tampering():
    params = _signed_notification()
    assert verify_sign(params, ZPAY_KEY) is True
    assert verify_sign({**params, "money": "1.00"}, ZPAY_KEY) is False
    assert verify_sign({k: v for k, v in params.items() if k != "sign"}, ZPAY_KEY) is False
    assert verify_sign(params, "") is False


def test_parse_notification_accepts_field_variants():
    notification = parse_notification(
        {"order_no": "B2", "amount": "98.00", "result_code": "SUCCESS", "transaction_id": "wx1"}
    )
    assert notification.order_no == "B2"
    assert notification.amount == Decimal("98.00")
    assert notification.trade_no == "wx1"
    assert notification.success is True
    assert notification.valid_sign is False


def test_payment_form_is_signed():
    form = build_payment_form("C3", Decimal("30"), 35, "wxpay")
    data = form["formData"]

    assert data["money"] == "30.00"
    assert data["notify_url"] == "https://images.example.com/api/payment/webhook"
    assert data["return_url"] == "https://images.example.com/pay?o=C3"
    assert verify_sign(data, ZPAY_KEY) is True


def test_order_numbers_are_timestamp_plus_four_digits():
    order_no = generate_order_no()
    assert order_no.isdigit()
    assert len(order_no) == 17


@pytest.mark.asyncio
async def test_replayed_webhook_grants_credits_once(client, session_maker):
    await _create_order(session_maker)
    params = _signed_notification()

    first = await client.get("/api/payment/webhook", params=params)
    second = await client.post("/api/payment/webhook", data=params)

    assert (first.status_code, first.text) == (200, "success")
    assert (second.status_code, second.text) == (200, "success")
    async with session_maker() as session:
        assert await get_balance(USER_A, session) == 105
        assert await _recharge_count(session, "ORD123") == 1
        payment = (await session.execute(select(Payment).where(Payment.order_no == "ORD123"))).scalar_one()
        assert payment.status == "success"
        assert payment.trade_no == "TORD123"
        assert payment.paid_at is not None


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_is_rejected(client, session_maker):
    await _create_order(session_maker)
    params = {**_signed_notification(), "sign": "0" * 32}

    response = await client.get("/api/payment/webhook", params=params)

    assert (response.status_code, response.text) == (400, "fail")
    async with session_maker() as session:
        payment = (await session.execute(select(Payment).where(Payment.order_no == "ORD123"))).scalar_one()
        assert payment.status == "pending"
        assert await _recharge_count(session, "ORD123") == 0


@pytest.mark.asyncio
async def test_webhook_amount_mismatch_fails_order(client, session_maker):
    await _create_order(session_maker)

    response = await client.get("/api/payment/webhook", params=_signed_notification(money="1.00"))

    assert (response.status_code, response.text) == (400, "fail")
    async with session_maker() as session:
        payment = (await session.execute(select(Payment).where(Payment.order_no == "ORD123"))).scalar_one()
        assert payment.status == "failed"
        assert await get_balance(USER_A, session) == 5
        logs = await session.execute(select(PaymentLog).where(PaymentLog.order_no == "ORD123"))
        assert [log.status for log in logs.scalars().all()] == ["failed"]


@pytest.mark.asyncio
async def test_webhook_for_unknown_order_fails(client, session_maker):
    response = await client.get("/api/payment/webhook", params=_signed_notification(order_no="NOPE"))
    assert (response.status_code, response.text) == (400, "fail")


@pytest.mark.asyncio
async def test_settled_order_is_never_downgraded(client, session_maker):
    await _create_order(session_maker)
    await client.get("/api/payment/webhook", params=_signed_notification())

    late = await client.get(
        "/api/payment/webhook",
        params=_signed_notification(trade_status="TRADE_CLOSED"),
    )

    assert late.text == "success"
    async with session_maker() as session:
        payment = (await session.execute(select(Payment).where(Payment.order_no == "ORD123"))).scalar_one()
        assert payment.status == "success"
        assert await get_balance(USER_A, session) == 105


@pytest.mark.asyncio
async def test_manual_fix_is_idempotent(client, session_maker):
    await _create_order(session_maker, order_no="ORD200", amount="30.00", credits=35)

    unauthenticated = await client.get("/api/payment/fix", params={"order_no": "ORD200"})
    assert unauthenticated.status_code == 401

    first = await client.get("/api/payment/fix", params={"order_no": "ORD200", "key": ADMIN_OVERRIDE})
    second = await client.get("/api/payment/fix", params={"order_no": "ORD200"}, headers=ADMIN_HEADER)

    assert first.json()["result"]["granted"] is True
    assert second.json()["result"]["granted"] is False
    async with session_maker() as session:
        assert await get_balance(USER_A, session) == 40
        assert await _recharge_count(session, "ORD200") == 1
        payment = (await session.execute(select(Payment).where(Payment.order_no == "ORD200"))).scalar_one()
        assert payment.manual_processed is True

    missing = await client.get("/api/payment/fix", params={"order_no": "ORD404"}, headers=ADMIN_HEADER)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_manual_sync_settles_gateway_confirmed_orders(db, session_maker):
    await _create_order(session_maker, order_no="ORD300", amount="98.00", credits=120)
    await _create_order(session_maker, order_no="ORD301", amount="30.00", credits=35, user_id=USER_B)

    async def fake_query(order_no):
        if order_no == "ORD300":
            return {"paid": True, "trade_no": "G300", "money": Decimal("98.00"), "raw": {"status": "1"}}
        return {"paid": False, "trade_no": None, "money": None, "raw": {"status": "0"}}

    with patch("services.payments.query_gateway_order", new=AsyncMock(side_effect=fake_query)) as mock_query:
        result = await manual_sync(7, db)
        again = await manual_sync(7, db)

    assert sorted(call.args[0] for call in mock_query.await_args_list) == ["ORD300", "ORD301", "ORD301"]
    assert result["checked"] == 2
    assert result["fixed"] == 1
    actions = {item["orderNo"]: item["action"] for item in result["results"]}
    assert actions == {"ORD300": "settled", "ORD301": "still_pending"}
    assert await get_balance(USER_A, db) == 125

    assert again["fixed"] == 0
    assert await get_balance(USER_A, db) == 125


@pytest.mark.asyncio
async def test_check_payment_does_not_settle(db, session_maker, monkeypatch):
    await _create_order(session_maker, order_no="ORD400")
    monkeypatch.setattr(settings, "MOCK_PAYMENT_SUCCESS", True)

    result = await check_payment("ORD400", USER_A, db)

    assert result["order"]["status"] == "pending"
    payment = (await db.execute(select(Payment).where(Payment.order_no == "ORD400"))).scalar_one()
    assert payment.status == "pending"
    assert await _recharge_count(db, "ORD400") == 0


@pytest.mark.asyncio
async def test_checkout_creates_pending_order(client, session_maker):
    response = await client.post(
        "/api/payment/url",
        json={"packageId": "standard", "paymentType": "wxpay"},
        headers=auth_header(USER_A),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["amount"] == 98.0
    assert data["credits"] == 120
    assert data["formData"]["out_trade_no"] == data["orderNo"]

    bad_package = await client.post(
        "/api/payment/url",
        json={"packageId": "platinum"},
        headers=auth_header(USER_A),
    )
    assert bad_package.status_code == 400

    history = await client.get("/api/payment/history", headers=auth_header(USER_A))
    assert [order["orderNo"] for order in history.json()["orders"]] == [data["orderNo"]]

    foreign = await client.get(
        "/api/payment/check",
        params={"order_no": data["orderNo"]},
        headers=auth_header(USER_B),
    )
    assert foreign.status_code == 404
