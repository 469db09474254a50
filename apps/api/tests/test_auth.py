import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from jose import jwt

from config import settings
from conftest import USER_A, auth_header
from main import app
from services import ttl_store
from services.credits import get_balance
from services.session_token import (
    SESSION_TOKEN_TYPE,
    create_session_token,
    decode_session_token,
    refresh_session_token,
)


def _token_with_expiry(expired_for: timedelta) -> str:
    expired_at = datetime.now(timezone.utc) - expired_for
    claims = {
        "sub": USER_A,
        "type": SESSION_TOKEN_TYPE,
        "iat": int((expired_at - timedelta(hours=24)).timestamp()),
        "exp": int(expired_at.timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def test_session_token_round_trip():
    session = create_session_token(USER_A, "a@example.com", provider="google")
    payload = decode_session_token(session["token"])

    assert payload["sub"] == USER_A
    assert payload["email"] == "a@example.com"
    assert payload["provider"] == "google"
    assert payload["exp"] == session["expires_at"]


def test_expired_token_is_rejected_but_refreshable_within_grace():
    token = _token_with_expiry(timedelta(hours=2))

    with pytest.raises(ValueError, match="expired"):
        decode_session_token(token)

    refreshed = refresh_session_token(token)
    assert decode_session_token(refreshed["token"])["sub"] == USER_A


def test_stale_or_foreign_tokens_cannot_refresh():
    with pytest.raises(ValueError):
        refresh_session_token(_token_with_expiry(timedelta(days=30)))

    foreign = jwt.encode({"sub": USER_A, "type": "other"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(ValueError):
        refresh_session_token(foreign)
    with pytest.raises(ValueError):
        decode_session_token("not-a-token")


@pytest.mark.asyncio
async def test_me_requires_session(client):
    missing = await client.get("/api/auth/me")
    assert missing.status_code == 401
    assert missing.json()["success"] is False

    response = await client.get("/api/auth/me", headers=auth_header(USER_A))
    assert response.status_code == 200
    assert response.json()["email"] == f"{USER_A}@example.com"


@pytest.mark.asyncio
async def test_password_sign_in_creates_user_with_default_credits(client, session_maker):
    identity = {"id": "user-new", "email": "new@example.com", "name": "New User", "picture": None, "provider": "email"}
    with patch("routers.auth.sign_in_with_password", new=AsyncMock(return_value=identity)) as mock_sign_in:
        response = await client.post("/api/auth/sign-in", json={"email": "new@example.com", "password": "pw"})

    mock_sign_in.assert_awaited_once_with("new@example.com", "pw")
    assert response.status_code == 200
    payload = response.json()
    assert payload["user_id"] == "user-new"
    assert decode_session_token(payload["session_token"])["sub"] == "user-new"
    async with session_maker() as session:
        assert await get_balance("user-new", session) == 5


@pytest.mark.asyncio
async def test_google_sign_in_session_is_handed_out_once(client, monkeypatch):
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "client-id")
    identity = {"email": "g@example.com", "name": "G", "picture": None, "provider": "google"}

    init = await client.get("/api/auth/google/init")
    assert init.status_code == 200
    session_key = init.json()["sessionKey"]
    assert f"state={session_key}" in init.json()["authUrl"]

    pending = await client.get("/api/auth/google/status", params={"sessionKey": session_key})
    assert pending.json() == {"status": "pending"}

    with patch("routers.auth.exchange_google_code", new=AsyncMock(return_value=identity)):
        callback = await client.get(
            "/api/auth/google/callback",
            params={"state": session_key, "code": "auth-code"},
        )
    assert callback.status_code == 302
    assert callback.headers["location"] == f"https://images.example.com/auth/callback?state={session_key}"

    completed = await client.get("/api/auth/google/status", params={"sessionKey": session_key})
    assert completed.json()["status"] == "completed"
    assert completed.json()["session"]["email"] == "g@example.com"

    gone = await client.get("/api/auth/google/status", params={"sessionKey": session_key})
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_google_callback_for_unknown_state_redirects_with_error(client):
    response = await client.get("/api/auth/google/callback", params={"state": "unknown", "code": "c"})
    assert response.status_code == 302
    assert response.headers["location"].endswith("state=unknown&error=expired")


@pytest.mark.asyncio
async def test_ttl_store_expires_entries(monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(ttl_store.time, "time", lambda: clock[0])

    await ttl_store.set_value("probe", {"a": 1}, 10)
    assert await ttl_store.get_value("probe") == {"a": 1}

    clock[0] += 11
    assert await ttl_store.get_value("probe") is None


@pytest.mark.asyncio
async def test_ttl_store_prunes_expired_entries_on_write(monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(ttl_store.time, "time", lambda: clock[0])

    await ttl_store.set_value("old", "x", 10)
    clock[0] += 11
    await ttl_store.set_value("new", "y", 10)

    assert list(ttl_store._local_entries) == [f"{ttl_store.KEY_PREFIX}new"]


@pytest.mark.asyncio
async def test_pop_value_hands_an_entry_out_once():
    await ttl_store.set_value("once", {"a": 1}, 60)

    assert await ttl_store.pop_value("once") == {"a": 1}
    assert await ttl_store.pop_value("once") is None
    assert await ttl_store.get_value("once") is None


@pytest.mark.asyncio
async def test_concurrent_status_polls_get_the_session_once(client):
    session_key = "concurrent-key"
    await ttl_store.set_value(
        f"google_auth:{session_key}",
        {"status": "completed", "session": {"email": "g@example.com"}},
        60,
    )

    first, second = await asyncio.gather(
        client.get("/api/auth/google/status", params={"sessionKey": session_key}),
        client.get("/api/auth/google/status", params={"sessionKey": session_key}),
    )

    assert sorted([first.status_code, second.status_code]) == [200, 404]
    winner = first if first.status_code == 200 else second
    assert winner.json()["session"]["email"] == "g@example.com"


@pytest.mark.asyncio
async def test_google_init_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "client-id")
    app.state.disable_rate_limits = False

    statuses = [(await client.get("/api/auth/google/init")).status_code for _ in range(21)]

    assert statuses[:20] == [200] * 20
    assert statuses[20] == 429
