"""
Authentication router: email sign-in, Google OAuth and session tokens.
"""

import secrets
import time
from typing import Any, Dict, Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services import ttl_store
from services.auth_provider import (
    OAuthError,
    build_google_auth_url,
    exchange_google_code,
    sign_in_with_password,
)
from services.credits import ensure_balance
from services.session_token import create_session_token, refresh_session_token

router = APIRouter()


class SignInRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    token: str


class SessionResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    session_token: str
    session_expires_at: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    auth_provider: Optional[str] = None


def _pending_key(session_key: str) -> str:
    return f"google_auth:{session_key}"


async def _upsert_user(db: AsyncSession, identity: Dict[str, Any]) -> User:
    user: Optional[User] = None
    if identity.get("id"):
        result = await db.execute(select(User).where(User.id == identity["id"]))
        user = result.scalar_one_or_none()
    if not user:
        result = await db.execute(select(User).where(User.email == identity["email"]))
        user = result.scalar_one_or_none()

    if not user:
        user = User(
            id=identity.get("id") or str(uuid.uuid4()),
            email=identity["email"],
            name=identity.get("name"),
            picture=identity.get("picture"),
            auth_provider=identity.get("provider"),
        )
        db.add(user)
    else:
        if identity.get("name"):
            user.name = identity["name"]
        if identity.get("picture"):
            user.picture = identity["picture"]
        user.auth_provider = identity.get("provider") or user.auth_provider
    await db.commit()
    await ensure_balance(user.id, db)
    return user


def _session_response(user: User) -> SessionResponse:
    session = create_session_token(user_id=user.id, email=user.email, provider=user.auth_provider)
    return SessionResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        picture=user.picture,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.post(
    "/sign-in",
    response_model=SessionResponse,
    dependencies=[Depends(rate_limit("auth_sign_in", limit=10, window_seconds=60))],
)
async def sign_in(request: SignInRequest, db: AsyncSession = Depends(get_db)):
    """Verify email and password with the hosted auth service and open a session."""
    try:
        identity = await sign_in_with_password(request.email.strip(), request.password)
    except OAuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    user = await _upsert_user(db, identity)
    return _session_response(user)


@router.get(
    "/google/init",
    dependencies=[Depends(rate_limit("auth_google_init", limit=20, window_seconds=60))],
)
async def google_init():
    """Start a Google sign-in; the client polls /google/status with the session key."""
    session_key = secrets.token_urlsafe(24)
    try:
        auth_url = build_google_auth_url(session_key)
    except OAuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    await ttl_store.set_value(
        _pending_key(session_key),
        {"status": "pending", "timestamp": int(time.time())},
        settings.OAUTH_STATE_TTL_SECONDS,
    )
    return {"authUrl": auth_url, "sessionKey": session_key}


@router.get("/google/callback")
async def google_callback(
    state: str,
    code: Optional[str] = None,
    error: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    pending = await ttl_store.get_value(_pending_key(state))
    redirect_url = f"{settings.SITE_BASE_URL.rstrip('/')}/auth/callback?state={state}"
    if pending is None:
        return RedirectResponse(f"{redirect_url}&error=expired", status_code=302)

    if error or not code:
        pending.update({"status": "failed", "error": error or "missing_code"})
    else:
        try:
            identity = await exchange_google_code(code)
            user = await _upsert_user(db, identity)
            session = _session_response(user)
            pending.update({"status": "completed", "session": session.model_dump()})
        except OAuthError as exc:
            pending.update({"status": "failed", "error": str(exc)})

    await ttl_store.set_value(_pending_key(state), pending, settings.OAUTH_STATE_TTL_SECONDS)
    return RedirectResponse(redirect_url, status_code=302)


@router.get("/google/status")
async def google_status(sessionKey: str):
    """Report a pending Google sign-in; a completed session is handed out once."""
    pending = await ttl_store.get_value(_pending_key(sessionKey))
    if pending is None:
        raise HTTPException(status_code=404, detail="Unknown or expired sign-in session")

    if pending.get("status", "pending") == "pending":
        return {"status": "pending"}

    finished = await ttl_store.pop_value(_pending_key(sessionKey))
    if finished is None:
        raise HTTPException(status_code=404, detail="Unknown or expired sign-in session")
    if finished.get("status") == "completed":
        return {"status": "completed", "session": finished.get("session")}
    return {"status": "failed", "error": finished.get("error")}


@router.post("/refresh")
async def refresh_session(request: RefreshRequest):
    try:
        session = refresh_session_token(request.token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return {"session_token": session["token"], "session_expires_at": session["expires_at"]}


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        picture=user.picture,
        auth_provider=user.auth_provider,
    )
