"""Signed session tokens issued after the identity provider confirms a user."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "aic_session"
# Expired tokens may still be exchanged for a fresh one within this window.
REFRESH_GRACE = timedelta(days=7)


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    provider: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    if provider:
        claims["provider"] = provider

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {"token": token, "expires_at": int(expires_at.timestamp())}


def _validate_claims(payload: Dict[str, Any]) -> Dict[str, Any]:
    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")
    return payload


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a live session token; raises ValueError otherwise."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise ValueError("Session token expired.") from exc
    except JWTError as exc:
        raise ValueError("Invalid session token.") from exc
    return _validate_claims(payload)


def refresh_session_token(token: str) -> Dict[str, Any]:
    """Issue a new token for a valid or recently expired one."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError as exc:
        raise ValueError("Invalid session token.") from exc
    payload = _validate_claims(payload)

    expired_at = datetime.fromtimestamp(int(payload.get("exp", 0)), tz=timezone.utc)
    if datetime.now(timezone.utc) - expired_at > REFRESH_GRACE:
        raise ValueError("Session token too old to refresh.")

    return create_session_token(
        user_id=str(payload["sub"]),
        email=payload.get("email"),
        provider=payload.get("provider"),
    )
