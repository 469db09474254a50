"""Identity provider calls: hosted auth password grant and Google OAuth."""

from __future__ import annotations

import logging
from typing import Any, Dict
from urllib.parse import urlencode

import httpx

from config import settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
PROVIDER_TIMEOUT_SECONDS = 15.0


class OAuthError(Exception):
    """Raised when the identity provider rejects or cannot complete a sign-in."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


def _identity_from_hosted_user(user: Dict[str, Any]) -> Dict[str, Any]:
    metadata = user.get("user_metadata") or {}
    return {
        "id": str(user.get("id") or ""),
        "email": str(user.get("email") or ""),
        "name": metadata.get("full_name") or metadata.get("name"),
        "picture": metadata.get("avatar_url") or metadata.get("picture"),
        "provider": "email",
    }


async def sign_in_with_password(email: str, password: str) -> Dict[str, Any]:
    """Verify credentials with the hosted auth service's password grant."""
    if not settings.SUPABASE_URL or not settings.SUPABASE_ANON_KEY:
        raise OAuthError("Email sign-in is not configured", status_code=503)

    url = f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1/token"
    headers = {"apikey": settings.SUPABASE_ANON_KEY, "Content-Type": "application/json"}
    try:
        async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS) as client:
            response = await client.post(
                url,
                params={"grant_type": "password"},
                headers=headers,
                json={"email": email, "password": password},
            )
    except httpx.HTTPError as exc:
        logger.warning("Hosted auth service unreachable: %s", exc)
        raise OAuthError("Authentication service unavailable", status_code=502) from exc

    if response.status_code in (400, 401):
        raise OAuthError("Invalid email or password", status_code=401)
    if response.status_code >= 400:
        raise OAuthError(f"Authentication service error ({response.status_code})", status_code=502)

    user = (response.json() or {}).get("user") or {}
    identity = _identity_from_hosted_user(user)
    if not identity["id"] or not identity["email"]:
        raise OAuthError("Authentication service returned no user", status_code=502)
    return identity


def build_google_auth_url(state: str) -> str:
    if not settings.GOOGLE_CLIENT_ID:
        raise OAuthError("Google sign-in is not configured", status_code=503)
    query = urlencode(
        {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
    )
    return f"{GOOGLE_AUTH_URL}?{query}"


async def exchange_google_code(code: str) -> Dict[str, Any]:
    """Trade an authorization code for the user's Google identity."""
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise OAuthError("Google sign-in is not configured", status_code=503)

    try:
        async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS) as client:
            token_response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": settings.GOOGLE_CLIENT_ID,
                    "client_secret": settings.GOOGLE_CLIENT_SECRET,
                    "redirect_uri": settings.GOOGLE_REDIRECT_URI,
                    "grant_type": "authorization_code",
                },
            )
            if token_response.status_code >= 400:
                raise OAuthError("Google rejected the authorization code")
            access_token = (token_response.json() or {}).get("access_token")
            if not access_token:
                raise OAuthError("Google returned no access token")

            userinfo_response = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if userinfo_response.status_code >= 400:
                raise OAuthError("Could not load Google profile", status_code=502)
            profile = userinfo_response.json() or {}
    except httpx.HTTPError as exc:
        logger.warning("Google OAuth request failed: %s", exc)
        raise OAuthError("Google sign-in unavailable", status_code=502) from exc

    email = str(profile.get("email") or "")
    if not email:
        raise OAuthError("Google profile has no email")
    return {
        "email": email,
        "name": profile.get("name"),
        "picture": profile.get("picture"),
        "provider": "google",
    }
