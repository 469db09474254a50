"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)

INTERNAL_SECRET_HEADER = "x-internal-secret"
ADMIN_KEY_HEADER = "x-admin-key"


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


@dataclass
class CallerContext:
    """Either a signed-in user or a trusted internal service."""

    auth: Optional[AuthContext] = None
    internal: bool = False

    @property
    def user_id(self) -> Optional[str]:
        return self.auth.user_id if self.auth else None


def _secret_matches(supplied: Optional[str], expected: str) -> bool:
    if not supplied or not expected:
        return False
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def _bearer_token(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    return credentials.credentials


def _context_from_token(token: str) -> AuthContext:
    try:
        payload = decode_session_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    token = _bearer_token(credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _context_from_token(token)


async def get_caller_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> CallerContext:
    """Accept the task-process secret (header or bearer) or a user session."""
    token = _bearer_token(credentials)
    expected = settings.TASK_PROCESS_SECRET_KEY
    if _secret_matches(request.headers.get(INTERNAL_SECRET_HEADER), expected) or _secret_matches(token, expected):
        return CallerContext(internal=True)
    if not token:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return CallerContext(auth=_context_from_token(token))


async def require_internal(caller: CallerContext = Depends(get_caller_context)) -> CallerContext:
    if not caller.internal:
        raise HTTPException(status_code=403, detail="Internal caller required.")
    return caller


async def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Admin bearer secret, or the override key by header or ``key`` query param."""
    if _secret_matches(_bearer_token(credentials), settings.ADMIN_API_SECRET_KEY):
        return
    override = request.headers.get(ADMIN_KEY_HEADER) or request.query_params.get("key")
    if _secret_matches(override, settings.ADMIN_OVERRIDE_KEY):
        return
    if not credentials and not override:
        raise HTTPException(status_code=401, detail="Admin credentials required.")
    raise HTTPException(status_code=403, detail="Invalid admin credentials.")


def is_admin_request(request: Request) -> bool:
    auth_header = request.headers.get("authorization") or ""
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and _secret_matches(token.strip(), settings.ADMIN_API_SECRET_KEY):
        return True
    override = request.headers.get(ADMIN_KEY_HEADER) or request.query_params.get("key")
    return _secret_matches(override, settings.ADMIN_OVERRIDE_KEY)


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Session user when a valid session token is present, else None."""
    token = _bearer_token(credentials)
    if not token:
        return None
    try:
        return _context_from_token(token)
    except HTTPException:
        return None
