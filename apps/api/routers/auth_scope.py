"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass, field
import secrets
from typing import FrozenSet, Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import verify_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    scopes: FrozenSet[str] = field(default_factory=frozenset)


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = verify_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email, scopes=claims.scopes)


def require_scope(scope: str):
    """Dependency factory: the session must carry ``scope``."""

    async def _dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if scope not in auth.scopes:
            raise HTTPException(status_code=403, detail=f"Session token lacks the {scope} scope.")
        return auth

    return _dependency


async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Guard for support and payment-processor endpoints."""
    configured = (settings.ADMIN_API_KEY or "").strip()
    if not configured:
        raise HTTPException(status_code=503, detail="Admin API is not configured.")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, configured):
        raise HTTPException(status_code=403, detail="Invalid admin key.")
