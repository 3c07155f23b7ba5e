"""Bearer session tokens for the credit API.

A token names the account (``sub``), the audience this service accepts and the scopes the
holder may use. End-user sessions get every scope; the scan pipeline is issued a token
that can only consume credits for the account it is scanning for.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "scan_credits_session"

SCOPE_READ = "credits:read"
SCOPE_CONSUME = "credits:consume"
SCOPE_REDEEM = "credits:redeem"
KNOWN_SCOPES = frozenset({SCOPE_READ, SCOPE_CONSUME, SCOPE_REDEEM})
USER_SCOPES = (SCOPE_READ, SCOPE_CONSUME, SCOPE_REDEEM)
PIPELINE_SCOPES = (SCOPE_CONSUME,)


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    scopes: FrozenSet[str]
    expires_at: int
    email: Optional[str] = None

    def allows(self, scope: str) -> bool:
        return scope in self.scopes


def _normalize_scopes(scopes: Iterable[str]) -> FrozenSet[str]:
    requested = frozenset(str(scope).strip() for scope in scopes if str(scope).strip())
    unknown = requested - KNOWN_SCOPES
    if unknown:
        raise ValueError(f"Unknown session scopes: {', '.join(sorted(unknown))}")
    if not requested:
        raise ValueError("A session token needs at least one scope.")
    return requested


def issue_session_token(
    user_id: str,
    *,
    scopes: Iterable[str] = USER_SCOPES,
    email: Optional[str] = None,
    ttl_hours: Optional[int] = None,
) -> Dict[str, Any]:
    granted = _normalize_scopes(scopes)
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS), 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "aud": settings.JWT_AUDIENCE,
        "type": SESSION_TOKEN_TYPE,
        "scope": " ".join(sorted(granted)),
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": claims["exp"],
        "scopes": sorted(granted),
    }


def verify_session_token(token: str) -> SessionClaims:
    """Check signature, expiry and audience, then the token type and scopes."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        user_id=subject,
        scopes=_normalize_scopes(str(payload.get("scope", "")).split()),
        expires_at=int(payload.get("exp") or 0),
        email=str(payload.get("email", "")) or None,
    )
