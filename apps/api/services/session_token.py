"""Signed bearer tokens identifying the user behind an API call."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "vi_session"


class SessionTokenError(ValueError):
    """Token is malformed, expired, or not a session token."""


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session token for ``user_id``; returns the token and its expiry epoch."""
    if not user_id:
        raise SessionTokenError("Session token requires a user id.")
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS), 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise SessionTokenError("Session token expired.") from exc
    except JWTError as exc:
        raise SessionTokenError("Invalid session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise SessionTokenError("Invalid session token type.")
    if not str(payload.get("sub") or "").strip():
        raise SessionTokenError("Session token missing subject.")
    return payload
