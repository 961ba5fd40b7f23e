"""Bearer-token authentication and domain-error mapping shared by the routers."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import InspectionError, InsufficientBalanceError
from services.session_token import SessionTokenError, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the calling user from the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except SessionTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload["sub"]).strip(),
        email=str(payload.get("email") or "") or None,
    )


def to_http_error(exc: InspectionError) -> HTTPException:
    """Translate a domain error into the HTTP status the API promises for it."""
    if isinstance(exc, InsufficientBalanceError):
        detail = {
            "error": "insufficient_balance",
            "message": str(exc),
            "required": str(exc.required),
            "available": str(exc.available) if exc.available is not None else None,
        }
        return HTTPException(status_code=exc.status_code, detail=detail)
    return HTTPException(status_code=exc.status_code, detail=str(exc))
