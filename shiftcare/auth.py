import datetime as dt
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings


bearer_scheme = HTTPBearer(auto_error=False)
_ALGORITHM = "HS256"


def create_access_token(
    subject: str,
    *,
    flow: str,
    phone: Optional[str] = None,
    expires_delta: Optional[dt.timedelta] = None,
) -> str:
    """Mint a signed, self-contained session credential.

    Sessions are stateless: nothing is stored server side, so a token stays
    valid until ``exp`` and cannot be revoked earlier.
    """
    now = dt.datetime.now(dt.timezone.utc)
    delta = expires_delta if expires_delta is not None else settings.session_expires_delta
    payload = {
        "sub": subject,
        "flow": flow,
        "iat": int(now.timestamp()),
        "exp": int((now + delta).timestamp()),
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
    }
    if phone:
        payload["phone"] = phone
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Validate signature, expiry and required claims. Raises jwt.InvalidTokenError."""
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[_ALGORITHM],
        audience=(settings.JWT_AUDIENCE if settings.JWT_VALIDATE_AUD else None),
        issuer=settings.JWT_ISSUER,
        leeway=settings.JWT_CLOCK_SKEW_SECS,
        options={"require": ["exp", "iat", "sub"], "verify_aud": settings.JWT_VALIDATE_AUD},
    )


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_session(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> dict:
    if creds is None or not creds.credentials:
        raise _unauthorized("missing_token", "Missing token")
    try:
        return decode_access_token(creds.credentials)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("token_expired", "Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("invalid_token", "Invalid token")
