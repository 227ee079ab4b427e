"""Bearer token checks for the admin and platform-feed endpoints.

Tokens are issued by the platform's auth service and signed with the shared
SECRET_KEY. Claims used here: ``sub`` (member or service id), ``role`` and
``type`` (always ``access``). The hub never issues tokens to browsers;
create_access_token is for service-to-service calls, local tooling and tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from jose import ExpiredSignatureError, JWTError, jwt

from src.hub.config import get_settings

ADMIN_ROLES = frozenset({"admin", "owner"})
SERVICE_ROLE = "service"
ACCESS_TOKEN_TYPE = "access"


def create_access_token(
    subject: str,
    role: str,
    expires_delta: timedelta | None = None,
    **claims: Any,
) -> str:
    """Sign an access token for ``subject`` acting with ``role``."""
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    payload = {
        **claims,
        "sub": subject,
        "role": role,
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + (expires_delta or timedelta(minutes=30)),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify signature, expiry and token type.

    Raises:
        HTTPException(401): Expired, forged, or not an access token.
    """
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except JWTError:
        raise _unauthorized("Could not validate credentials")

    if claims.get("type") != ACCESS_TOKEN_TYPE or not claims.get("sub"):
        raise _unauthorized("Could not validate credentials")
    return claims
