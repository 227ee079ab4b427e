"""FastAPI dependency injection for hub services and authentication.

Services are built once in the app lifespan and stored on ``app.state``;
accessors raise 503 when a service did not initialize.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.hub.config import get_settings
from src.hub.core.rate_limit import RateLimiter
from src.hub.core.security import ADMIN_ROLES, SERVICE_ROLE, decode_access_token
from src.hub.integrations.dispatcher import HookDispatcher
from src.hub.integrations.inbound import InboundWebhookGateway
from src.hub.integrations.oauth import OAuthConnectionManager
from src.hub.integrations.registry import IntegrationRegistry
from src.hub.integrations.repository import IntegrationRepository
from src.hub.integrations.user_sync import UserSyncOrchestrator


class Member(BaseModel):
    """Authenticated caller, taken from the bearer token claims."""

    id: str
    role: str
    email: str | None = None


# ── Service Accessors ────────────────────────────────────────────────────────


def _get_service(request: Request, service_name: str) -> Any:
    """Retrieve a hub service from app.state, 503 if not available."""
    service = getattr(request.app.state, service_name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Integration service '{service_name}' is not available",
        )
    return service


def get_registry(request: Request) -> IntegrationRegistry:
    return _get_service(request, "integration_registry")


def get_repository(request: Request) -> IntegrationRepository:
    return _get_service(request, "integration_repository")


def get_oauth_manager(request: Request) -> OAuthConnectionManager:
    return _get_service(request, "oauth_manager")


def get_dispatcher(request: Request) -> HookDispatcher:
    return _get_service(request, "hook_dispatcher")


def get_inbound_gateway(request: Request) -> InboundWebhookGateway:
    return _get_service(request, "inbound_gateway")


def get_user_sync(request: Request) -> UserSyncOrchestrator:
    return _get_service(request, "user_sync")


def get_rate_limiter(request: Request) -> RateLimiter:
    return _get_service(request, "rate_limiter")


# ── Authentication ───────────────────────────────────────────────────────────


async def get_current_member(request: Request) -> Member:
    """Validate the bearer JWT and return the calling member.

    Raises:
        HTTPException(401): Missing or invalid token.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_access_token(auth_header[7:])
    return Member(id=payload["sub"], role=payload.get("role", "member"), email=payload.get("email"))


def get_session_member(request: Request) -> Member | None:
    """Member behind a browser request, from the bearer header or session cookie.

    Returns None when neither carries a valid access token.
    """
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else None
    token = token or request.cookies.get(get_settings().SESSION_COOKIE_NAME)
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except HTTPException:
        return None
    return Member(id=payload["sub"], role=payload.get("role", "member"), email=payload.get("email"))


async def require_admin(member: Member = Depends(get_current_member)) -> Member:
    """Only workspace admins manage integrations."""
    if member.role not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return member


async def require_service_or_admin(member: Member = Depends(get_current_member)) -> Member:
    """Domain event and segment feeds come from platform services or admins."""
    if member.role != SERVICE_ROLE and member.role not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Service or admin role required",
        )
    return member


# ── Rate Limiting ────────────────────────────────────────────────────────────


def client_ip(request: Request) -> str:
    """Peer address of the connection.

    Forwarded headers are not read here; behind a proxy, run uvicorn with
    ``--proxy-headers`` and ``--forwarded-allow-ips`` so the peer address is
    rewritten only for trusted proxies.
    """
    return request.client.host if request.client else "unknown"


async def enforce_inbound_rate_limit(request: Request) -> None:
    """Per client IP and integration type limit on inbound endpoints.

    Raises:
        HTTPException(429): Limit exceeded, with Retry-After.
    """
    limiter = get_rate_limiter(request)
    integration_type = request.path_params.get("integration_type", "")
    decision = limiter.hit(f"{client_ip(request)}:{integration_type}")
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(decision.retry_after)},
        )
