"""Structured logging setup and request logging middleware.

Each request is logged once with method, path, status and duration. Inbound
provider deliveries also carry the provider's delivery id (GitHub, Linear,
Segment) and the integration type, so a failed webhook can be matched to the
provider's delivery log. Request bodies are never logged.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import structlog
from fastapi import Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.hub.config import Environment, get_settings

logger = structlog.get_logger(__name__)

# Provider headers that identify a single webhook delivery
_DELIVERY_HEADERS = ("x-github-delivery", "linear-delivery", "x-request-id", "x-segment-request-id")

_QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})

_REDACTED_KEYS = frozenset(
    {"secrets", "access_token", "accessToken", "refresh_token", "refreshToken", "client_secret",
     "clientSecret", "signingSecret", "webhookSecret", "writeKey", "code", "state"}
)


def redact_secrets(_logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking credential-bearing keys."""
    for key in _REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def configure_structlog() -> None:
    """Console output in development, JSON lines in production."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _member_id(request: Request) -> str | None:
    """Caller id from the bearer token; unverifiable tokens are ignored here."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    settings = get_settings()
    try:
        payload = jwt.decode(auth_header[7:], settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")


def _delivery_id(request: Request) -> str | None:
    for header in _DELIVERY_HEADERS:
        value = request.headers.get(header)
        if value:
            return value[:128]
    return None


def _integration_type(request: Request) -> str | None:
    """``/api/integrations/{type}/webhook`` and ``/oauth/{type}/...`` paths."""
    parts = request.url.path.strip("/").split("/")
    if len(parts) >= 3 and parts[:2] == ["api", "integrations"]:
        return parts[2]
    if len(parts) >= 2 and parts[0] == "oauth":
        return parts[1]
    return None


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and tags the response with X-Request-ID."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = uuid.uuid4().hex
        started = time.monotonic()
        context = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "integration_type": _integration_type(request),
            "delivery_id": _delivery_id(request),
            "member_id": _member_id(request),
        }
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.request_failed",
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                **context,
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        duration_ms = round((time.monotonic() - started) * 1000, 2)

        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        elif request.url.path in _QUIET_PATHS:
            log = logger.debug
        else:
            log = logger.info
        log("http.request_completed", status_code=response.status_code, duration_ms=duration_ms, **context)
        return response
