"""Failure classification shared by every outbound hook.

HTTP status rules:
- 401/403: credentials invalid, reconnect needed -> not retryable
- 429: rate limited -> retryable
- 5xx: provider outage -> retryable
- other 4xx: request rejected -> not retryable

401/403 and configuration errors are also marked as connection errors: the
connection, not the event, has to be fixed.

Exceptions: timeouts, connection resets and network errors are retryable;
malformed-input errors (ValueError, TypeError, KeyError...) are not.
"""

from __future__ import annotations

import asyncio

import httpx
import structlog

from src.hub.integrations.errors import ConfigurationError, SecretsDecryptionError
from src.hub.integrations.schemas import HookResult

logger = structlog.get_logger(__name__)

_RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)

_FATAL_EXCEPTIONS: tuple[type[BaseException], ...] = (
    ConfigurationError,
    SecretsDecryptionError,
    ValueError,
    TypeError,
    KeyError,
    httpx.InvalidURL,
    httpx.UnsupportedProtocol,
)

_CONNECTION_EXCEPTIONS: tuple[type[BaseException], ...] = (ConfigurationError, SecretsDecryptionError)

_RETRYABLE_MESSAGE_FRAGMENTS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "socket hang up",
    "temporarily unavailable",
)


def should_retry_status(status_code: int) -> bool:
    """Classify an HTTP failure status as retryable or fatal."""
    if status_code in (401, 403):
        return False
    if status_code == 429:
        return True
    if status_code >= 500:
        return True
    return False


def is_connection_error(error: BaseException) -> bool:
    """True when the failure is about credentials or configuration."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in (401, 403)
    return isinstance(error, _CONNECTION_EXCEPTIONS)


def is_retryable_error(error: BaseException) -> bool:
    """Classify an exception raised while calling a provider."""
    if isinstance(error, httpx.HTTPStatusError):
        return should_retry_status(error.response.status_code)
    # UnsupportedProtocol subclasses TransportError, so check fatal first
    if isinstance(error, _FATAL_EXCEPTIONS):
        return False
    if isinstance(error, _RETRYABLE_EXCEPTIONS):
        return True
    message = str(error).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGE_FRAGMENTS)


def failure_from_response(response: httpx.Response, provider: str) -> HookResult:
    """Build a failed HookResult from a non-2xx provider response."""
    return HookResult(
        success=False,
        error=f"{provider} API error: HTTP {response.status_code}",
        should_retry=should_retry_status(response.status_code),
        connection_error=response.status_code in (401, 403),
    )


def failure_from_exception(error: BaseException) -> HookResult:
    """Build a failed HookResult from an exception raised mid-delivery."""
    if isinstance(error, httpx.TimeoutException):
        message = "Request timeout"
    else:
        message = str(error) or type(error).__name__
    return HookResult(
        success=False,
        error=message,
        should_retry=is_retryable_error(error),
        connection_error=is_connection_error(error),
    )


def created_from_response(response: httpx.Response, provider: str, id_key: str, url_key: str) -> HookResult:
    """Success result for a 2xx create call, with the new resource's id and URL.

    A body without the expected id is still a success, with no external id.
    """
    try:
        body = response.json()
        external_id = str(body[id_key])
    except (ValueError, KeyError, TypeError):
        logger.warning("hook.unexpected_response_body", provider=provider, status_code=response.status_code)
        return HookResult(success=True)
    return HookResult(success=True, external_id=external_id, external_url=body.get(url_key))


def truncate(text: str, limit: int) -> str:
    """Shorten text for chat previews and issue titles."""
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."
