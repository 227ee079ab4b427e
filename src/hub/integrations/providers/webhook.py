"""Generic signed outbound webhooks.

Each delivery POSTs the serialized domain event to the configured URL with:
- ``X-Webhook-Timestamp``: unix seconds at send time
- ``X-Webhook-Signature``: ``sha256=`` + hex HMAC-SHA256 over ``{timestamp}.{body}``

Destination URLs are checked before every send: https only (http allowed
outside production), and every resolved address must be public. Redirects
are not followed.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import socket
import time
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from src.hub.config import Environment, get_settings
from src.hub.integrations.capabilities import CatalogInfo, HookCapability, IntegrationDefinition
from src.hub.integrations.errors import ConfigurationError
from src.hub.integrations.events import DomainEvent, domain_event_to_dict
from src.hub.integrations.hook_utils import failure_from_exception, failure_from_response
from src.hub.integrations.providers.base import HttpProvider
from src.hub.integrations.schemas import HookResult
from src.hub.integrations.signatures import compute_signature

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"

Resolver = Callable[[str, int], Awaitable[list[str]]]


class UnsafeWebhookURLError(ConfigurationError):
    """Webhook destination is malformed or points at a non-public address."""


async def resolve_host(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return list({info[4][0] for info in infos})


def _is_public(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_global and not ip.is_multicast


async def validate_webhook_url(url: str, resolver: Resolver = resolve_host, allow_http: bool = False) -> None:
    """Reject URLs that could reach internal services.

    Raises:
        UnsafeWebhookURLError: Bad scheme, missing host, or a non-public
            address (literal or resolved).
    """
    parts = urlsplit(url)
    allowed_schemes = {"https", "http"} if allow_http else {"https"}
    if parts.scheme not in allowed_schemes:
        raise UnsafeWebhookURLError(f"Webhook URL scheme not allowed: {parts.scheme or 'none'}")
    host = parts.hostname
    if not host:
        raise UnsafeWebhookURLError("Webhook URL missing hostname")
    if host == "localhost" or host.endswith(".localhost") or host.endswith(".internal"):
        raise UnsafeWebhookURLError(f"Webhook host not allowed: {host}")

    port = parts.port or (443 if parts.scheme == "https" else 80)
    try:
        addresses = [str(ipaddress.ip_address(host))]
    except ValueError:
        try:
            addresses = await resolver(host, port)
        except OSError as exc:
            raise UnsafeWebhookURLError(f"Webhook host could not be resolved: {host}") from exc

    if not addresses:
        raise UnsafeWebhookURLError(f"Webhook host could not be resolved: {host}")
    for address in addresses:
        if not _is_public(address):
            raise UnsafeWebhookURLError(f"Webhook host resolves to a non-public address: {host}")


def sign_payload(secret: str, timestamp: int, body: str) -> str:
    return "sha256=" + compute_signature(secret, f"{timestamp}.{body}".encode("utf-8"))


class WebhookHook(HttpProvider, HookCapability):
    """Delivers every event to ``target["url"]``, signed with ``signingSecret``."""

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        resolver: Resolver = resolve_host,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(transport, timeout)
        self._resolver = resolver
        self._clock = clock

    async def run(self, event: DomainEvent, target: dict[str, Any], config: dict[str, Any]) -> HookResult:
        url = target.get("url")
        if not url:
            return HookResult(
                success=False, error="No webhook URL configured", should_retry=False, connection_error=True
            )
        secret = config.get("signingSecret")
        if not secret:
            return HookResult(
                success=False, error="Missing signing secret", should_retry=False, connection_error=True
            )

        allow_http = get_settings().ENVIRONMENT != Environment.production
        try:
            await validate_webhook_url(url, self._resolver, allow_http=allow_http)
        except UnsafeWebhookURLError as exc:
            logger.warning("webhook.url_rejected", error=str(exc))
            return HookResult(
                success=False, error=str(exc), should_retry=False, connection_error=True
            )

        body = json.dumps(domain_event_to_dict(event), separators=(",", ":"))
        timestamp = int(self._clock())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "feedback-integration-hub/1.0",
            TIMESTAMP_HEADER: str(timestamp),
            SIGNATURE_HEADER: sign_payload(secret, timestamp, body),
        }

        try:
            async with self._client(follow_redirects=False) as client:
                response = await client.post(url, content=body.encode("utf-8"), headers=headers)
        except Exception as exc:
            return failure_from_exception(exc)

        if not response.is_success:
            return failure_from_response(response, "Webhook")
        return HookResult(success=True)


def build_definition(transport: httpx.AsyncBaseTransport | None = None) -> IntegrationDefinition:
    return IntegrationDefinition(
        id="webhook",
        catalog=CatalogInfo(
            name="Webhooks",
            category="automation",
            description="Send signed JSON payloads for feedback events to any HTTPS endpoint.",
        ),
        hook=WebhookHook(transport),
    )
