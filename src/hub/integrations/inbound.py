"""Inbound webhook gateway.

Per request, in order:
1. resolve the definition, its inbound capability, the active connection
   and the webhook signing secret (any missing -> 404)
2. verify the signature over the raw body (failure -> provider Response, 401)
3. parse JSON (malformed -> 400)
4. extract a status change (None -> 200, ignored)
5. hand the change to the status sync collaborator; failures there are
   logged and the provider still gets 200
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Protocol

import structlog
from starlette.datastructures import Headers
from starlette.responses import JSONResponse, Response

from src.hub.core.encryption import SecretsCodec
from src.hub.core.monitoring import inbound_webhooks_total
from src.hub.integrations.errors import SecretsDecryptionError
from src.hub.integrations.registry import IntegrationRegistry
from src.hub.integrations.repository import IntegrationRepository
from src.hub.integrations.schemas import InboundWebhookResult
from src.hub.integrations.signatures import unauthorized_response

logger = structlog.get_logger(__name__)


class StatusChangeHandler(Protocol):
    async def apply(
        self, integration_type: str, result: InboundWebhookResult, config: dict[str, Any]
    ) -> bool: ...


def as_headers(headers: Mapping[str, str]) -> Headers:
    """Case-insensitive view over request headers."""
    if isinstance(headers, Headers):
        return headers
    return Headers(headers=dict(headers))


def _json(status_code: int, body: dict[str, Any]) -> Response:
    return JSONResponse(body, status_code=status_code)


class InboundWebhookGateway:
    """Verifies and routes provider webhooks.

    Args:
        registry: Integration definitions.
        repository: Connection lookups.
        codec: Secrets codec for the webhook signing secret.
        status_sync: Collaborator receiving parsed status changes.
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        repository: IntegrationRepository,
        codec: SecretsCodec,
        status_sync: StatusChangeHandler,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._codec = codec
        self._status_sync = status_sync

    async def handle(self, integration_type: str, headers: Mapping[str, str], body: bytes) -> Response:
        """Process one inbound webhook request and return the response to send."""
        response = await self._handle(integration_type, as_headers(headers), body)
        inbound_webhooks_total.labels(
            integration_type=integration_type if integration_type in self._registry else "unknown",
            result=str(response.status_code),
        ).inc()
        return response

    async def _handle(self, integration_type: str, headers: Headers, body: bytes) -> Response:
        log = logger.bind(integration_type=integration_type)

        definition = self._registry.get(integration_type)
        if definition is None or definition.inbound is None:
            return _json(404, {"error": "Unknown integration"})
        inbound = definition.inbound

        connection = await self._repository.get_active_connection(integration_type)
        if connection is None:
            log.info("inbound.no_active_connection")
            return _json(404, {"error": "Integration not connected"})

        try:
            secrets = self._codec.decrypt(connection.secrets)
        except SecretsDecryptionError:
            log.error("inbound.secrets_undecryptable", connection_id=connection.id)
            return unauthorized_response("Webhook secret unavailable")

        secret = secrets.get(inbound.secret_key)
        if not secret:
            log.info("inbound.no_webhook_secret")
            return _json(404, {"error": "Webhook not configured"})

        verdict = inbound.verify_signature(headers, body, secret)
        if verdict is not True:
            log.warning("inbound.signature_rejected")
            if isinstance(verdict, Response):
                return verdict
            return unauthorized_response()

        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return _json(400, {"error": "Invalid JSON"})
        if not isinstance(payload, dict):
            return _json(400, {"error": "Invalid JSON"})

        try:
            result = inbound.parse_status_change(payload, connection.config)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            log.warning("inbound.parse_failed", error=str(exc))
            return _json(200, {"status": "ignored"})

        if result is None:
            return _json(200, {"status": "ignored"})

        try:
            await self._status_sync.apply(integration_type, result, connection.config)
        except Exception:
            log.exception(
                "inbound.status_sync_failed",
                external_id=result.external_id,
                external_status=result.external_status,
            )

        return _json(200, {"status": "ok"})
