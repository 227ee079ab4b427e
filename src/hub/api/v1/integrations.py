"""REST API endpoints for integrations.

Inbound (provider-signed, rate limited, no member auth):
- POST /api/integrations/{type}/webhook
- POST /api/integrations/{type}/identify

Admin (bearer JWT, admin role):
- GET    /api/integrations                              catalog + connection state
- POST   /api/integrations/{type}/connect               issue OAuth state and connect URL
- PUT    /api/integrations/{type}/connection            manual credential connection
- PATCH  /api/integrations/{type}                       update config / secrets
- DELETE /api/integrations/{type}                       disconnect
- PUT    /api/integrations/{type}/platform-credentials  app credentials

Platform feeds (bearer JWT, service or admin role):
- POST /api/integrations/events                         dispatch a domain event
- POST /api/integrations/segments/sync                  push segment membership
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field, ValidationError

from src.hub.api.deps import (
    Member,
    enforce_inbound_rate_limit,
    get_dispatcher,
    get_inbound_gateway,
    get_oauth_manager,
    get_registry,
    get_repository,
    get_user_sync,
    require_admin,
    require_service_or_admin,
)
from src.hub.config import get_settings
from src.hub.integrations.dispatcher import HookDispatcher
from src.hub.integrations.errors import (
    ConfigurationError,
    IntegrationNotFoundError,
    PlatformCredentialsMissingError,
    SecretsDecryptionError,
)
from src.hub.integrations.events import parse_domain_event
from src.hub.integrations.inbound import InboundWebhookGateway
from src.hub.integrations.oauth import OAuthConnectionManager
from src.hub.integrations.registry import IntegrationRegistry
from src.hub.integrations.repository import IntegrationRepository
from src.hub.integrations.schemas import CatalogEntry, ConnectionStatus, SegmentSyncReport
from src.hub.integrations.user_sync import UserSyncOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class ConnectionResponse(BaseModel):
    """Connection state without secrets."""

    id: str
    status: ConnectionStatus
    config: dict[str, Any] = Field(default_factory=dict)
    connected_by_member_id: str | None = None
    connected_at: str | None = None
    last_error: str | None = None
    error_count: int = 0


class IntegrationResponse(CatalogEntry):
    connection: ConnectionResponse | None = None


class ConnectResponse(BaseModel):
    url: str


class EventAcceptedResponse(BaseModel):
    event_id: str
    status: str = "accepted"


# ── Request Schemas ──────────────────────────────────────────────────────────


class ConnectRequest(BaseModel):
    pre_auth_fields: dict[str, str] | None = None


class ManualConnectionRequest(BaseModel):
    config: dict[str, Any] = Field(default_factory=dict)
    secrets: dict[str, Any] = Field(default_factory=dict)


class UpdateConnectionRequest(BaseModel):
    config: dict[str, Any] | None = None
    secrets: dict[str, Any] | None = None


class PlatformCredentialsRequest(BaseModel):
    credentials: dict[str, str]


class SegmentSyncRequest(BaseModel):
    segment_name: str
    added_principal_ids: list[str] = Field(default_factory=list)
    removed_principal_ids: list[str] = Field(default_factory=list)


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _connection_to_response(connection: Any) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        status=connection.status,
        config=connection.config,
        connected_by_member_id=connection.connected_by_member_id,
        connected_at=connection.connected_at.isoformat() if connection.connected_at else None,
        last_error=connection.last_error,
        error_count=connection.error_count,
    )


def _not_found(exc: IntegrationNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# ── Inbound Endpoints ────────────────────────────────────────────────────────


@router.post("/{integration_type}/webhook", dependencies=[Depends(enforce_inbound_rate_limit)])
async def receive_webhook(
    integration_type: str,
    request: Request,
    gateway: InboundWebhookGateway = Depends(get_inbound_gateway),
) -> Response:
    """Signed status-change webhook from an issue tracker."""
    body = await request.body()
    return await gateway.handle(integration_type, request.headers, body)


@router.post("/{integration_type}/identify", dependencies=[Depends(enforce_inbound_rate_limit)])
async def receive_identify(
    integration_type: str,
    request: Request,
    user_sync: UserSyncOrchestrator = Depends(get_user_sync),
) -> Response:
    """Signed identify call from a CDP/CRM."""
    body = await request.body()
    return await user_sync.handle_inbound_identify(integration_type, request.headers, body)


# ── Platform Feeds ───────────────────────────────────────────────────────────


@router.post("/events", response_model=EventAcceptedResponse, status_code=202)
async def publish_event(
    payload: dict[str, Any] = Body(...),
    member: Member = Depends(require_service_or_admin),
    dispatcher: HookDispatcher = Depends(get_dispatcher),
) -> EventAcceptedResponse:
    """Accept a domain event and dispatch it to connected hooks in the background."""
    try:
        event = parse_domain_event(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        )
    dispatcher.dispatch_in_background(event)
    return EventAcceptedResponse(event_id=event.id)


@router.post("/segments/sync", response_model=SegmentSyncReport)
async def sync_segment(
    body: SegmentSyncRequest,
    member: Member = Depends(require_service_or_admin),
    user_sync: UserSyncOrchestrator = Depends(get_user_sync),
) -> SegmentSyncReport:
    """Push a segment membership change to every segment-sync integration."""
    return await user_sync.notify_user_sync_integrations(
        body.segment_name,
        body.added_principal_ids,
        body.removed_principal_ids,
    )


# ── Admin Endpoints ──────────────────────────────────────────────────────────


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    member: Member = Depends(require_admin),
    registry: IntegrationRegistry = Depends(get_registry),
    repository: IntegrationRepository = Depends(get_repository),
) -> list[IntegrationResponse]:
    """Catalog of every integration with its connection state."""
    configured = await repository.list_configured_credential_types()
    connections = {c.integration_type: c for c in await repository.list_connections()}
    return [
        IntegrationResponse(
            **entry.model_dump(),
            connection=(
                _connection_to_response(connections[entry.id]) if entry.id in connections else None
            ),
        )
        for entry in registry.list_catalog(configured)
    ]


@router.post("/{integration_type}/connect", response_model=ConnectResponse)
async def start_connect(
    integration_type: str,
    body: ConnectRequest | None = None,
    member: Member = Depends(require_admin),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
) -> ConnectResponse:
    """Issue a signed OAuth state and return the URL that starts the flow."""
    try:
        definition = manager.get_definition(integration_type, "oauth")
        credentials = await manager.get_platform_credentials(integration_type)
        missing = definition.missing_platform_credentials(credentials)
        if missing:
            raise PlatformCredentialsMissingError(integration_type, missing)
        state = manager.create_state(
            integration_type,
            get_settings().WORKSPACE_ID,
            member.id,
            body.pre_auth_fields if body else None,
        )
    except IntegrationNotFoundError as exc:
        raise _not_found(exc)
    except PlatformCredentialsMissingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return ConnectResponse(url=manager.connect_url(integration_type, state))


@router.put("/{integration_type}/connection", response_model=ConnectionResponse)
async def connect_manually(
    integration_type: str,
    body: ManualConnectionRequest,
    member: Member = Depends(require_admin),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
) -> ConnectionResponse:
    """Connect an integration that uses admin-entered credentials."""
    try:
        connection = await manager.save_manual_connection(
            integration_type, body.config, body.secrets, member.id
        )
    except IntegrationNotFoundError as exc:
        raise _not_found(exc)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _connection_to_response(connection)


@router.patch("/{integration_type}", response_model=ConnectionResponse)
async def update_integration(
    integration_type: str,
    body: UpdateConnectionRequest,
    member: Member = Depends(require_admin),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
) -> ConnectionResponse:
    """Update connection config (channel, mappings, events) and secrets."""
    try:
        connection = await manager.update_connection(integration_type, body.config, body.secrets)
    except IntegrationNotFoundError as exc:
        raise _not_found(exc)
    except SecretsDecryptionError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Stored secrets are unreadable; reconnect the integration",
        )
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not connected")
    return _connection_to_response(connection)


@router.delete("/{integration_type}", status_code=204)
async def disconnect_integration(
    integration_type: str,
    member: Member = Depends(require_admin),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
) -> Response:
    """Revoke (best-effort) and delete a connection."""
    try:
        deleted = await manager.disconnect(integration_type)
    except IntegrationNotFoundError as exc:
        raise _not_found(exc)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not connected")
    logger.info("integrations.disconnect_requested", integration_type=integration_type, member_id=member.id)
    return Response(status_code=204)


@router.put("/{integration_type}/platform-credentials", status_code=204)
async def save_platform_credentials(
    integration_type: str,
    body: PlatformCredentialsRequest,
    member: Member = Depends(require_admin),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
) -> Response:
    """Store the app credentials that enable an integration type."""
    try:
        await manager.save_platform_credentials(integration_type, body.credentials, member.id)
    except IntegrationNotFoundError as exc:
        raise _not_found(exc)
    except PlatformCredentialsMissingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return Response(status_code=204)
