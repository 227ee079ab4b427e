"""Pydantic schemas shared by every integration and the hub services.

Defines:
- Connection state: ConnectionStatus, IntegrationConnection
- Capability contracts: HookResult, InboundWebhookResult, UserIdentifyPayload,
  TokenExchangeResult
- User sync: AttributeType, UserAttributeDefinition, SyncUser
- Outcome channels: DispatchOutcome, SegmentSyncFailure, SegmentSyncReport
- Catalog: CatalogEntry
- OAuth: OAuthState
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ── Connections ─────────────────────────────────────────────────────────────


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    ERROR = "error"


class IntegrationConnection(BaseModel):
    """A persisted, per-workspace instance of an integration type.

    ``secrets`` is the encrypted blob exactly as stored; callers decrypt it
    through the SecretsCodec only for the duration of one call.
    """

    id: str
    integration_type: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    config: dict[str, Any] = Field(default_factory=dict)
    secrets: str | None = None
    connected_by_member_id: str | None = None
    connected_at: datetime | None = None
    last_error: str | None = None
    error_count: int = 0


# ── Capability Contracts ────────────────────────────────────────────────────


class HookResult(BaseModel):
    """Uniform outcome every hook.run returns, regardless of provider.

    ``connection_error`` marks failures caused by the connection itself
    (rejected credentials, missing configuration) rather than by the event.
    """

    success: bool
    error: str | None = None
    should_retry: bool | None = None
    connection_error: bool = False
    external_id: str | None = None
    external_url: str | None = None


class InboundWebhookResult(BaseModel):
    """Normalized status change extracted from a provider payload.

    ``external_status`` is the raw provider-side label; mapping it to an
    internal status happens in the status sync service.
    """

    model_config = ConfigDict(frozen=True)

    external_id: str
    external_status: str
    event_type: str


class UserIdentifyPayload(BaseModel):
    """Normalized inbound identify call. ``email`` is the correlation key."""

    email: str
    external_user_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class TokenExchangeResult(BaseModel):
    """Tokens and display config returned by a successful code exchange.

    ``expires_in`` is None for providers that issue non-expiring tokens.
    """

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    config: dict[str, Any] = Field(default_factory=dict)


# ── User Sync ───────────────────────────────────────────────────────────────


class AttributeType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    CURRENCY = "currency"


class UserAttributeDefinition(BaseModel):
    """Maps an external attribute key to an internal key and declared type."""

    id: str
    key: str
    label: str = ""
    type: AttributeType = AttributeType.STRING
    external_key: str | None = None


class SyncUser(BaseModel):
    """A principal resolved for an outbound segment push."""

    principal_id: str
    email: str
    name: str | None = None
    external_ids: dict[str, str] = Field(default_factory=dict)


# ── Outcome Channels ────────────────────────────────────────────────────────


class DispatchOutcome(BaseModel):
    """Result of dispatching one event to one connection."""

    integration_type: str
    connection_id: str
    result: HookResult
    skipped: bool = False


class SegmentSyncFailure(BaseModel):
    integration_type: str
    joined: bool
    failed: int
    total: int
    error: str


class SegmentSyncReport(BaseModel):
    """Aggregate of one outbound segment membership pass."""

    segment_name: str
    attempted: int = 0
    failures: list[SegmentSyncFailure] = Field(default_factory=list)
    skipped: bool = False

    @computed_field
    @property
    def success(self) -> bool:
        return not self.failures


# ── Catalog ─────────────────────────────────────────────────────────────────


class CatalogEntry(BaseModel):
    id: str
    name: str
    category: str
    description: str = ""
    capabilities: list[str] = Field(default_factory=list)
    available: bool
    configurable: bool


# ── OAuth ───────────────────────────────────────────────────────────────────


class OAuthState(BaseModel):
    """Claims embedded in a signed OAuth state token."""

    type: str
    workspace_id: str
    member_id: str
    nonce: str
    ts: int
    pre_auth_fields: dict[str, str] | None = None
