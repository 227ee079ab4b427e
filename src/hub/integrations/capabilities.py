"""Capability contracts and the IntegrationDefinition bundle.

An integration is a definition holding any subset of independent capability
objects. The hub never calls a capability the definition does not carry, so a
definition with no capabilities is inert but still shows in the catalog.

Capabilities:
    OAuthCapability: authorization URL + code exchange.
    HookCapability: outbound handler for domain events.
    InboundCapability: signature verification + status-change parsing.
    IdentifyCapability: inbound identify handling (user sync, in).
    SegmentSyncCapability: outbound segment membership push (user sync, out).

Config and secrets reach capabilities as opaque dicts; each provider parses
the keys it owns.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from starlette.responses import Response

from src.hub.integrations.events import DomainEvent
from src.hub.integrations.schemas import (
    HookResult,
    InboundWebhookResult,
    SyncUser,
    TokenExchangeResult,
    UserIdentifyPayload,
)


class OAuthCapability(ABC):
    """Outbound OAuth connection flow.

    Attributes:
        state_type: Discriminator embedded in the signed state token; the
            callback rejects state issued for any other type.
        error_param: Query parameter the provider uses to report denial.
    """

    state_type: str
    error_param: str = "error"

    @abstractmethod
    def build_auth_url(
        self,
        state: str,
        redirect_uri: str,
        pre_auth_fields: dict[str, str] | None = None,
        credentials: dict[str, str] | None = None,
    ) -> str:
        """Return the provider authorization URL."""
        ...

    @abstractmethod
    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        fields: dict[str, str] | None = None,
        credentials: dict[str, str] | None = None,
    ) -> TokenExchangeResult:
        """Exchange an authorization code for tokens and display config."""
        ...


class HookCapability(ABC):
    """Outbound handler invoked for every domain event."""

    @abstractmethod
    async def run(self, event: DomainEvent, target: dict[str, Any], config: dict[str, Any]) -> HookResult:
        """Deliver an event.

        Must return ``HookResult(success=True)`` for event types it ignores and
        must not raise for provider failures; failures are classified into
        ``should_retry``.

        Args:
            event: The domain event.
            target: Non-secret connection config (channel, repo, URL...).
            config: Decrypted connection secrets (tokens, signing secret).
        """
        ...


class InboundCapability(ABC):
    """Signed inbound webhooks reporting status changes.

    Attributes:
        secret_key: Key in the decrypted connection secrets holding the
            webhook signing secret.
    """

    secret_key: str = "webhookSecret"

    @abstractmethod
    def verify_signature(self, headers: Mapping[str, str], body: bytes, secret: str) -> bool | Response:
        """Return True when the signature is valid, else the Response to send."""
        ...

    @abstractmethod
    def parse_status_change(
        self, payload: dict[str, Any], config: dict[str, Any]
    ) -> InboundWebhookResult | None:
        """Extract a status change, or None for irrelevant events. Must be pure."""
        ...


class IdentifyCapability(ABC):
    """Inbound identify calls from a CDP/CRM."""

    @abstractmethod
    async def handle_identify(
        self,
        headers: Mapping[str, str],
        body: bytes,
        config: dict[str, Any],
        secrets: dict[str, Any],
    ) -> UserIdentifyPayload | Response:
        """Verify and parse an identify call.

        Returns a Response to short-circuit (bad signature, ignorable event)
        or a normalized payload to merge.
        """
        ...


class SegmentSyncCapability(ABC):
    """Outbound segment membership push."""

    @abstractmethod
    async def sync_segment_membership(
        self,
        users: list[SyncUser],
        segment_name: str,
        joined: bool,
        config: dict[str, Any],
        secrets: dict[str, Any],
    ) -> None:
        """Push membership for all users.

        Implementations batch their own calls and raise a single UserSyncError
        with the failure count after every batch has been attempted.
        """
        ...


OnDisconnect = Callable[[dict[str, Any], dict[str, Any], "dict[str, str] | None"], Awaitable[None]]


@dataclass(frozen=True)
class PlatformCredentialField:
    """An admin-supplied app-level credential (client id, client secret...)."""

    key: str
    label: str
    secret: bool = True


@dataclass(frozen=True)
class CatalogInfo:
    """Display-only catalog metadata."""

    name: str
    category: str
    description: str = ""
    settings_path: str = "/admin/settings/integrations"


@dataclass(frozen=True)
class IntegrationDefinition:
    """Capability bundle for one integration type."""

    id: str
    catalog: CatalogInfo
    oauth: OAuthCapability | None = None
    hook: HookCapability | None = None
    inbound: InboundCapability | None = None
    user_sync: IdentifyCapability | SegmentSyncCapability | None = None
    platform_credentials: tuple[PlatformCredentialField, ...] = ()
    on_disconnect: OnDisconnect | None = None

    @property
    def identify(self) -> IdentifyCapability | None:
        if isinstance(self.user_sync, IdentifyCapability):
            return self.user_sync
        return None

    @property
    def segment_sync(self) -> SegmentSyncCapability | None:
        if isinstance(self.user_sync, SegmentSyncCapability):
            return self.user_sync
        return None

    @property
    def capabilities(self) -> list[str]:
        names = []
        if self.oauth is not None:
            names.append("oauth")
        if self.hook is not None:
            names.append("hook")
        if self.inbound is not None:
            names.append("inbound")
        if self.identify is not None:
            names.append("identify")
        if self.segment_sync is not None:
            names.append("segment_sync")
        return names

    def missing_platform_credentials(self, credentials: Mapping[str, str] | None) -> list[str]:
        """Keys of required platform credentials absent from ``credentials``."""
        credentials = credentials or {}
        return [f.key for f in self.platform_credentials if not credentials.get(f.key)]
