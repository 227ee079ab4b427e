"""Third-party integration hub.

One framework for outbound OAuth connections, outbound event hooks, signed
inbound webhooks and bidirectional user sync. Integrations are capability
bundles registered in a static table; the hub services never call a
capability a definition does not carry.

Exports:
    DomainEvent / EventType: Tagged union of events routed to hooks.
    IntegrationDefinition: Capability bundle for one integration type.
    IntegrationRegistry: Static lookup over definitions.
    HookDispatcher: Routes domain events to connected hooks.
    InboundWebhookGateway: Verifies and routes provider webhooks.
    OAuthConnectionManager: Connect, callback and disconnect flows.
    UserSyncOrchestrator: Identify merge and segment membership push.
"""

from __future__ import annotations

from src.hub.integrations.capabilities import IntegrationDefinition
from src.hub.integrations.events import DomainEvent, EventType

__all__ = [
    "DomainEvent",
    "EventType",
    "HookDispatcher",
    "InboundWebhookGateway",
    "IntegrationDefinition",
    "IntegrationRegistry",
    "OAuthConnectionManager",
    "UserSyncOrchestrator",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load services to avoid circular imports with core."""
    if name == "IntegrationRegistry":
        from src.hub.integrations.registry import IntegrationRegistry

        return IntegrationRegistry
    if name == "HookDispatcher":
        from src.hub.integrations.dispatcher import HookDispatcher

        return HookDispatcher
    if name == "InboundWebhookGateway":
        from src.hub.integrations.inbound import InboundWebhookGateway

        return InboundWebhookGateway
    if name == "OAuthConnectionManager":
        from src.hub.integrations.oauth import OAuthConnectionManager

        return OAuthConnectionManager
    if name == "UserSyncOrchestrator":
        from src.hub.integrations.user_sync import UserSyncOrchestrator

        return UserSyncOrchestrator
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
