"""Applies inbound status changes to linked posts.

A provider reports a raw status label (``"Closed"``, ``"In Progress"``).
The connection's ``statusMappings`` config translates it to an internal
status id; the post is found through the external link saved when the hook
created the issue. Unmapped labels and unlinked issues are logged and
dropped.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog

from src.hub.integrations.schemas import InboundWebhookResult

logger = structlog.get_logger(__name__)


class PostStatusWriter(Protocol):
    async def find_linked_post_id(self, integration_type: str, external_id: str) -> str | None: ...

    async def update_post_status(self, post_id: str, status_id: str) -> bool: ...


def resolve_status_id(external_status: str, config: dict[str, Any]) -> str | None:
    """Look up the internal status id for a provider label.

    Matching is exact first, then case-insensitive.
    """
    mappings = config.get("statusMappings") or {}
    if not isinstance(mappings, dict):
        return None
    if external_status in mappings:
        return mappings[external_status] or None
    folded = external_status.casefold()
    for label, status_id in mappings.items():
        if isinstance(label, str) and label.casefold() == folded:
            return status_id or None
    return None


class StatusSyncService:
    """Writes mapped status changes to posts.

    Args:
        writer: Post link lookup and status persistence.
    """

    def __init__(self, writer: PostStatusWriter) -> None:
        self._writer = writer

    async def apply(
        self,
        integration_type: str,
        result: InboundWebhookResult,
        config: dict[str, Any],
    ) -> bool:
        """Apply one status change. Returns True when a post was updated."""
        log = logger.bind(
            integration_type=integration_type,
            external_id=result.external_id,
            external_status=result.external_status,
        )

        status_id = resolve_status_id(result.external_status, config)
        if status_id is None:
            log.info("status_sync.unmapped_status")
            return False

        post_id = await self._writer.find_linked_post_id(integration_type, result.external_id)
        if post_id is None:
            log.info("status_sync.no_linked_post")
            return False

        updated = await self._writer.update_post_status(post_id, status_id)
        log.info("status_sync.applied", post_id=post_id, status_id=status_id, updated=updated)
        return updated
