"""Shortcut integration: API token story creation and workflow state webhooks.

Shortcut webhooks report workflow states as numeric ids; names are resolved
through the connection's ``workflowStates`` config (``{"500": "Done"}``).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
import structlog
from starlette.responses import Response

from src.hub.integrations.capabilities import (
    CatalogInfo,
    HookCapability,
    InboundCapability,
    IntegrationDefinition,
)
from src.hub.integrations.events import DomainEvent, EventType
from src.hub.integrations.hook_utils import created_from_response, failure_from_exception, failure_from_response
from src.hub.integrations.providers.base import HttpProvider, post_url, strip_html
from src.hub.integrations.schemas import HookResult, InboundWebhookResult
from src.hub.integrations.signatures import verify_hmac_signature

logger = structlog.get_logger(__name__)

SHORTCUT_API = "https://api.app.shortcut.com/api/v3"


class ShortcutHook(HttpProvider, HookCapability):
    """Creates a story for each new post.

    Target config: ``workflowStateId`` (required) and optional ``channelId``
    (project id).
    """

    async def run(self, event: DomainEvent, target: dict[str, Any], config: dict[str, Any]) -> HookResult:
        if event.type is not EventType.POST_CREATED:
            return HookResult(success=True)

        workflow_state_id = target.get("workflowStateId")
        if not workflow_state_id:
            return HookResult(
                success=False, error="No workflow state configured", should_retry=False, connection_error=True
            )
        token = config.get("apiToken") or config.get("accessToken")
        if not token:
            return HookResult(
                success=False, error="Missing API token", should_retry=False, connection_error=True
            )

        post = event.data.post
        story: dict[str, Any] = {
            "name": post.title,
            "description": f"{strip_html(post.content)}\n\n[View feedback]({post_url(target, post)})".strip(),
            "workflow_state_id": int(workflow_state_id),
            "story_type": target.get("storyType", "feature"),
        }
        if target.get("channelId"):
            story["project_id"] = int(target["channelId"])

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{SHORTCUT_API}/stories",
                    headers={"Shortcut-Token": token},
                    json=story,
                )
        except Exception as exc:
            return failure_from_exception(exc)

        if not response.is_success:
            return failure_from_response(response, "Shortcut")

        return created_from_response(response, "Shortcut", "id", "app_url")


class ShortcutInbound(InboundCapability):
    def verify_signature(self, headers: Mapping[str, str], body: bytes, secret: str) -> bool | Response:
        return verify_hmac_signature(secret, body, headers.get("payload-signature"))

    def parse_status_change(
        self, payload: dict[str, Any], config: dict[str, Any]
    ) -> InboundWebhookResult | None:
        workflow_states = config.get("workflowStates") or {}

        for action in payload.get("actions") or []:
            if not isinstance(action, dict):
                continue
            if action.get("entity_type") != "story" or action.get("action") != "update":
                continue
            change = (action.get("changes") or {}).get("workflow_state_id") or {}
            new_state = change.get("new")
            if new_state is None or action.get("id") is None:
                continue

            state_name = workflow_states.get(str(new_state))
            if not state_name:
                logger.info(
                    "shortcut.unknown_workflow_state",
                    workflow_state_id=new_state,
                    story_id=action.get("id"),
                )
                return None

            return InboundWebhookResult(
                external_id=str(action["id"]),
                external_status=state_name,
                event_type="story.update",
            )

        return None


def build_definition(transport: httpx.AsyncBaseTransport | None = None) -> IntegrationDefinition:
    return IntegrationDefinition(
        id="shortcut",
        catalog=CatalogInfo(
            name="Shortcut",
            category="issue_tracking",
            description="Create Shortcut stories from feedback and sync workflow state back.",
        ),
        hook=ShortcutHook(transport),
        inbound=ShortcutInbound(),
    )
