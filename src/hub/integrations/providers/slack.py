"""Slack integration: OAuth v2 install and channel notifications.

Slack reports API failures inside a 200 response (``{"ok": false,
"error": "..."}``), so hook results are classified from the body error code
as well as the HTTP status.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from src.hub.integrations.capabilities import (
    CatalogInfo,
    HookCapability,
    IntegrationDefinition,
    OAuthCapability,
    PlatformCredentialField,
)
from src.hub.integrations.errors import TokenExchangeError
from src.hub.integrations.events import DomainEvent, EventType
from src.hub.integrations.hook_utils import failure_from_exception, failure_from_response, truncate
from src.hub.integrations.providers.base import HttpProvider, post_url, strip_html
from src.hub.integrations.schemas import HookResult, TokenExchangeResult

logger = structlog.get_logger(__name__)

SLACK_API = "https://slack.com/api"
AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"
SCOPES = "chat:write,channels:read,channels:join,groups:read"

_FATAL_ERRORS = frozenset(
    {"invalid_auth", "not_authed", "token_revoked", "account_inactive", "channel_not_found", "not_in_channel"}
)
_RETRYABLE_ERRORS = frozenset({"ratelimited", "internal_error", "fatal_error", "service_unavailable"})

_STATUS_EMOJI = {
    "open": ":large_blue_circle:",
    "planned": ":calendar:",
    "in progress": ":hammer_and_wrench:",
    "complete": ":white_check_mark:",
    "closed": ":no_entry_sign:",
}


def escape_mrkdwn(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def build_message(event: DomainEvent, target: dict[str, Any]) -> dict[str, Any] | None:
    """Slack message for an event, or None for events that are not posted."""
    if event.type is EventType.POST_CREATED:
        post = event.data.post
        preview = escape_mrkdwn(truncate(strip_html(post.content), 280))
        return {
            "text": f"New feedback: {post.title}",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"*New Feedback*\n\n*<{post_url(target, post)}|{escape_mrkdwn(post.title)}>*",
                    },
                },
                {"type": "section", "text": {"type": "mrkdwn", "text": preview or "_No description_"}},
                {
                    "type": "context",
                    "elements": [
                        {
                            "type": "mrkdwn",
                            "text": f"{post.board_slug or 'feedback'}  •  {post.author_email or 'Anonymous'}",
                        }
                    ],
                },
            ],
        }

    if event.type is EventType.POST_STATUS_CHANGED:
        data = event.data
        emoji = _STATUS_EMOJI.get(data.new_status.lower(), ":arrows_counterclockwise:")
        title = escape_mrkdwn(data.post.title)
        return {
            "text": f"Status updated: {data.post.title}",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": (
                            f"{emoji} *Status Updated*\n\n*<{post_url(target, data.post)}|{title}>*\n"
                            f"{escape_mrkdwn(data.previous_status)} → *{escape_mrkdwn(data.new_status)}*"
                        ),
                    },
                }
            ],
        }

    if event.type is EventType.COMMENT_CREATED:
        comment, post = event.data.comment, event.data.post
        preview = escape_mrkdwn(truncate(strip_html(comment.content), 280))
        return {
            "text": f"New comment on: {post.title}",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"*New Comment*\n\n*<{post_url(target, post)}|{escape_mrkdwn(post.title)}>*\n{preview}",
                    },
                },
                {
                    "type": "context",
                    "elements": [{"type": "mrkdwn", "text": comment.author_email or "Anonymous"}],
                },
            ],
        }

    return None


class SlackOAuth(HttpProvider, OAuthCapability):
    state_type = "slack"

    def build_auth_url(
        self,
        state: str,
        redirect_uri: str,
        pre_auth_fields: dict[str, str] | None = None,
        credentials: dict[str, str] | None = None,
    ) -> str:
        params = {
            "client_id": (credentials or {}).get("clientId", ""),
            "scope": SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        fields: dict[str, str] | None = None,
        credentials: dict[str, str] | None = None,
    ) -> TokenExchangeResult:
        credentials = credentials or {}
        async with self._client() as client:
            response = await client.post(
                f"{SLACK_API}/oauth.v2.access",
                data={
                    "client_id": credentials.get("clientId", ""),
                    "client_secret": credentials.get("clientSecret", ""),
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
            )
        data = response.json() if response.is_success else {}
        if not data.get("ok") or not data.get("access_token"):
            raise TokenExchangeError(f"Slack OAuth failed: {data.get('error') or response.status_code}")

        team = data.get("team") or {}
        # Slack bot tokens do not expire unless token rotation is enabled
        return TokenExchangeResult(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            config={"teamId": team.get("id"), "teamName": team.get("name")},
        )


class SlackHook(HttpProvider, HookCapability):
    async def run(self, event: DomainEvent, target: dict[str, Any], config: dict[str, Any]) -> HookResult:
        message = build_message(event, target)
        if message is None:
            return HookResult(success=True)

        channel_id = target.get("channelId")
        if not channel_id:
            return HookResult(
                success=False, error="No channel configured", should_retry=False, connection_error=True
            )
        token = config.get("accessToken")
        if not token:
            return HookResult(
                success=False, error="Missing access token", should_retry=False, connection_error=True
            )

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{SLACK_API}/chat.postMessage",
                    headers={"Authorization": f"Bearer {token}"},
                    json={"channel": channel_id, "unfurl_links": False, **message},
                )
        except Exception as exc:
            return failure_from_exception(exc)

        if not response.is_success:
            return failure_from_response(response, "Slack")

        data = response.json()
        if data.get("ok"):
            return HookResult(success=True, external_id=data.get("ts"))

        error = data.get("error") or "unknown_error"
        if error in _FATAL_ERRORS:
            logger.warning("slack.hook_rejected", error=error, channel_id=channel_id)
        return HookResult(
            success=False,
            error=f"Slack API error: {error}",
            should_retry=error in _RETRYABLE_ERRORS,
            connection_error=error in _FATAL_ERRORS,
        )


class SlackRevoker(HttpProvider):
    async def __call__(
        self,
        secrets: dict[str, Any],
        config: dict[str, Any],
        credentials: dict[str, str] | None = None,
    ) -> None:
        token = secrets.get("accessToken")
        if not token:
            return
        async with self._client() as client:
            response = await client.post(
                f"{SLACK_API}/auth.revoke",
                headers={"Authorization": f"Bearer {token}"},
            )
        response.raise_for_status()
        logger.info("slack.token_revoked", team_id=config.get("teamId"))


def build_definition(transport: httpx.AsyncBaseTransport | None = None) -> IntegrationDefinition:
    return IntegrationDefinition(
        id="slack",
        catalog=CatalogInfo(
            name="Slack",
            category="notifications",
            description="Post new feedback, status changes and comments to a Slack channel.",
        ),
        oauth=SlackOAuth(transport),
        hook=SlackHook(transport),
        platform_credentials=(
            PlatformCredentialField("clientId", "Client ID", secret=False),
            PlatformCredentialField("clientSecret", "Client Secret"),
        ),
        on_disconnect=SlackRevoker(transport),
    )
