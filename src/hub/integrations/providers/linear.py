"""Linear integration: OAuth, GraphQL issue creation, issue state webhooks.

Linear's GraphQL API answers most failures with HTTP 200 and an ``errors``
array; the extension code decides whether a hook failure is retryable.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from starlette.responses import Response

from src.hub.integrations.capabilities import (
    CatalogInfo,
    HookCapability,
    InboundCapability,
    IntegrationDefinition,
    OAuthCapability,
    PlatformCredentialField,
)
from src.hub.integrations.errors import TokenExchangeError
from src.hub.integrations.events import DomainEvent, EventType
from src.hub.integrations.hook_utils import failure_from_exception, failure_from_response
from src.hub.integrations.providers.base import HttpProvider, post_url, strip_html
from src.hub.integrations.schemas import HookResult, InboundWebhookResult, TokenExchangeResult
from src.hub.integrations.signatures import verify_hmac_signature

logger = structlog.get_logger(__name__)

GRAPHQL_URL = "https://api.linear.app/graphql"
AUTHORIZE_URL = "https://linear.app/oauth/authorize"
TOKEN_URL = "https://api.linear.app/oauth/token"
REVOKE_URL = "https://api.linear.app/oauth/revoke"

VIEWER_QUERY = "query { viewer { id organization { id name urlKey } } }"

ISSUE_CREATE_MUTATION = """
mutation IssueCreate($input: IssueCreateInput!) {
  issueCreate(input: $input) {
    success
    issue { id identifier url }
  }
}
"""

_RETRYABLE_GRAPHQL_CODES = frozenset({"RATELIMITED", "INTERNAL_SERVER_ERROR"})
_AUTH_GRAPHQL_CODES = frozenset({"AUTHENTICATION_ERROR", "FORBIDDEN"})


def _graphql_error(data: dict[str, Any]) -> HookResult | None:
    errors = data.get("errors") or []
    if not errors:
        return None
    first = errors[0] if isinstance(errors[0], dict) else {}
    code = (first.get("extensions") or {}).get("code", "")
    return HookResult(
        success=False,
        error=f"Linear API error: {first.get('message') or code or 'unknown'}",
        should_retry=code in _RETRYABLE_GRAPHQL_CODES,
        connection_error=code in _AUTH_GRAPHQL_CODES,
    )


class LinearOAuth(HttpProvider, OAuthCapability):
    state_type = "linear"

    def build_auth_url(
        self,
        state: str,
        redirect_uri: str,
        pre_auth_fields: dict[str, str] | None = None,
        credentials: dict[str, str] | None = None,
    ) -> str:
        params = {
            "client_id": (credentials or {}).get("clientId", ""),
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": "read,write",
            "state": state,
            "prompt": "consent",
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
                TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "client_id": credentials.get("clientId", ""),
                    "client_secret": credentials.get("clientSecret", ""),
                },
            )
            data = response.json() if response.is_success else {}
            token = data.get("access_token")
            if not token:
                raise TokenExchangeError(f"Linear OAuth failed: {data.get('error') or response.status_code}")

            viewer_response = await client.post(
                GRAPHQL_URL,
                headers={"Authorization": f"Bearer {token}"},
                json={"query": VIEWER_QUERY},
            )
            viewer = {}
            if viewer_response.is_success:
                viewer = ((viewer_response.json().get("data") or {}).get("viewer")) or {}

        organization = viewer.get("organization") or {}
        return TokenExchangeResult(
            access_token=token,
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            config={
                "workspaceId": organization.get("id"),
                "workspaceName": organization.get("name"),
                "workspaceKey": organization.get("urlKey"),
            },
        )


class LinearHook(HttpProvider, HookCapability):
    """Creates a Linear issue in the configured team for each new post."""

    async def run(self, event: DomainEvent, target: dict[str, Any], config: dict[str, Any]) -> HookResult:
        if event.type is not EventType.POST_CREATED:
            return HookResult(success=True)

        team_id = target.get("channelId")
        if not team_id:
            return HookResult(
                success=False, error="No team configured", should_retry=False, connection_error=True
            )
        token = config.get("accessToken")
        if not token:
            return HookResult(
                success=False, error="Missing access token", should_retry=False, connection_error=True
            )

        post = event.data.post
        description = f"{strip_html(post.content)}\n\n---\n[View feedback]({post_url(target, post)})".strip()
        variables = {"input": {"teamId": team_id, "title": post.title, "description": description}}

        try:
            async with self._client() as client:
                response = await client.post(
                    GRAPHQL_URL,
                    headers={"Authorization": f"Bearer {token}"},
                    json={"query": ISSUE_CREATE_MUTATION, "variables": variables},
                )
        except Exception as exc:
            return failure_from_exception(exc)

        if not response.is_success:
            return failure_from_response(response, "Linear")

        data = response.json()
        failure = _graphql_error(data)
        if failure is not None:
            return failure

        created = (data.get("data") or {}).get("issueCreate") or {}
        issue = created.get("issue") or {}
        if not created.get("success") or not issue.get("id"):
            return HookResult(success=False, error="Linear issue was not created", should_retry=False)
        return HookResult(success=True, external_id=issue["id"], external_url=issue.get("url"))


class LinearInbound(InboundCapability):
    """Issue updates whose workflow state changed."""

    def verify_signature(self, headers: Mapping[str, str], body: bytes, secret: str) -> bool | Response:
        return verify_hmac_signature(secret, body, headers.get("linear-signature"))

    def parse_status_change(
        self, payload: dict[str, Any], config: dict[str, Any]
    ) -> InboundWebhookResult | None:
        if payload.get("type") != "Issue" or payload.get("action") != "update":
            return None
        updated_from = payload.get("updatedFrom") or {}
        if "stateId" not in updated_from:
            return None

        data = payload.get("data") or {}
        state_name = (data.get("state") or {}).get("name")
        if not data.get("id") or not state_name:
            return None

        return InboundWebhookResult(
            external_id=data["id"],
            external_status=state_name,
            event_type="Issue.update",
        )


class LinearRevoker(HttpProvider):
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
            response = await client.post(REVOKE_URL, headers={"Authorization": f"Bearer {token}"})
        response.raise_for_status()
        logger.info("linear.token_revoked", workspace_id=config.get("workspaceId"))


def build_definition(transport: httpx.AsyncBaseTransport | None = None) -> IntegrationDefinition:
    return IntegrationDefinition(
        id="linear",
        catalog=CatalogInfo(
            name="Linear",
            category="issue_tracking",
            description="Create Linear issues from feedback and sync workflow state back.",
        ),
        oauth=LinearOAuth(transport),
        hook=LinearHook(transport),
        inbound=LinearInbound(),
        platform_credentials=(
            PlatformCredentialField("clientId", "Client ID", secret=False),
            PlatformCredentialField("clientSecret", "Client Secret"),
        ),
        on_disconnect=LinearRevoker(transport),
    )
