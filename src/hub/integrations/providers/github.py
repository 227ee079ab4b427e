"""GitHub integration: OAuth app, issue creation, issue state webhooks."""

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
from src.hub.integrations.hook_utils import created_from_response, failure_from_exception, failure_from_response
from src.hub.integrations.providers.base import HttpProvider, post_url, strip_html
from src.hub.integrations.schemas import HookResult, InboundWebhookResult, TokenExchangeResult
from src.hub.integrations.signatures import verify_hmac_signature

logger = structlog.get_logger(__name__)

GITHUB_API = "https://api.github.com"
AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
TOKEN_URL = "https://github.com/login/oauth/access_token"

_API_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}

_ISSUE_ACTION_STATUS = {
    "closed": "Closed",
    "reopened": "Open",
}


class GitHubOAuth(HttpProvider, OAuthCapability):
    state_type = "github"

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
            "scope": "repo",
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
                TOKEN_URL,
                headers={"Accept": "application/json"},
                data={
                    "client_id": credentials.get("clientId", ""),
                    "client_secret": credentials.get("clientSecret", ""),
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
            )
            data = response.json() if response.is_success else {}
            token = data.get("access_token")
            if not token:
                raise TokenExchangeError(
                    f"GitHub OAuth failed: {data.get('error_description') or data.get('error') or response.status_code}"
                )

            # Token responses carry no account info
            user_response = await client.get(
                f"{GITHUB_API}/user",
                headers={**_API_HEADERS, "Authorization": f"Bearer {token}"},
            )
            user = user_response.json() if user_response.is_success else {}

        return TokenExchangeResult(
            access_token=token,
            config={"accountLogin": user.get("login"), "accountId": user.get("id")},
        )


class GitHubHook(HttpProvider, HookCapability):
    """Opens an issue for each new post in the configured ``owner/repo``."""

    async def run(self, event: DomainEvent, target: dict[str, Any], config: dict[str, Any]) -> HookResult:
        if event.type is not EventType.POST_CREATED:
            return HookResult(success=True)

        repo = target.get("channelId")
        if not repo or "/" not in repo:
            return HookResult(
                success=False, error="No repository configured", should_retry=False, connection_error=True
            )
        token = config.get("accessToken")
        if not token:
            return HookResult(
                success=False, error="Missing access token", should_retry=False, connection_error=True
            )

        post = event.data.post
        body = "\n\n".join(
            part
            for part in (
                strip_html(post.content),
                f"---\nSubmitted by {post.author_name or post.author_email or 'Anonymous'}",
                f"[View feedback]({post_url(target, post)})",
            )
            if part
        )
        payload: dict[str, Any] = {"title": post.title, "body": body}
        if target.get("labels"):
            payload["labels"] = list(target["labels"])

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{GITHUB_API}/repos/{repo}/issues",
                    headers={**_API_HEADERS, "Authorization": f"Bearer {token}"},
                    json=payload,
                )
        except Exception as exc:
            return failure_from_exception(exc)

        if not response.is_success:
            return failure_from_response(response, "GitHub")

        return created_from_response(response, "GitHub", "number", "html_url")


class GitHubInbound(InboundCapability):
    """Issue ``closed`` / ``reopened`` events from a repository webhook."""

    def verify_signature(self, headers: Mapping[str, str], body: bytes, secret: str) -> bool | Response:
        return verify_hmac_signature(
            secret,
            body,
            headers.get("x-hub-signature-256"),
            prefix="sha256=",
        )

    def parse_status_change(
        self, payload: dict[str, Any], config: dict[str, Any]
    ) -> InboundWebhookResult | None:
        issue = payload.get("issue")
        if not isinstance(issue, dict) or "comment" in payload:
            return None
        if "pull_request" in issue:
            return None

        action = payload.get("action")
        status = _ISSUE_ACTION_STATUS.get(action)
        if status is None or issue.get("number") is None:
            return None

        return InboundWebhookResult(
            external_id=str(issue["number"]),
            external_status=status,
            event_type=f"issues.{action}",
        )


class GitHubRevoker(HttpProvider):
    """Deletes the OAuth grant; needs the app's client credentials."""

    async def __call__(
        self,
        secrets: dict[str, Any],
        config: dict[str, Any],
        credentials: dict[str, str] | None = None,
    ) -> None:
        token = secrets.get("accessToken")
        if not token or not credentials or not credentials.get("clientId"):
            return
        async with self._client() as client:
            response = await client.request(
                "DELETE",
                f"{GITHUB_API}/applications/{credentials['clientId']}/grant",
                headers=_API_HEADERS,
                auth=(credentials["clientId"], credentials.get("clientSecret", "")),
                json={"access_token": token},
            )
        response.raise_for_status()
        logger.info("github.grant_revoked", account=config.get("accountLogin"))


def build_definition(transport: httpx.AsyncBaseTransport | None = None) -> IntegrationDefinition:
    return IntegrationDefinition(
        id="github",
        catalog=CatalogInfo(
            name="GitHub",
            category="issue_tracking",
            description="Create GitHub issues from feedback and sync issue state back.",
        ),
        oauth=GitHubOAuth(transport),
        hook=GitHubHook(transport),
        inbound=GitHubInbound(),
        platform_credentials=(
            PlatformCredentialField("clientId", "Client ID", secret=False),
            PlatformCredentialField("clientSecret", "Client Secret"),
        ),
        on_disconnect=GitHubRevoker(transport),
    )
