"""Integration tests for the integration hub HTTP endpoints.

Uses the in-memory repository, real hub services over the built-in
provider definitions (with httpx.MockTransport for provider calls) and an
httpx AsyncClient against a minimal FastAPI app.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from tenacity import wait_none

from src.hub.config import get_settings
from src.hub.core.rate_limit import RateLimiter
from src.hub.core.security import create_access_token
from src.hub.integrations.capabilities import CatalogInfo, IntegrationDefinition
from src.hub.integrations.dispatcher import HookDispatcher
from src.hub.integrations.events import domain_event_to_dict
from src.hub.integrations.inbound import InboundWebhookGateway
from src.hub.integrations.oauth import OAuthConnectionManager
from src.hub.integrations.oauth_state import OAuthStateSigner
from src.hub.integrations.providers import build_definitions
from src.hub.integrations.providers.segment import SegmentUserSync
from src.hub.integrations.registry import IntegrationRegistry
from src.hub.integrations.schemas import ConnectionStatus
from src.hub.integrations.status_sync import StatusSyncService
from src.hub.integrations.user_sync import UserSyncOrchestrator


BASE_URL = "https://feedback.example.com"
SLACK_CREDENTIALS = {"clientId": "slack-client", "clientSecret": "slack-secret"}


def _slack_api(request: httpx.Request) -> httpx.Response:
    """Stand-in for slack.com covering the token exchange and revoke."""
    if request.url.path == "/api/oauth.v2.access":
        return httpx.Response(
            200, json={"ok": True, "access_token": "xoxb-new", "team": {"id": "T1", "name": "Acme"}}
        )
    return httpx.Response(200, json={"ok": True})


def _auth(role: str = "admin", member_id: str = "member_1") -> dict[str, str]:
    token = create_access_token(member_id, role)
    return {"Authorization": f"Bearer {token}"}


def _make_app(repo, codec):
    """Create a minimal FastAPI app with hub services on app.state."""
    from fastapi import FastAPI

    from src.hub.api.v1.router import api_router, root_router

    app = FastAPI()
    app.include_router(api_router, prefix="/api")
    app.include_router(root_router)

    registry = IntegrationRegistry(build_definitions(httpx.MockTransport(_slack_api)))
    app.state.integration_registry = registry
    app.state.integration_repository = repo
    app.state.oauth_manager = OAuthConnectionManager(
        registry=registry,
        repository=repo,
        codec=codec,
        state_signer=OAuthStateSigner("state-secret", ttl_seconds=600),
        base_url=BASE_URL,
        workspace_id=get_settings().WORKSPACE_ID,
    )
    app.state.hook_dispatcher = HookDispatcher(registry=registry, repository=repo, codec=codec)
    app.state.inbound_gateway = InboundWebhookGateway(
        registry=registry, repository=repo, codec=codec, status_sync=StatusSyncService(repo)
    )
    app.state.user_sync = UserSyncOrchestrator(registry=registry, repository=repo, codec=codec)
    app.state.rate_limiter = RateLimiter(limit=2, window_seconds=60)
    return app


@pytest_asyncio.fixture
async def client_and_app(repo, codec):
    app = _make_app(repo, codec)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, app


@pytest_asyncio.fixture
async def client(client_and_app):
    return client_and_app[0]


async def _save_slack_credentials(client) -> None:
    response = await client.put(
        "/api/integrations/slack/platform-credentials",
        json={"credentials": SLACK_CREDENTIALS},
        headers=_auth(),
    )
    assert response.status_code == 204


def _settings_url(query: str) -> str:
    return f"{get_settings().BASE_URL.rstrip('/')}/admin/settings/integrations?{query}"


# ── Authentication ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_admin_endpoints_require_token(client):
    response = await client.get("/api/integrations")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_endpoints_reject_invalid_token(client):
    response = await client.get("/api/integrations", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_endpoints_require_admin_role(client):
    response = await client.get("/api/integrations", headers=_auth(role="member"))
    assert response.status_code == 403


# ── Catalog ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_integrations(client, repo, codec):
    repo.add_connection("webhook", config={"url": "https://hooks.example.com"}, secrets=codec.encrypt({}))

    response = await client.get("/api/integrations", headers=_auth())

    assert response.status_code == 200
    entries = {e["id"]: e for e in response.json()}
    assert set(entries) == {"slack", "github", "linear", "shortcut", "webhook", "segment"}
    assert entries["slack"]["available"] is False
    assert entries["slack"]["configurable"] is True
    assert entries["webhook"]["available"] is True
    assert entries["webhook"]["connection"]["status"] == "active"
    assert entries["slack"]["connection"] is None
    assert "secrets" not in entries["webhook"]["connection"]


@pytest.mark.asyncio
async def test_platform_credentials_make_type_available(client):
    await _save_slack_credentials(client)

    response = await client.get("/api/integrations", headers=_auth())

    slack = next(e for e in response.json() if e["id"] == "slack")
    assert slack["available"] is True


@pytest.mark.asyncio
async def test_platform_credentials_validation(client):
    missing = await client.put(
        "/api/integrations/slack/platform-credentials",
        json={"credentials": {"clientId": "x"}},
        headers=_auth(),
    )
    unknown = await client.put(
        "/api/integrations/jira/platform-credentials",
        json={"credentials": {"clientId": "x"}},
        headers=_auth(),
    )
    assert missing.status_code == 400
    assert unknown.status_code == 404


# ── OAuth Connect ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_connect_requires_platform_credentials(client):
    response = await client.post("/api/integrations/slack/connect", headers=_auth())
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_connect_unknown_or_non_oauth_type_404(client):
    assert (await client.post("/api/integrations/jira/connect", headers=_auth())).status_code == 404
    assert (await client.post("/api/integrations/webhook/connect", headers=_auth())).status_code == 404


@pytest.mark.asyncio
async def test_connect_redirects_to_provider_with_state_cookie(client):
    await _save_slack_credentials(client)

    response = await client.post("/api/integrations/slack/connect", headers=_auth())
    assert response.status_code == 200
    url = response.json()["url"]
    assert url.startswith(f"{BASE_URL}/oauth/slack/connect?state=")
    state = parse_qs(urlsplit(url).query)["state"][0]

    redirect = await client.get("/oauth/slack/connect", params={"state": state})

    assert redirect.status_code == 302
    location = redirect.headers["location"]
    assert location.startswith("https://slack.com/oauth/v2/authorize")
    query = parse_qs(urlsplit(location).query)
    assert query["client_id"] == ["slack-client"]
    assert query["state"] == [state]
    assert query["redirect_uri"] == [f"{BASE_URL}/oauth/slack/callback"]
    assert f"oauth_state_slack={state}" in redirect.headers["set-cookie"]


@pytest.mark.asyncio
async def test_oauth_connect_rejects_bad_state(client):
    missing = await client.get("/oauth/slack/connect")
    forged = await client.get("/oauth/slack/connect", params={"state": "forged"})
    assert missing.status_code == 400
    assert forged.status_code == 400
    assert forged.json()["reason"] == "invalid_state"


# ── OAuth Callback ───────────────────────────────────────────────────────────


async def _issue_state(client, app) -> str:
    await _save_slack_credentials(client)
    return app.state.oauth_manager.create_state("slack", get_settings().WORKSPACE_ID, "member_1")


def _callback_cookies(state: str, member_id: str | None = "member_1") -> dict[str, str]:
    cookie = f"oauth_state_slack={state}"
    if member_id is not None:
        token = create_access_token(member_id, "admin")
        cookie += f"; {get_settings().SESSION_COOKIE_NAME}={token}"
    return {"Cookie": cookie}


@pytest.mark.asyncio
async def test_callback_success_stores_connection(client_and_app, repo, codec):
    client, app = client_and_app
    state = await _issue_state(client, app)

    response = await client.get(
        "/oauth/slack/callback",
        params={"code": "code-1", "state": state},
        headers=_callback_cookies(state),
    )

    assert response.status_code == 302
    assert response.headers["location"] == _settings_url("slack=connected")
    connection = repo.connections["slack"]
    assert connection.config == {"teamId": "T1", "teamName": "Acme"}
    assert connection.connected_by_member_id == "member_1"
    assert codec.decrypt(connection.secrets)["accessToken"] == "xoxb-new"


@pytest.mark.asyncio
async def test_callback_state_cookie_mismatch(client_and_app, repo):
    client, app = client_and_app
    state = await _issue_state(client, app)

    response = await client.get(
        "/oauth/slack/callback",
        params={"code": "code-1", "state": state},
        headers={"Cookie": "oauth_state_slack=something-else"},
    )

    assert response.headers["location"] == _settings_url("slack=error&reason=state_mismatch")
    assert "slack" not in repo.connections


@pytest.mark.asyncio
async def test_callback_invalid_state(client, repo):
    response = await client.get("/oauth/slack/callback", params={"code": "code-1", "state": "forged"})

    assert response.status_code == 302
    assert response.headers["location"] == _settings_url("slack=error&reason=invalid_state")
    assert "slack" not in repo.connections


@pytest.mark.asyncio
async def test_callback_user_denied(client_and_app, repo):
    client, app = client_and_app
    state = await _issue_state(client, app)

    response = await client.get(
        "/oauth/slack/callback",
        params={"error": "access_denied", "state": state},
        headers=_callback_cookies(state),
    )

    assert response.headers["location"] == _settings_url("slack=error&reason=slack_denied")
    assert "slack" not in repo.connections


@pytest.mark.asyncio
async def test_callback_requires_signed_in_member(client_and_app, repo):
    client, app = client_and_app
    state = await _issue_state(client, app)

    response = await client.get(
        "/oauth/slack/callback",
        params={"code": "code-1", "state": state},
        headers=_callback_cookies(state, member_id=None),
    )

    assert response.headers["location"] == _settings_url("slack=error&reason=auth_required")
    assert "slack" not in repo.connections


@pytest.mark.asyncio
async def test_callback_rejects_other_member_session(client_and_app, repo):
    client, app = client_and_app
    state = await _issue_state(client, app)

    response = await client.get(
        "/oauth/slack/callback",
        params={"code": "code-1", "state": state},
        headers=_callback_cookies(state, member_id="member_2"),
    )

    assert response.headers["location"] == _settings_url("slack=error&reason=session_mismatch")
    assert "slack" not in repo.connections


@pytest.mark.asyncio
async def test_callback_rejects_state_for_another_workspace(client_and_app, repo):
    client, app = client_and_app
    await _save_slack_credentials(client)
    state = app.state.oauth_manager.create_state("slack", "some-other-workspace", "member_1")

    response = await client.get(
        "/oauth/slack/callback",
        params={"code": "code-1", "state": state},
        headers=_callback_cookies(state),
    )

    assert response.headers["location"] == _settings_url("slack=error&reason=invalid_state")
    assert "slack" not in repo.connections


# ── Manual Connections, Updates, Disconnect ──────────────────────────────────


@pytest.mark.asyncio
async def test_manual_connection_update_and_disconnect(client, repo, codec):
    created = await client.put(
        "/api/integrations/webhook/connection",
        json={"config": {"url": "https://hooks.example.com"}, "secrets": {"signingSecret": "s1"}},
        headers=_auth(),
    )
    assert created.status_code == 200
    assert created.json()["status"] == "active"
    assert created.json()["connected_by_member_id"] == "member_1"

    updated = await client.patch(
        "/api/integrations/webhook",
        json={"config": {"events": ["post.created"]}, "secrets": {"signingSecret": "s2"}},
        headers=_auth(),
    )
    assert updated.status_code == 200
    assert updated.json()["config"] == {"url": "https://hooks.example.com", "events": ["post.created"]}
    assert codec.decrypt(repo.connections["webhook"].secrets) == {"signingSecret": "s2"}

    deleted = await client.delete("/api/integrations/webhook", headers=_auth())
    assert deleted.status_code == 204
    assert "webhook" not in repo.connections

    again = await client.delete("/api/integrations/webhook", headers=_auth())
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_manual_connection_rejected_for_oauth_type(client):
    response = await client.put(
        "/api/integrations/slack/connection",
        json={"secrets": {"accessToken": "x"}},
        headers=_auth(),
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_update_not_connected_404(client):
    response = await client.patch("/api/integrations/webhook", json={"config": {"url": "x"}}, headers=_auth())
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_update_with_unreadable_secrets_400(client, repo):
    repo.add_connection("webhook", secrets="corrupted")
    response = await client.patch(
        "/api/integrations/webhook", json={"secrets": {"signingSecret": "new"}}, headers=_auth()
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_update_reactivates_flagged_connection(client, repo, codec):
    connection = repo.add_connection("webhook", secrets=codec.encrypt({"signingSecret": "s"}))
    await repo.mark_connection_error(connection.id, "HTTP 410")

    response = await client.patch(
        "/api/integrations/webhook", json={"config": {"url": "https://new.example.com"}}, headers=_auth()
    )

    assert response.json()["status"] == "active"
    assert repo.connections["webhook"].status == ConnectionStatus.ACTIVE


# ── Platform Feeds ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_publish_event_accepted(client_and_app, post_created):
    client, app = client_and_app
    event = post_created

    response = await client.post(
        "/api/integrations/events",
        json=domain_event_to_dict(event),
        headers=_auth(role="service", member_id="svc_feedback"),
    )
    await app.state.hook_dispatcher.drain()

    assert response.status_code == 202
    assert response.json() == {"event_id": event.id, "status": "accepted"}


@pytest.mark.asyncio
async def test_publish_event_rejects_unknown_type(client):
    response = await client.post(
        "/api/integrations/events",
        json={"type": "post.archived", "data": {}},
        headers=_auth(role="service"),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_publish_event_forbidden_for_members(client, post_created):
    response = await client.post(
        "/api/integrations/events",
        json=domain_event_to_dict(post_created),
        headers=_auth(role="member"),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_segment_sync_without_connections_is_skipped(client):
    response = await client.post(
        "/api/integrations/segments/sync",
        json={"segment_name": "Power Users", "added_principal_ids": ["p1"]},
        headers=_auth(role="service"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["segment_name"] == "Power Users"
    assert body["skipped"] is True
    assert body["failures"] == []
    assert body["success"] is True


@pytest.mark.asyncio
async def test_segment_sync_reports_failure(client_and_app, repo, codec):
    client, app = client_and_app
    repo.add_connection("segment", secrets=codec.encrypt({"writeKey": "wk_test"}))
    principal = repo.add_principal(repo.add_user("ada@example.com"))
    rejecting = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "rejected"}))
    definition = IntegrationDefinition(
        id="segment",
        catalog=CatalogInfo(name="Segment", category="cdp"),
        user_sync=SegmentUserSync(rejecting, wait=wait_none()),
    )
    app.state.user_sync = UserSyncOrchestrator(
        registry=IntegrationRegistry([definition]), repository=repo, codec=codec
    )

    response = await client.post(
        "/api/integrations/segments/sync",
        json={"segment_name": "Power Users", "added_principal_ids": [principal]},
        headers=_auth(role="service"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["failures"][0]["integration_type"] == "segment"
    assert body["failures"][0]["failed"] == 1


# ── Inbound Endpoints ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_webhook_unknown_type_404(client):
    response = await client.post("/api/integrations/jira/webhook", content=b"{}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_identify_not_connected_404(client):
    response = await client.post("/api/integrations/segment/identify", content=b"{}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_inbound_rate_limited_per_type(client):
    for _ in range(2):
        response = await client.post("/api/integrations/github/webhook", content=b"{}")
        assert response.status_code == 404

    limited = await client.post("/api/integrations/github/webhook", content=b"{}")
    other_type = await client.post("/api/integrations/linear/webhook", content=b"{}")

    assert limited.status_code == 429
    assert int(limited.headers["retry-after"]) >= 1
    assert other_type.status_code == 404


@pytest.mark.asyncio
async def test_inbound_rate_limit_ignores_forwarded_for(client):
    statuses = [
        (
            await client.post(
                "/api/integrations/github/webhook",
                content=b"{}",
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            )
        ).status_code
        for i in range(5)
    ]

    assert statuses[:2] == [404, 404]
    assert statuses[2:] == [429, 429, 429]


# ── Availability ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_missing_service_returns_503(client_and_app):
    client, app = client_and_app
    app.state.oauth_manager = None

    response = await client.post("/api/integrations/slack/connect", headers=_auth())

    assert response.status_code == 503
    assert "oauth_manager" in response.json()["detail"]


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
