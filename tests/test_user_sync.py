"""Tests for the user-sync orchestrator with the Segment integration.

Inbound identify calls are signed like Segment's webhook destination
(base64 HMAC-SHA1). Outbound pushes hit an httpx.MockTransport standing in
for the Segment tracking API.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from tenacity import wait_none

from src.hub.integrations.capabilities import CatalogInfo, IntegrationDefinition
from src.hub.integrations.providers.segment import SegmentUserSync, segment_trait_key
from src.hub.integrations.registry import IntegrationRegistry
from src.hub.integrations.repository import EXTERNAL_IDS_KEY
from src.hub.integrations.schemas import AttributeType, UserAttributeDefinition
from src.hub.integrations.user_sync import UserSyncOrchestrator

WEBHOOK_SECRET = "segment-shared-secret"
WRITE_KEY = "wk_test"


def _segment_signature(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha1).digest()).decode()


def _identify_body(email: str = "Ada@Example.com", **traits) -> bytes:
    return json.dumps(
        {"type": "identify", "userId": "seg_123", "traits": {"email": email, **traits}}
    ).encode()


class SegmentAPI:
    """MockTransport handler recording identify calls; fails for chosen emails."""

    def __init__(self, failing_emails: set[str] | None = None, status_code: int = 400) -> None:
        self.failing_emails = failing_emails or set()
        self.status_code = status_code
        self.calls: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append({"body": body, "auth": request.headers.get("authorization")})
        if body["traits"]["email"] in self.failing_emails:
            return httpx.Response(self.status_code, json={"error": "rejected"})
        return httpx.Response(200, json={"success": True})


def _orchestrator(repo, codec, api: SegmentAPI | None = None, batch_size: int = 10) -> UserSyncOrchestrator:
    transport = httpx.MockTransport(api or SegmentAPI())
    definition = IntegrationDefinition(
        id="segment",
        catalog=CatalogInfo(name="Segment", category="cdp"),
        user_sync=SegmentUserSync(transport, batch_size=batch_size, wait=wait_none()),
    )
    return UserSyncOrchestrator(registry=IntegrationRegistry([definition]), repository=repo, codec=codec)


def _connect(repo, codec, **secrets):
    return repo.add_connection(
        "segment",
        secrets=codec.encrypt({"webhookSecret": WEBHOOK_SECRET, "writeKey": WRITE_KEY, **secrets}),
    )


# ── Inbound Identify ─────────────────────────────────────────────────────────


class TestInboundIdentify:
    @pytest.mark.asyncio
    async def test_known_user_attributes_merged(self, repo, codec):
        _connect(repo, codec)
        user_id = repo.add_user("ada@example.com", metadata={"existing": "kept"})
        repo.attribute_definitions = [
            UserAttributeDefinition(id="a1", key="plan", type=AttributeType.STRING, external_key="plan_name"),
            UserAttributeDefinition(id="a2", key="seats", type=AttributeType.NUMBER, external_key="seats"),
        ]
        body = _identify_body(plan_name="Pro", seats="12", favorite_color="blue")
        orchestrator = _orchestrator(repo, codec)

        response = await orchestrator.handle_inbound_identify(
            "segment", {"x-signature": _segment_signature(body)}, body
        )

        assert response.status_code == 200
        metadata = repo.users[user_id]["metadata"]
        assert metadata["plan"] == "Pro"
        assert metadata["seats"] == 12
        assert metadata["existing"] == "kept"
        assert "favorite_color" not in metadata
        assert metadata[EXTERNAL_IDS_KEY] == {"segment": "seg_123"}

    @pytest.mark.asyncio
    async def test_unknown_email_acknowledged_without_write(self, repo, codec):
        _connect(repo, codec)
        repo.merge_user_metadata = AsyncMock()
        body = _identify_body("stranger@example.com", plan_name="Pro")

        response = await _orchestrator(repo, codec).handle_inbound_identify(
            "segment", {"x-signature": _segment_signature(body)}, body
        )

        assert response.status_code == 200
        repo.merge_user_metadata.assert_not_called()
        assert repo.users == {}

    @pytest.mark.asyncio
    async def test_bad_signature_401(self, repo, codec):
        _connect(repo, codec)
        repo.add_user("ada@example.com")
        body = _identify_body()

        response = await _orchestrator(repo, codec).handle_inbound_identify(
            "segment", {"x-signature": _segment_signature(body, "wrong")}, body
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_webhook_secret_404(self, repo, codec):
        repo.add_connection("segment", secrets=codec.encrypt({"writeKey": WRITE_KEY}))
        body = _identify_body()

        response = await _orchestrator(repo, codec).handle_inbound_identify(
            "segment", {"x-signature": _segment_signature(body)}, body
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_not_connected_404(self, repo, codec):
        body = _identify_body()
        response = await _orchestrator(repo, codec).handle_inbound_identify("segment", {}, body)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_type_404(self, repo, codec):
        response = await _orchestrator(repo, codec).handle_inbound_identify("hubspot", {}, b"{}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_json_400(self, repo, codec):
        _connect(repo, codec)
        body = b"{oops"
        response = await _orchestrator(repo, codec).handle_inbound_identify(
            "segment", {"x-signature": _segment_signature(body)}, body
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_track_calls_ignored(self, repo, codec):
        _connect(repo, codec)
        repo.merge_user_metadata = AsyncMock()
        body = json.dumps({"type": "track", "event": "Signed Up"}).encode()

        response = await _orchestrator(repo, codec).handle_inbound_identify(
            "segment", {"x-signature": _segment_signature(body)}, body
        )

        assert response.status_code == 200
        repo.merge_user_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_merge_failure_still_200(self, repo, codec):
        _connect(repo, codec)
        repo.add_user("ada@example.com")
        repo.find_user_id_by_email = AsyncMock(side_effect=RuntimeError("db down"))
        body = _identify_body()

        response = await _orchestrator(repo, codec).handle_inbound_identify(
            "segment", {"x-signature": _segment_signature(body)}, body
        )

        assert response.status_code == 200


# ── Outbound Segment Membership ──────────────────────────────────────────────


class TestSegmentMembershipPush:
    @pytest.mark.asyncio
    async def test_partial_failure_reports_count_without_aborting(self, repo, codec):
        _connect(repo, codec)
        principals = [repo.add_principal(repo.add_user(f"user{i}@example.com")) for i in range(25)]
        api = SegmentAPI(failing_emails={"user3@example.com", "user12@example.com", "user24@example.com"})

        report = await _orchestrator(repo, codec, api).notify_user_sync_integrations(
            "Power Users", principals, []
        )

        assert len(api.calls) == 25
        succeeded = [c for c in api.calls if c["body"]["traits"]["email"] not in api.failing_emails]
        assert len(succeeded) == 22
        [failure] = report.failures
        assert failure.integration_type == "segment"
        assert failure.joined is True
        assert failure.failed == 3
        assert failure.total == 25
        assert report.success is False
        assert report.model_dump(mode="json")["success"] is False

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, repo, codec):
        _connect(repo, codec)
        principal = repo.add_principal(repo.add_user("ada@example.com"))
        attempts = {"count": 0}

        def flaky(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            if attempts["count"] < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"success": True})

        transport = httpx.MockTransport(flaky)
        definition = IntegrationDefinition(
            id="segment",
            catalog=CatalogInfo(name="Segment", category="cdp"),
            user_sync=SegmentUserSync(transport, max_attempts=3, wait=wait_none()),
        )
        orchestrator = UserSyncOrchestrator(IntegrationRegistry([definition]), repo, codec)

        report = await orchestrator.notify_user_sync_integrations("Beta", [principal], [])

        assert report.success is True
        assert attempts["count"] == 3

    @pytest.mark.asyncio
    async def test_joined_and_left_pushed_with_trait(self, repo, codec):
        _connect(repo, codec)
        joined = repo.add_principal(repo.add_user("in@example.com", metadata={EXTERNAL_IDS_KEY: {"segment": "seg_in"}}))
        left = repo.add_principal(repo.add_user("out@example.com"))
        api = SegmentAPI()

        report = await _orchestrator(repo, codec, api).notify_user_sync_integrations("Power Users", [joined], [left])

        assert report.attempted == 2
        assert report.success is True
        bodies = {c["body"]["traits"]["email"]: c["body"] for c in api.calls}
        assert bodies["in@example.com"]["traits"]["segment_power_users"] is True
        assert bodies["in@example.com"]["userId"] == "seg_in"
        assert bodies["out@example.com"]["traits"]["segment_power_users"] is False
        assert bodies["out@example.com"]["anonymousId"] == left
        assert all(c["auth"].startswith("Basic ") for c in api.calls)

    @pytest.mark.asyncio
    async def test_skipped_without_changes_or_connections(self, repo, codec):
        orchestrator = _orchestrator(repo, codec)
        assert (await orchestrator.notify_user_sync_integrations("S", [], [])).skipped is True
        assert (await orchestrator.notify_user_sync_integrations("S", ["p1"], [])).skipped is True

    @pytest.mark.asyncio
    async def test_missing_write_key_counts_all_as_failed(self, repo, codec):
        repo.add_connection("segment", secrets=codec.encrypt({"webhookSecret": WEBHOOK_SECRET}))
        principals = [repo.add_principal(repo.add_user(f"u{i}@example.com")) for i in range(4)]

        report = await _orchestrator(repo, codec).notify_user_sync_integrations("S", principals, [])

        [failure] = report.failures
        assert failure.failed == 4
        assert "write key" in failure.error


def test_segment_trait_key():
    assert segment_trait_key("Power Users") == "segment_power_users"
    assert segment_trait_key("  Beta / EU  ") == "segment_beta_eu"
