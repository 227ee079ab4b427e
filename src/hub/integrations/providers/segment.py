"""Segment integration: inbound identify calls and outbound segment traits.

Inbound: Segment's webhook destination signs the raw body with a base64
HMAC-SHA1 in ``x-signature``. Only ``identify`` calls carrying an email are
merged; everything else is acknowledged and ignored.

Outbound: segment membership is written as a boolean trait named after the
segment through the HTTP Tracking API, in fixed-size concurrent batches.
Transient failures are retried per call with tenacity; a batch never aborts
the run, and one UserSyncError reports the failure count at the end.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Mapping
from typing import Any

import httpx
import structlog
from starlette.responses import JSONResponse, Response
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.hub.config import get_settings
from src.hub.integrations.capabilities import (
    CatalogInfo,
    IdentifyCapability,
    IntegrationDefinition,
    SegmentSyncCapability,
)
from src.hub.integrations.errors import ConfigurationError, UserSyncError
from src.hub.integrations.hook_utils import is_retryable_error
from src.hub.integrations.providers.base import HttpProvider
from src.hub.integrations.schemas import SyncUser, UserIdentifyPayload
from src.hub.integrations.signatures import unauthorized_response, verify_hmac_signature

logger = structlog.get_logger(__name__)

IDENTIFY_URL = "https://api.segment.io/v1/identify"

_TRAIT_RE = re.compile(r"[^a-z0-9]+")


def segment_trait_key(segment_name: str) -> str:
    """Trait name for a segment: ``Power Users`` -> ``segment_power_users``."""
    return "segment_" + _TRAIT_RE.sub("_", segment_name.lower()).strip("_")


class SegmentUserSync(HttpProvider, IdentifyCapability, SegmentSyncCapability):
    """Identify handling and segment membership push for Segment.

    Args:
        transport: Optional httpx transport.
        batch_size: Concurrent calls per batch; defaults to USER_SYNC_BATCH_SIZE.
        max_attempts: Attempts per call for transient failures.
        wait: tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        batch_size: int | None = None,
        max_attempts: int = 3,
        wait: wait_base | None = None,
    ) -> None:
        super().__init__(transport)
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=10)

    # ── Inbound ─────────────────────────────────────────────────────────────

    async def handle_identify(
        self,
        headers: Mapping[str, str],
        body: bytes,
        config: dict[str, Any],
        secrets: dict[str, Any],
    ) -> UserIdentifyPayload | Response:
        secret = secrets.get("webhookSecret")
        if not secret:
            return JSONResponse({"error": "Webhook not configured"}, status_code=404)

        if not verify_hmac_signature(
            secret,
            body,
            headers.get("x-signature"),
            algorithm="sha1",
            encoding="base64",
        ):
            return unauthorized_response()

        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)

        if payload.get("type") != "identify":
            return JSONResponse({"status": "ignored"})

        traits = payload.get("traits") or (payload.get("context") or {}).get("traits") or {}
        if not isinstance(traits, dict):
            traits = {}
        email = traits.get("email")
        if not isinstance(email, str) or not email.strip():
            return JSONResponse({"status": "ignored"})

        user_id = payload.get("userId")
        return UserIdentifyPayload(
            email=email.strip().lower(),
            external_user_id=str(user_id) if user_id else None,
            attributes={k: v for k, v in traits.items() if k != "email"},
        )

    # ── Outbound ────────────────────────────────────────────────────────────

    async def sync_segment_membership(
        self,
        users: list[SyncUser],
        segment_name: str,
        joined: bool,
        config: dict[str, Any],
        secrets: dict[str, Any],
    ) -> None:
        write_key = secrets.get("writeKey")
        if not write_key:
            raise ConfigurationError("Segment write key not configured")
        if not users:
            return

        trait = segment_trait_key(segment_name)
        batch_size = self._batch_size or get_settings().USER_SYNC_BATCH_SIZE
        errors: list[str] = []

        async with self._client(auth=(write_key, "")) as client:
            for start in range(0, len(users), batch_size):
                batch = users[start : start + batch_size]
                results = await asyncio.gather(
                    *(self._identify(client, user, trait, joined) for user in batch),
                    return_exceptions=True,
                )
                for user, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        errors.append(f"{user.principal_id}: {result}")

        if errors:
            logger.warning(
                "segment.sync_failures",
                segment_name=segment_name,
                joined=joined,
                failed=len(errors),
                total=len(users),
            )
            raise UserSyncError("segment", len(errors), len(users), errors)

    async def _identify(self, client: httpx.AsyncClient, user: SyncUser, trait: str, joined: bool) -> None:
        body: dict[str, Any] = {"traits": {"email": user.email, trait: joined}}
        external_id = user.external_ids.get("segment")
        if external_id:
            body["userId"] = external_id
        else:
            body["anonymousId"] = user.principal_id

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_retryable_error),
            reraise=True,
        ):
            with attempt:
                response = await client.post(IDENTIFY_URL, json=body)
                response.raise_for_status()


def build_definition(transport: httpx.AsyncBaseTransport | None = None) -> IntegrationDefinition:
    return IntegrationDefinition(
        id="segment",
        catalog=CatalogInfo(
            name="Segment",
            category="cdp",
            description="Enrich users from Segment identify calls and push segment membership as traits.",
        ),
        user_sync=SegmentUserSync(transport),
    )
