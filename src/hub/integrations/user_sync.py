"""User-sync orchestrator.

Inbound: a CDP/CRM identify call is verified by the provider, then its
attributes are filtered through the configured attribute definitions,
coerced, and merged into the matching user's metadata together with the
provider's external user id. Unknown emails are acknowledged and dropped;
no user is created.

Outbound: segment membership changes are pushed to every active connection
whose integration supports segment sync, joined and left concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

import structlog
from starlette.responses import JSONResponse, Response

from src.hub.core.encryption import SecretsCodec
from src.hub.core.monitoring import identify_requests_total, segment_sync_failures_total
from src.hub.integrations.attributes import map_attributes
from src.hub.integrations.errors import SecretsDecryptionError, UserSyncError
from src.hub.integrations.inbound import as_headers
from src.hub.integrations.registry import IntegrationRegistry
from src.hub.integrations.repository import IntegrationRepository
from src.hub.integrations.schemas import (
    IntegrationConnection,
    SegmentSyncFailure,
    SegmentSyncReport,
    SyncUser,
    UserIdentifyPayload,
)
from src.hub.integrations.signatures import unauthorized_response

logger = structlog.get_logger(__name__)


class UserSyncOrchestrator:
    """Inbound identify merge and outbound segment membership push.

    Args:
        registry: Integration definitions.
        repository: Connection, attribute definition and user persistence.
        codec: Secrets codec; secrets are decrypted per call.
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        repository: IntegrationRepository,
        codec: SecretsCodec,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._codec = codec

    # ── Inbound ─────────────────────────────────────────────────────────────

    async def handle_inbound_identify(
        self, integration_type: str, headers: Mapping[str, str], body: bytes
    ) -> Response:
        """Verify, parse and merge one identify call."""
        log = logger.bind(integration_type=integration_type)

        definition = self._registry.get(integration_type)
        if definition is None or definition.identify is None:
            return JSONResponse({"error": "Unknown integration"}, status_code=404)

        connection = await self._repository.get_active_connection(integration_type)
        if connection is None:
            return JSONResponse({"error": "Integration not connected"}, status_code=404)

        try:
            secrets = self._codec.decrypt(connection.secrets)
        except SecretsDecryptionError:
            log.error("user_sync.secrets_undecryptable", connection_id=connection.id)
            return unauthorized_response("Webhook secret unavailable")

        outcome = await definition.identify.handle_identify(
            as_headers(headers), body, connection.config, secrets
        )
        if isinstance(outcome, Response):
            identify_requests_total.labels(
                integration_type=integration_type, result=str(outcome.status_code)
            ).inc()
            return outcome

        try:
            merged = await self.merge_identify(integration_type, outcome)
        except Exception:
            log.exception("user_sync.identify_merge_failed")
            merged = False
        identify_requests_total.labels(
            integration_type=integration_type, result="merged" if merged else "dropped"
        ).inc()
        return JSONResponse({"status": "ok"})

    async def merge_identify(self, integration_type: str, payload: UserIdentifyPayload) -> bool:
        """Merge an identify payload into the matching user.

        Returns:
            True when a user's metadata was written.
        """
        user_id = await self._repository.find_user_id_by_email(payload.email)
        if user_id is None:
            logger.info("user_sync.unknown_user", integration_type=integration_type)
            return False

        definitions = await self._repository.list_attribute_definitions()
        attributes = map_attributes(payload.attributes, definitions)
        external_ids = {integration_type: payload.external_user_id} if payload.external_user_id else {}
        if not attributes and not external_ids:
            return False

        await self._repository.merge_user_metadata(user_id, attributes, external_ids)
        logger.info(
            "user_sync.identify_merged",
            integration_type=integration_type,
            user_id=user_id,
            attributes=sorted(attributes),
        )
        return True

    # ── Outbound ────────────────────────────────────────────────────────────

    async def notify_user_sync_integrations(
        self,
        segment_name: str,
        added_principal_ids: list[str],
        removed_principal_ids: list[str],
    ) -> SegmentSyncReport:
        """Push a segment membership change to every segment-sync connection."""
        report = SegmentSyncReport(segment_name=segment_name)
        if not added_principal_ids and not removed_principal_ids:
            report.skipped = True
            return report

        connections = await self._repository.list_active_connections(
            self._registry.list_types_with_segment_sync()
        )
        if not connections:
            report.skipped = True
            return report

        users = await self._repository.resolve_sync_users(
            [*added_principal_ids, *removed_principal_ids]
        )
        by_id = {u.principal_id: u for u in users}
        joined = [by_id[p] for p in dict.fromkeys(added_principal_ids) if p in by_id]
        left = [by_id[p] for p in dict.fromkeys(removed_principal_ids) if p in by_id]

        calls = []
        for connection in connections:
            if joined:
                calls.append(self._push(connection, segment_name, joined, True))
            if left:
                calls.append(self._push(connection, segment_name, left, False))

        report.attempted = len(calls)
        failures = await asyncio.gather(*calls)
        report.failures = [f for f in failures if f is not None]

        logger.info(
            "user_sync.segment_pushed",
            segment_name=segment_name,
            joined=len(joined),
            left=len(left),
            connections=len(connections),
            failures=len(report.failures),
        )
        return report

    async def _push(
        self,
        connection: IntegrationConnection,
        segment_name: str,
        users: list[SyncUser],
        joined: bool,
    ) -> SegmentSyncFailure | None:
        integration_type = connection.integration_type
        definition = self._registry.get(integration_type)
        if definition is None or definition.segment_sync is None:
            return None

        try:
            secrets = self._codec.decrypt(connection.secrets)
            await definition.segment_sync.sync_segment_membership(
                users, segment_name, joined, connection.config, secrets
            )
        except UserSyncError as exc:
            failed, total, error = exc.failed, exc.total, str(exc)
        except Exception as exc:
            failed, total, error = len(users), len(users), str(exc) or type(exc).__name__
        else:
            return None

        segment_sync_failures_total.labels(integration_type=integration_type).inc(failed)
        logger.warning(
            "user_sync.segment_push_failed",
            integration_type=integration_type,
            segment_name=segment_name,
            joined=joined,
            failed=failed,
            total=total,
            error=error,
        )
        return SegmentSyncFailure(
            integration_type=integration_type,
            joined=joined,
            failed=failed,
            total=total,
            error=error,
        )
