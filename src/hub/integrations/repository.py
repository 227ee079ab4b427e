"""Integration repository -- async persistence for the integration hub.

Provides IntegrationRepository with the session_factory callable pattern.
Handles the tables the hub owns (connections, platform credentials,
attribute definitions, post external links) and the narrow reads/writes it
performs against platform-owned tables (users, principals, posts).

Secrets are stored and returned exactly as encrypted; decryption belongs to
the services that use them.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import JSON, String, case, column, delete, select, table, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.hub.integrations.models import (
    IntegrationModel,
    PlatformCredentialModel,
    PostExternalLinkModel,
    UserAttributeDefinitionModel,
)
from src.hub.integrations.schemas import (
    AttributeType,
    ConnectionStatus,
    IntegrationConnection,
    SyncUser,
    UserAttributeDefinition,
)

logger = structlog.get_logger(__name__)

EXTERNAL_IDS_KEY = "_externalIds"

# Platform-owned tables, referenced without declaring them in the hub metadata
users_table = table(
    "users",
    column("id", String),
    column("email", String),
    column("name", String),
    column("metadata", JSON),
)
principals_table = table(
    "principals",
    column("id", String),
    column("user_id", String),
)
posts_table = table(
    "posts",
    column("id", String),
    column("status_id", String),
)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_connection(model: IntegrationModel) -> IntegrationConnection:
    return IntegrationConnection(
        id=model.id,
        integration_type=model.integration_type,
        status=ConnectionStatus(model.status),
        config=model.config or {},
        secrets=model.secrets,
        connected_by_member_id=model.connected_by_member_id,
        connected_at=model.connected_at,
        last_error=model.last_error,
        error_count=model.error_count or 0,
    )


def _model_to_attribute_definition(model: UserAttributeDefinitionModel) -> UserAttributeDefinition | None:
    try:
        attr_type = AttributeType(model.type)
    except ValueError:
        logger.warning("user_sync.unknown_attribute_type", key=model.key, type=model.type)
        return None
    return UserAttributeDefinition(
        id=model.id,
        key=model.key,
        label=model.label or "",
        type=attr_type,
        external_key=model.external_key,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class IntegrationRepository:
    """Async persistence for integration connections and user sync data.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Connections ─────────────────────────────────────────────────────────

    async def get_connection(self, integration_type: str) -> IntegrationConnection | None:
        """Get the connection for a type regardless of status."""
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.integration_type == integration_type,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_connection(model)

    async def get_active_connection(self, integration_type: str) -> IntegrationConnection | None:
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.integration_type == integration_type,
                IntegrationModel.status == ConnectionStatus.ACTIVE.value,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_connection(model)

    async def list_active_connections(
        self, integration_types: Iterable[str] | None = None
    ) -> list[IntegrationConnection]:
        """List active connections, optionally restricted to some types.

        Args:
            integration_types: Types to include. None means all; an empty
                iterable returns nothing without querying.
        """
        types = None if integration_types is None else list(integration_types)
        if types is not None and not types:
            return []

        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.status == ConnectionStatus.ACTIVE.value,
            )
            if types is not None:
                stmt = stmt.where(IntegrationModel.integration_type.in_(types))
            result = await session.execute(stmt)
            return [_model_to_connection(m) for m in result.scalars().all()]

    async def list_connections(self) -> list[IntegrationConnection]:
        async for session in self._session_factory():
            result = await session.execute(select(IntegrationModel))
            return [_model_to_connection(m) for m in result.scalars().all()]

    async def save_connection(
        self,
        integration_type: str,
        config: dict[str, Any],
        secrets: str,
        member_id: str | None,
    ) -> IntegrationConnection:
        """Create or replace the connection for a type.

        Reconnecting resets status and error tracking.
        """
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.integration_type == integration_type,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = IntegrationModel(integration_type=integration_type)
                session.add(model)

            model.status = ConnectionStatus.ACTIVE.value
            model.config = config
            model.secrets = secrets
            model.connected_by_member_id = member_id
            model.connected_at = now
            model.last_error = None
            model.last_error_at = None
            model.error_count = 0

            await session.commit()
            await session.refresh(model)
            logger.info(
                "integrations.connection_saved",
                integration_type=integration_type,
                connection_id=model.id,
            )
            return _model_to_connection(model)

    async def update_connection(
        self,
        connection_id: str,
        config: dict[str, Any],
        secrets: str | None,
    ) -> IntegrationConnection | None:
        """Replace config and secrets and reactivate the connection."""
        async for session in self._session_factory():
            model = await session.get(IntegrationModel, connection_id)
            if model is None:
                return None
            model.config = config
            model.secrets = secrets
            model.status = ConnectionStatus.ACTIVE.value
            model.last_error = None
            model.last_error_at = None
            model.error_count = 0
            await session.commit()
            await session.refresh(model)
            return _model_to_connection(model)

    async def delete_connection(self, connection_id: str) -> bool:
        """Delete a connection. Returns False when it no longer exists."""
        async for session in self._session_factory():
            stmt = delete(IntegrationModel).where(IntegrationModel.id == connection_id)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def mark_connection_error(self, connection_id: str, error: str, threshold: int = 1) -> None:
        """Record a non-retryable failure.

        The connection is flagged (status=error) once its consecutive failure
        count reaches ``threshold``.
        """
        async for session in self._session_factory():
            stmt = (
                update(IntegrationModel)
                .where(IntegrationModel.id == connection_id)
                .values(
                    status=case(
                        (IntegrationModel.error_count + 1 >= threshold, ConnectionStatus.ERROR.value),
                        else_=IntegrationModel.status,
                    ),
                    last_error=error,
                    last_error_at=datetime.now(timezone.utc),
                    error_count=IntegrationModel.error_count + 1,
                )
            )
            await session.execute(stmt)
            await session.commit()

    async def clear_connection_errors(self, connection_id: str) -> None:
        """Reset the failure count after a successful delivery."""
        async for session in self._session_factory():
            stmt = (
                update(IntegrationModel)
                .where(IntegrationModel.id == connection_id)
                .values(error_count=0, last_error=None, last_error_at=None)
            )
            await session.execute(stmt)
            await session.commit()

    # ── Platform Credentials ────────────────────────────────────────────────

    async def get_platform_credentials_blob(self, integration_type: str) -> str | None:
        async for session in self._session_factory():
            model = await session.get(PlatformCredentialModel, integration_type)
            return model.secrets if model is not None else None

    async def save_platform_credentials(
        self, integration_type: str, secrets: str, member_id: str | None = None
    ) -> None:
        async for session in self._session_factory():
            model = await session.get(PlatformCredentialModel, integration_type)
            if model is None:
                model = PlatformCredentialModel(integration_type=integration_type)
                session.add(model)
            model.secrets = secrets
            model.configured_by_member_id = member_id
            await session.commit()

    async def list_configured_credential_types(self) -> list[str]:
        async for session in self._session_factory():
            result = await session.execute(select(PlatformCredentialModel.integration_type))
            return list(result.scalars().all())

    # ── User Sync ───────────────────────────────────────────────────────────

    async def list_attribute_definitions(self) -> list[UserAttributeDefinition]:
        async for session in self._session_factory():
            result = await session.execute(select(UserAttributeDefinitionModel))
            definitions = []
            for model in result.scalars().all():
                definition = _model_to_attribute_definition(model)
                if definition is not None:
                    definitions.append(definition)
            return definitions

    async def find_user_id_by_email(self, email: str) -> str | None:
        async for session in self._session_factory():
            stmt = select(users_table.c.id).where(users_table.c.email == email.strip().lower())
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def merge_user_metadata(
        self,
        user_id: str,
        attributes: dict[str, Any],
        external_ids: dict[str, str] | None = None,
    ) -> None:
        """Merge attributes and external ids into a user's metadata.

        The row is locked for the read-modify-write so concurrent identify
        calls for the same user do not drop each other's keys.
        """
        async for session in self._session_factory():
            stmt = (
                select(users_table.c.metadata)
                .where(users_table.c.id == user_id)
                .with_for_update()
            )
            result = await session.execute(stmt)
            row = result.first()
            if row is None:
                await session.rollback()
                return

            metadata = dict(row[0] or {})
            metadata.update(attributes)
            if external_ids:
                merged_ids = dict(metadata.get(EXTERNAL_IDS_KEY) or {})
                merged_ids.update(external_ids)
                metadata[EXTERNAL_IDS_KEY] = merged_ids

            await session.execute(
                update(users_table).where(users_table.c.id == user_id).values(metadata=metadata)
            )
            await session.commit()

    async def resolve_sync_users(self, principal_ids: Iterable[str]) -> list[SyncUser]:
        """Resolve principals to email and stored external ids in one query."""
        ids = list(dict.fromkeys(principal_ids))
        if not ids:
            return []

        async for session in self._session_factory():
            stmt = (
                select(
                    principals_table.c.id,
                    users_table.c.email,
                    users_table.c.name,
                    users_table.c.metadata,
                )
                .select_from(
                    principals_table.join(users_table, principals_table.c.user_id == users_table.c.id)
                )
                .where(principals_table.c.id.in_(ids))
            )
            result = await session.execute(stmt)
            users = []
            for principal_id, email, name, metadata in result.all():
                if not email:
                    continue
                external_ids = (metadata or {}).get(EXTERNAL_IDS_KEY) or {}
                users.append(
                    SyncUser(
                        principal_id=principal_id,
                        email=email,
                        name=name,
                        external_ids={k: str(v) for k, v in external_ids.items()},
                    )
                )
            return users

    # ── Status Sync ─────────────────────────────────────────────────────────

    async def save_external_link(
        self,
        post_id: str,
        integration_type: str,
        external_id: str,
        external_url: str | None = None,
    ) -> None:
        async for session in self._session_factory():
            session.add(
                PostExternalLinkModel(
                    post_id=post_id,
                    integration_type=integration_type,
                    external_id=external_id,
                    external_url=external_url,
                )
            )
            await session.commit()

    async def find_linked_post_id(self, integration_type: str, external_id: str) -> str | None:
        async for session in self._session_factory():
            stmt = select(PostExternalLinkModel.post_id).where(
                PostExternalLinkModel.integration_type == integration_type,
                PostExternalLinkModel.external_id == external_id,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def update_post_status(self, post_id: str, status_id: str) -> bool:
        async for session in self._session_factory():
            stmt = (
                update(posts_table)
                .where(posts_table.c.id == post_id)
                .values(status_id=status_id)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0
