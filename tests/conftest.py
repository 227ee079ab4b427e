"""Shared fixtures for integration hub tests.

Provides:
- InMemoryIntegrationRepository: repository test double covering connections,
  platform credentials, attribute definitions, users/principals and post links
- A SecretsCodec over a freshly generated Fernet key
- Domain event builders
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import pytest
from cryptography.fernet import Fernet

from src.hub.core.encryption import SecretsCodec
from src.hub.integrations.events import (
    CommentCreatedData,
    CommentCreatedEvent,
    CommentSummary,
    PostCreatedData,
    PostCreatedEvent,
    PostStatusChangedData,
    PostStatusChangedEvent,
    PostSummary,
)
from src.hub.integrations.repository import EXTERNAL_IDS_KEY
from src.hub.integrations.schemas import (
    ConnectionStatus,
    IntegrationConnection,
    SyncUser,
    UserAttributeDefinition,
)


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryIntegrationRepository:
    """In-memory IntegrationRepository for testing without database."""

    def __init__(self) -> None:
        self.connections: dict[str, IntegrationConnection] = {}
        self.platform_credentials: dict[str, str] = {}
        self.attribute_definitions: list[UserAttributeDefinition] = []
        self.users: dict[str, dict[str, Any]] = {}
        self.principals: dict[str, str] = {}
        self.external_links: dict[tuple[str, str], str] = {}
        self.post_statuses: dict[str, str] = {}
        self.fail_save_connection = False

    # ── Seeding helpers ──

    def add_connection(
        self,
        integration_type: str,
        config: dict[str, Any] | None = None,
        secrets: str | None = None,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ) -> IntegrationConnection:
        connection = IntegrationConnection(
            id=f"int_{uuid.uuid4().hex}",
            integration_type=integration_type,
            status=status,
            config=config or {},
            secrets=secrets,
            connected_at=datetime.now(timezone.utc),
        )
        self.connections[integration_type] = connection
        return connection

    def add_user(self, email: str, name: str | None = None, metadata: dict | None = None) -> str:
        user_id = f"user_{uuid.uuid4().hex[:8]}"
        self.users[user_id] = {"email": email.lower(), "name": name, "metadata": metadata or {}}
        return user_id

    def add_principal(self, user_id: str) -> str:
        principal_id = f"member_{uuid.uuid4().hex[:8]}"
        self.principals[principal_id] = user_id
        return principal_id

    def _by_id(self, connection_id: str) -> IntegrationConnection | None:
        for connection in self.connections.values():
            if connection.id == connection_id:
                return connection
        return None

    # ── Connections ──

    async def get_connection(self, integration_type: str) -> IntegrationConnection | None:
        return self.connections.get(integration_type)

    async def get_active_connection(self, integration_type: str) -> IntegrationConnection | None:
        connection = self.connections.get(integration_type)
        if connection and connection.status == ConnectionStatus.ACTIVE:
            return connection
        return None

    async def list_active_connections(
        self, integration_types: Iterable[str] | None = None
    ) -> list[IntegrationConnection]:
        types = None if integration_types is None else set(integration_types)
        return [
            c
            for c in self.connections.values()
            if c.status == ConnectionStatus.ACTIVE and (types is None or c.integration_type in types)
        ]

    async def list_connections(self) -> list[IntegrationConnection]:
        return list(self.connections.values())

    async def save_connection(
        self,
        integration_type: str,
        config: dict[str, Any],
        secrets: str,
        member_id: str | None,
    ) -> IntegrationConnection:
        if self.fail_save_connection:
            raise RuntimeError("database unavailable")
        existing = self.connections.get(integration_type)
        connection = IntegrationConnection(
            id=existing.id if existing else f"int_{uuid.uuid4().hex}",
            integration_type=integration_type,
            status=ConnectionStatus.ACTIVE,
            config=config,
            secrets=secrets,
            connected_by_member_id=member_id,
            connected_at=datetime.now(timezone.utc),
        )
        self.connections[integration_type] = connection
        return connection

    async def update_connection(
        self, connection_id: str, config: dict[str, Any], secrets: str | None
    ) -> IntegrationConnection | None:
        connection = self._by_id(connection_id)
        if connection is None:
            return None
        updated = connection.model_copy(
            update={
                "config": config,
                "secrets": secrets,
                "status": ConnectionStatus.ACTIVE,
                "last_error": None,
                "error_count": 0,
            }
        )
        self.connections[connection.integration_type] = updated
        return updated

    async def delete_connection(self, connection_id: str) -> bool:
        connection = self._by_id(connection_id)
        if connection is None:
            return False
        del self.connections[connection.integration_type]
        return True

    async def mark_connection_error(self, connection_id: str, error: str, threshold: int = 1) -> None:
        connection = self._by_id(connection_id)
        if connection is None:
            return
        error_count = connection.error_count + 1
        self.connections[connection.integration_type] = connection.model_copy(
            update={
                "status": ConnectionStatus.ERROR if error_count >= threshold else connection.status,
                "last_error": error,
                "error_count": error_count,
            }
        )

    async def clear_connection_errors(self, connection_id: str) -> None:
        connection = self._by_id(connection_id)
        if connection is None:
            return
        self.connections[connection.integration_type] = connection.model_copy(
            update={"last_error": None, "error_count": 0}
        )

    # ── Platform credentials ──

    async def get_platform_credentials_blob(self, integration_type: str) -> str | None:
        return self.platform_credentials.get(integration_type)

    async def save_platform_credentials(
        self, integration_type: str, secrets: str, member_id: str | None = None
    ) -> None:
        self.platform_credentials[integration_type] = secrets

    async def list_configured_credential_types(self) -> list[str]:
        return list(self.platform_credentials)

    # ── User sync ──

    async def list_attribute_definitions(self) -> list[UserAttributeDefinition]:
        return list(self.attribute_definitions)

    async def find_user_id_by_email(self, email: str) -> str | None:
        target = email.strip().lower()
        for user_id, user in self.users.items():
            if user["email"] == target:
                return user_id
        return None

    async def merge_user_metadata(
        self,
        user_id: str,
        attributes: dict[str, Any],
        external_ids: dict[str, str] | None = None,
    ) -> None:
        user = self.users.get(user_id)
        if user is None:
            return
        metadata = dict(user["metadata"])
        metadata.update(attributes)
        if external_ids:
            merged = dict(metadata.get(EXTERNAL_IDS_KEY) or {})
            merged.update(external_ids)
            metadata[EXTERNAL_IDS_KEY] = merged
        user["metadata"] = metadata

    async def resolve_sync_users(self, principal_ids: Iterable[str]) -> list[SyncUser]:
        users = []
        for principal_id in dict.fromkeys(principal_ids):
            user = self.users.get(self.principals.get(principal_id, ""))
            if user is None:
                continue
            users.append(
                SyncUser(
                    principal_id=principal_id,
                    email=user["email"],
                    name=user["name"],
                    external_ids=dict(user["metadata"].get(EXTERNAL_IDS_KEY) or {}),
                )
            )
        return users

    # ── Status sync ──

    async def save_external_link(
        self,
        post_id: str,
        integration_type: str,
        external_id: str,
        external_url: str | None = None,
    ) -> None:
        self.external_links[(integration_type, external_id)] = post_id

    async def find_linked_post_id(self, integration_type: str, external_id: str) -> str | None:
        return self.external_links.get((integration_type, external_id))

    async def update_post_status(self, post_id: str, status_id: str) -> bool:
        if post_id not in self.post_statuses:
            return False
        self.post_statuses[post_id] = status_id
        return True


# ── Event Builders ───────────────────────────────────────────────────────────


def build_post(**overrides: Any) -> PostSummary:
    fields = {
        "id": "post_1",
        "title": "Dark mode",
        "content": "<p>Please add a <b>dark</b> theme</p>",
        "board_id": "board_1",
        "board_slug": "features",
        "author_email": "ada@example.com",
        "author_name": "Ada",
    }
    fields.update(overrides)
    return PostSummary(**fields)


def build_post_created(**post_overrides: Any) -> PostCreatedEvent:
    return PostCreatedEvent(data=PostCreatedData(post=build_post(**post_overrides)))


def build_status_changed(previous: str = "Open", new: str = "Planned") -> PostStatusChangedEvent:
    return PostStatusChangedEvent(
        data=PostStatusChangedData(post=build_post(), previous_status=previous, new_status=new)
    )


def build_comment_created() -> CommentCreatedEvent:
    return CommentCreatedEvent(
        data=CommentCreatedData(
            comment=CommentSummary(id="comment_1", content="+1 from our team", author_email="bob@example.com"),
            post=build_post(),
        )
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryIntegrationRepository:
    return InMemoryIntegrationRepository()


@pytest.fixture
def codec() -> SecretsCodec:
    return SecretsCodec(Fernet.generate_key())


@pytest.fixture
def post_created() -> PostCreatedEvent:
    return build_post_created()


@pytest.fixture
def status_changed() -> PostStatusChangedEvent:
    return build_status_changed()


@pytest.fixture
def comment_created() -> CommentCreatedEvent:
    return build_comment_created()
