"""Persistence models for the tables the integration hub owns.

- IntegrationModel: one connection per integration type (config + encrypted secrets)
- PlatformCredentialModel: admin-supplied app credentials per integration type
- UserAttributeDefinitionModel: external -> internal attribute mapping for user sync
- PostExternalLinkModel: post <-> external issue links used by status sync

Platform-owned tables (users, principals, posts) are referenced in the
repository through lightweight table clauses and are not declared here.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from src.hub.core.database import Base


def _prefixed_id(prefix: str):
    return lambda: f"{prefix}_{uuid.uuid4().hex}"


class IntegrationModel(Base):
    """A connected integration.

    ``secrets`` holds a single Fernet token; ``config`` is plain JSON.
    """

    __tablename__ = "integrations"
    __table_args__ = (UniqueConstraint("integration_type", name="uq_integration_type"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_prefixed_id("integration"))
    integration_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    config: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'"))
    secrets: Mapped[str | None] = mapped_column(Text, nullable=True)
    connected_by_member_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class PlatformCredentialModel(Base):
    """Encrypted app-level credentials enabling an integration type tenant-wide."""

    __tablename__ = "integration_platform_credentials"

    integration_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    secrets: Mapped[str] = mapped_column(Text, nullable=False)
    configured_by_member_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserAttributeDefinitionModel(Base):
    __tablename__ = "user_attribute_definitions"
    __table_args__ = (UniqueConstraint("key", name="uq_user_attribute_key"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_prefixed_id("user_attr"))
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="string")
    external_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PostExternalLinkModel(Base):
    """Link between a post and the issue it created in an external tracker."""

    __tablename__ = "post_external_links"
    __table_args__ = (
        UniqueConstraint("integration_type", "external_id", name="uq_post_external_link"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_prefixed_id("link"))
    post_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    integration_type: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    external_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
