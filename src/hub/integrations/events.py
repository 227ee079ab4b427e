"""Domain events consumed by the integration hub.

Events are constructed by the feedback domain layer and are read-only here.
DomainEvent is a tagged union discriminated on ``type``; hooks switch on the
type and ignore anything they do not handle.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventType(str, Enum):
    """Domain event types routed to outbound hooks."""

    POST_CREATED = "post.created"
    POST_STATUS_CHANGED = "post.status_changed"
    POST_DELETED = "post.deleted"
    COMMENT_CREATED = "comment.created"


class EventActor(BaseModel):
    """Who caused the event."""

    model_config = ConfigDict(frozen=True)

    type: Literal["user", "service"] = "user"
    user_id: str | None = None
    email: str | None = None
    name: str | None = None


class PostSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    content: str = ""
    board_id: str | None = None
    board_slug: str | None = None
    author_email: str | None = None
    author_name: str | None = None
    vote_count: int = 0


class CommentSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    author_email: str | None = None
    author_name: str | None = None


class PostCreatedData(BaseModel):
    model_config = ConfigDict(frozen=True)

    post: PostSummary


class PostStatusChangedData(BaseModel):
    model_config = ConfigDict(frozen=True)

    post: PostSummary
    previous_status: str
    new_status: str


class PostDeletedData(BaseModel):
    model_config = ConfigDict(frozen=True)

    post: PostSummary


class CommentCreatedData(BaseModel):
    model_config = ConfigDict(frozen=True)

    comment: CommentSummary
    post: PostSummary


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor: EventActor = Field(default_factory=EventActor)


class PostCreatedEvent(_EventBase):
    type: Literal[EventType.POST_CREATED] = EventType.POST_CREATED
    data: PostCreatedData


class PostStatusChangedEvent(_EventBase):
    type: Literal[EventType.POST_STATUS_CHANGED] = EventType.POST_STATUS_CHANGED
    data: PostStatusChangedData


class PostDeletedEvent(_EventBase):
    type: Literal[EventType.POST_DELETED] = EventType.POST_DELETED
    data: PostDeletedData


class CommentCreatedEvent(_EventBase):
    type: Literal[EventType.COMMENT_CREATED] = EventType.COMMENT_CREATED
    data: CommentCreatedData


DomainEvent = Annotated[
    Union[PostCreatedEvent, PostStatusChangedEvent, PostDeletedEvent, CommentCreatedEvent],
    Field(discriminator="type"),
]

_domain_event_adapter: TypeAdapter[Any] = TypeAdapter(DomainEvent)


def parse_domain_event(raw: dict[str, Any]) -> DomainEvent:
    """Validate a raw dict (e.g. from a queue payload) into a DomainEvent."""
    return _domain_event_adapter.validate_python(raw)


def domain_event_to_dict(event: DomainEvent) -> dict[str, Any]:
    """JSON-safe dict form of an event, the inverse of parse_domain_event()."""
    return event.model_dump(mode="json")
