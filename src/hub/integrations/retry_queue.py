"""Hand-off queue for retryable hook failures, backed by Redis Streams.

The dispatcher appends one entry per retryable failure; a separate worker
owns backoff and redelivery. Each entry carries enough to rebuild the call:
the serialized event, the integration type and the connection id.

Stream key: settings.HOOK_RETRY_STREAM (default ``integrations:hook-retries``)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import redis.asyncio as aioredis
import structlog

from src.hub.integrations.events import DomainEvent, domain_event_to_dict

logger = structlog.get_logger(__name__)


class HookRetryQueue:
    """Append retryable hook failures to a Redis Stream.

    Args:
        redis: Raw async Redis client.
        stream_key: Stream to append to.
        maxlen: Approximate stream cap; oldest entries are trimmed.
    """

    def __init__(self, redis: aioredis.Redis, stream_key: str, maxlen: int = 10_000) -> None:
        self._redis = redis
        self._stream_key = stream_key
        self._maxlen = maxlen

    @property
    def stream_key(self) -> str:
        return self._stream_key

    async def enqueue(
        self,
        event: DomainEvent,
        integration_type: str,
        connection_id: str,
        error: str | None,
        attempt: int = 1,
    ) -> str:
        """Append a failed delivery for later retry.

        Returns:
            Redis message ID assigned by XADD.
        """
        data = {
            "event": json.dumps(domain_event_to_dict(event)),
            "event_id": event.id,
            "event_type": event.type.value,
            "integration_type": integration_type,
            "connection_id": connection_id,
            "error": error or "",
            "attempt": str(attempt),
            "enqueued_at": datetime.now(timezone.utc).isoformat(),
        }
        message_id = await self._redis.xadd(
            self._stream_key,
            data,
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.info(
            "hook.retry_enqueued",
            stream=self._stream_key,
            integration_type=integration_type,
            event_id=event.id,
            message_id=message_id,
        )
        return message_id

    async def pending_count(self) -> int:
        """Number of entries currently in the stream."""
        return await self._redis.xlen(self._stream_key)
