"""Redis client for the hook retry hand-off stream.

Redis only carries retryable hook failures, so the client uses short socket
timeouts: a slow or missing Redis must not stall event dispatch.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.hub.config import get_settings

_client: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Shared client, created on first use from REDIS_URL."""
    global _client
    if _client is None:
        _client = aioredis.from_url(
            get_settings().REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
    return _client


async def close_redis() -> None:
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()
