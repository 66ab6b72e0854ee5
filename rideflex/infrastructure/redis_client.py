"""Redis async client shared by the API process and its background workers."""

from __future__ import annotations

import redis.asyncio as aioredis

from rideflex.config import settings

_client: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Return the process-wide client, creating its pool on first use."""
    global _client
    if _client is None:
        _client = aioredis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
