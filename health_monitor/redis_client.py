"""Shared async Redis connection for the window store, snapshot cache and event streams."""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from health_monitor.config import settings

logger = logging.getLogger(__name__)

_client: aioredis.Redis | None = None


def get_redis(url: str | None = None) -> aioredis.Redis:
    """Return the process-level Redis client (created lazily, connects on first command)."""
    global _client
    if _client is None:
        _client = aioredis.from_url(url or settings.redis_url, decode_responses=True)
        logger.info("Redis client configured for %s", (url or settings.redis_url).rsplit("@", 1)[-1])
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
