"""
Redis connection layer — shared async client.

The rate limiter keeps one counter record per identity in Redis when
RATE_LIMIT_BACKEND=redis. The client is created lazily on first use
and closed on application shutdown.

Usage:
    from backend.hazardwatch.core.cache import get_redis, close_redis

    client = get_redis()
    await client.ping()
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from backend.hazardwatch.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client — initialised on first use
_redis_client: Optional[aioredis.Redis] = None


def get_redis() -> aioredis.Redis:
    """Get or create the async Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis client created: %s", settings.REDIS_URL.split("@")[-1])
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
