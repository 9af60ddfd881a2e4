"""
Redis Client - async singleton backing the webhook dedup window.

Uses REDIS_URL from settings (default: redis://localhost:6379/0).
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from reviewbot.core.config import settings
from reviewbot.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def mask_url(url: str) -> str:
    """Hide the password of a broker / redis URL for logs (redis://:****@host:6379)"""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "****"


async def get_redis() -> aioredis.Redis:
    """Redis client singleton (async, connection pool)"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        # a concurrent request may have initialized it while we waited
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": mask_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """Close the connection; call on app shutdown"""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
