"""
Redis Cache Utilities

Shared redis.asyncio client for the snapshot cache.

Author: Custody Team
Last Updated: 2026-10-18
"""

from typing import Optional

import redis.asyncio as redis

from custody.config.settings import get_settings
from custody.utils.logger import get_logger

logger = get_logger(__name__)

# Global Redis client instance
_redis_client: Optional[redis.Redis] = None


async def get_redis_client() -> redis.Redis:
    """
    Get or create Redis client instance.

    Example:
        redis_client = await get_redis_client()
        await redis_client.set("key", "value")
    """
    global _redis_client

    if _redis_client is None:
        settings = get_settings()

        try:
            client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
            )
            await client.ping()
            _redis_client = client
            logger.info(f"Redis connected: {settings.REDIS_URL}")

        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {str(e)}")
            raise

    return _redis_client


async def close_redis_client() -> None:
    """Close Redis client connection"""
    global _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def generate_cache_key(prefix: str, *args) -> str:
    """
    Generate a cache key from prefix and arguments.

    Example:
        generate_cache_key("capital_snapshot", wallet_id)  # "capital_snapshot:<wallet_id>"
    """
    return ":".join([prefix, *(str(arg) for arg in args)])
