"""
Redis Client Setup.
"""

from typing import Optional

import redis.asyncio as aioredis

from minicrm.config import get_settings

_client: Optional[aioredis.Redis] = None


def get_redis_client() -> aioredis.Redis:
    """Returns the shared async Redis client."""
    global _client
    if _client is None:
        _client = aioredis.from_url(get_settings().REDIS_URL, decode_responses=True)
    return _client


async def close_redis_client():
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
