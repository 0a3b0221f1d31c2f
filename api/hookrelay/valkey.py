"""Valkey (Redis-compatible) client for the webhook event queue."""

import redis.asyncio as redis

from hookrelay.config import get_settings

settings = get_settings()

# Global connection pool
_pool: redis.ConnectionPool | None = None


async def get_valkey() -> redis.Redis:
    """Get Valkey client with connection pooling."""
    global _pool
    if _pool is None:
        _pool = redis.ConnectionPool.from_url(
            settings.VALKEY_URL,
            decode_responses=True,
        )
    return redis.Redis(connection_pool=_pool)


async def close_valkey():
    """Close Valkey connection pool."""
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


async def ping_valkey() -> bool:
    """Check that Valkey answers; used by the health endpoint."""
    try:
        client = await get_valkey()
        return bool(await client.ping())
    except redis.RedisError:
        return False
