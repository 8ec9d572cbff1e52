"""Redis client for the Redis-backed idempotency ledger.

Socket timeouts are bounded so a hung Redis surfaces as a transient ledger
error instead of consuming the webhook deadline.
"""

import redis.asyncio as redis

from app.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    """Create the shared client. Fails startup if Redis does not answer PING."""
    global _redis

    if _redis is not None:
        return

    settings = get_settings()

    client = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )
    await client.ping()
    _redis = client


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the ledger's Redis client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
