from collections.abc import AsyncGenerator

import redis.asyncio as redis

from app.config import settings


def create_redis_client() -> redis.Redis:  # type: ignore[type-arg]
    """Create a Redis client for the shared login-state cache."""
    return redis.from_url(
        str(settings.REDIS_URL),
        encoding="utf-8",
        decode_responses=True,
    )


async def get_redis() -> AsyncGenerator[redis.Redis, None]:  # type: ignore[type-arg]
    """
    Dependency for getting async redis connection.
    """
    client = create_redis_client()
    try:
        yield client
    finally:
        await client.aclose()
