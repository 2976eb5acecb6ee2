"""
Login state cache for interactive redirects to the delegated provider.

State values are opaque random keys in Redis with a TTL, consumed exactly once.
Backed by Redis so any API instance can finish a login another one started.
"""

import json
import secrets
from typing import Any

import redis.asyncio as redis

from app.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

STATE_KEY_PREFIX = "auth:state:"


class AuthStateStore:
    def __init__(self, redis_client: redis.Redis, ttl: int | None = None) -> None:  # type: ignore[type-arg]
        self.redis = redis_client
        self.ttl = ttl or settings.AUTH_STATE_TTL

    async def issue(self, data: dict[str, Any]) -> str:
        """Store `data` under a new random state value and return the value."""
        state = secrets.token_urlsafe(32)
        await self.redis.set(f"{STATE_KEY_PREFIX}{state}", json.dumps(data), ex=self.ttl)
        return state

    async def consume(self, state: str) -> dict[str, Any] | None:
        """
        Fetch and delete the data for `state`.

        Returns None for unknown, expired or already-used values.
        """
        raw = await self.redis.getdel(f"{STATE_KEY_PREFIX}{state}")
        if raw is None:
            logger.warning("auth_state_unknown")
            return None
        return json.loads(raw)
