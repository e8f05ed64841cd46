"""
config/redis_client.py
Async Redis client: admin stats cache, JWT deny-list and the
unauthenticated rate limiter.
"""

import json
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis

from config.settings import settings

# Set by init_redis() at startup; None until then (and in tests, which override get_redis)
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    await redis_client.ping()


async def close_redis() -> None:
    if redis_client:
        await redis_client.aclose()


def get_redis() -> aioredis.Redis:
    """FastAPI dependency."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


class RedisCache:
    """JSON values and the few key conventions the API relies on."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── JSON cache ────────────────────────────────────────────
    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        return json.loads(value) if value else None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        # Decimals, UUIDs and dates are cached as strings
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def remember(self, key: str, ttl: int, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value, or compute it with loader() and cache it for ttl seconds."""
        value = await self.get(key)
        if value is None:
            value = await loader()
            await self.set(key, value, ttl=ttl)
        return value

    # ── JWT deny-list ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Deny the access token until it would have expired anyway."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """Fixed window counter. True while the caller is within `limit` for the window."""
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count <= limit
