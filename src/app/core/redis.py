"""Redis access for the CRM, namespaced per tenant.

Keys are stored as ``t:{tenant_id}:{key}``. Momentum nudge dedupe keys
(``momentum_nudge:{deal_id}:{slack_user_id}``) go through TenantRedis, so
a nudge sent in one workspace never suppresses another's. The tenant
lookup cache used by TenantAuthMiddleware talks to the raw pool.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.app.config import get_settings
from src.app.core.tenant import get_current_tenant

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(get_settings().REDIS_URL, decode_responses=True)
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.close()
        _redis_pool = None


class TenantRedis:
    """Key-value store scoped to the current tenant context.

    The prefix is resolved on every call, so one instance serves all
    requests and the scheduled nudge run (which enters each tenant via
    ``tenant_scope``).
    """

    def __init__(self, redis_client: aioredis.Redis):
        self._redis = redis_client

    def _key(self, key: str) -> str:
        return f"t:{get_current_tenant().tenant_id}:{key}"

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        """Store ``value``; ``ex`` is the TTL in seconds (the nudge cooldown)."""
        await self._redis.set(self._key(key), value, ex=ex)

    async def delete(self, key: str) -> int:
        return await self._redis.delete(self._key(key))


def get_tenant_redis() -> TenantRedis:
    return TenantRedis(get_redis_pool())
