"""Async Redis client for the iteration loop."""

from __future__ import annotations

import os

from redis.asyncio import ConnectionPool, Redis

from .config import settings

REDIS_URL = os.getenv("REDIS_URL", settings.redis_url)

_pool: ConnectionPool | None = None


def get_redis_client() -> Redis:
    """Get an async Redis client from the shared pool."""
    global _pool
    if _pool is None:
        _pool = ConnectionPool.from_url(REDIS_URL, max_connections=20, decode_responses=True)
    return Redis(connection_pool=_pool)


async def acquire_agent_lease(agent_id: str, owner_token: str, *, ttl_seconds: int | None = None) -> bool:
    """Take the cross-process tick lease for one agent."""
    redis = get_redis_client()
    ttl = ttl_seconds or settings.agent_lock_seconds
    return await redis.set(f"lock:agent:{agent_id}", owner_token, nx=True, ex=ttl) is True


async def release_agent_lease(agent_id: str, owner_token: str) -> None:
    """Release the lease if this worker still holds it."""
    redis = get_redis_client()
    key = f"lock:agent:{agent_id}"
    if await redis.get(key) == owner_token:
        await redis.delete(key)
