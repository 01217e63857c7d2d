from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

_OAUTH_STATE_PREFIX = "auth:oauth:"

# GET + DEL in one round trip for servers older than 6.2
_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _oauth_key(state: str) -> str:
    return f"{_OAUTH_STATE_PREFIX}{state}"


def _decode_payload(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Thin Redis wrapper holding short-lived OAuth login state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_oauth_state(
        self, state: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(_oauth_key(state), json.dumps(payload), ex=max(1, ttl_seconds))

    async def get_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        return _decode_payload(await self.client.get(_oauth_key(state)))

    async def delete_oauth_state(self, state: str) -> None:
        await self.client.delete(_oauth_key(state))

    async def pop_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete a login state so it cannot be replayed."""
        key = _oauth_key(state)
        try:
            cached = await self.client.getdel(key)
        except ResponseError:
            cached = await self.client.eval(_GETDEL_SCRIPT, 1, key)
        return _decode_payload(cached)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes async methods so callers can await it exactly
    like ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client: Any = None):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def set_oauth_state(
        self, state: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self.client.set(_oauth_key(state), json.dumps(payload), ex=max(1, ttl_seconds))

    async def get_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        return _decode_payload(self.client.get(_oauth_key(state)))

    async def delete_oauth_state(self, state: str) -> None:
        self.client.delete(_oauth_key(state))

    async def pop_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        key = _oauth_key(state)
        try:
            cached = self.client.getdel(key)
        except ResponseError:
            cached = self.client.eval(_GETDEL_SCRIPT, 1, key)
        return _decode_payload(cached)

    async def close(self) -> None:
        self.client.close()
