from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from sessionledger.logging import get_logger
from sessionledger.storage.errors import StoreUnavailable

logger = get_logger(__name__)

# INCR + first-hit EXPIRE in one round trip so a counter never lives forever
_INCR_WITH_TTL_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return current
"""


def _clamp_ttl(ttl_seconds: int) -> int:
    # Redis rejects zero or negative expirations
    return max(1, int(ttl_seconds))


class RedisCache:
    """Expiring key-value store backed by an async Redis client.

    Every failure, including timeouts, is raised as ``StoreUnavailable`` so
    callers can never mistake an outage for a missing key.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: Optional[float] = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout or self.DEFAULT_OPERATION_TIMEOUT
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(_INCR_WITH_TTL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, op: str, key: str, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.operation_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.error("store_unavailable", op=op, key=key, error_type=type(exc).__name__)
            raise StoreUnavailable(f"redis {op} failed", {"op": op}) from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set", key, self.client.set(key, value, ex=_clamp_ttl(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", key, self.client.get(key))

    async def delete(self, key: str) -> None:
        await self._run("delete", key, self.client.delete(key))

    async def incr(self, key: str, ttl_seconds: int) -> int:
        result = await self._run(
            "incr", key, self._incr_with_ttl(keys=[key], args=[_clamp_ttl(ttl_seconds)])
        )
        return int(result)

    async def ping(self) -> bool:
        try:
            return bool(await self._run("ping", "-", self.client.ping()))
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(_INCR_WITH_TTL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def _run(self, op: str, key: str, call, *args, **kwargs) -> Any:
        try:
            return call(*args, **kwargs)
        except (RedisError, OSError) as exc:
            logger.error("store_unavailable", op=op, key=key, error_type=type(exc).__name__)
            raise StoreUnavailable(f"redis {op} failed", {"op": op}) from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._run("set", key, self.client.set, key, value, ex=_clamp_ttl(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        return self._run("get", key, self.client.get, key)

    async def delete(self, key: str) -> None:
        self._run("delete", key, self.client.delete, key)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        result = self._run(
            "incr", key, self._incr_with_ttl, keys=[key], args=[_clamp_ttl(ttl_seconds)]
        )
        return int(result)

    async def ping(self) -> bool:
        try:
            return bool(self._run("ping", "-", self.client.ping))
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        self.client.close()
