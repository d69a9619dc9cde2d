from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tokengate.storage.errors import CacheStoreError


class RedisKeyValueStore:
    """Thin Redis wrapper implementing the ``KeyValueStore`` port.

    Every command is bounded twice: by the client's socket timeouts and by an
    ``asyncio.wait_for`` around the await, so a stalled connection pool cannot
    hold an authentication request longer than ``socket_timeout``.
    """

    DEFAULT_OPERATION_TIMEOUT = 0.25

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=max(self.socket_timeout, 1.0),
            socket_connect_timeout=max(self.socket_timeout, 1.0),
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, operation: str, key: Optional[str], awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.socket_timeout)
        except asyncio.TimeoutError as exc:
            raise CacheStoreError(
                f"redis {operation} timed out after {self.socket_timeout:.3f}s",
                operation=operation,
                key=key,
            ) from exc
        except (RedisError, OSError) as exc:
            raise CacheStoreError(
                f"redis {operation} failed: {exc}", operation=operation, key=key
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", key, self.client.get(key))

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        only_if_exists: bool = False,
    ) -> bool:
        result = await self._run(
            "set",
            key,
            self.client.set(key, value, ex=ttl_seconds, xx=only_if_exists),
        )
        return bool(result)

    async def delete(self, key: str) -> int:
        return int(await self._run("delete", key, self.client.delete(key)))

    async def sadd(self, key: str, member: str) -> int:
        return int(await self._run("sadd", key, self.client.sadd(key, member)))

    async def srem(self, key: str, member: str) -> int:
        return int(await self._run("srem", key, self.client.srem(key, member)))

    async def smembers(self, key: str) -> Set[str]:
        members = await self._run("smembers", key, self.client.smembers(key))
        return set(members or ())

    async def ttl(self, key: str) -> int:
        return int(await self._run("ttl", key, self.client.ttl(key)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._run("expire", key, self.client.expire(key, ttl_seconds)))

    async def ping(self) -> bool:
        return bool(await self._run("ping", None, self.client.ping()))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
