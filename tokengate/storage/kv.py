from __future__ import annotations

from typing import Optional, Protocol, Set

# Return values of ``ttl`` follow Redis TTL semantics
TTL_MISSING = -2
TTL_PERSISTENT = -1


class KeyValueStore(Protocol):
    """Single-key and set operations the token cache depends on.

    Every method raises ``CacheStoreError`` when the backing store is
    unreachable or a command exceeds its timeout.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        only_if_exists: bool = False,
    ) -> bool: ...

    async def delete(self, key: str) -> int: ...

    async def sadd(self, key: str, member: str) -> int: ...

    async def srem(self, key: str, member: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def ttl(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def token_key(jti: str) -> str:
    return f"auth:token:{jti}"


def user_tokens_key(user_id: str) -> str:
    return f"auth:user:{user_id}:tokens"
