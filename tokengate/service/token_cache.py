"""Token cache: active-token records plus a per-user reverse index.

Layout in the key-value store:

- ``auth:token:<jti>`` holds ``{"user_id": ..., "snapshot": {...}}`` with a
  TTL equal to the signed token's remaining lifetime. Its presence is what
  makes a token active.
- ``auth:user:<user_id>:tokens`` is a set of jtis used to fan out snapshot
  updates and bulk revocation.

The record and the index entry are two independent writes. A missing index
entry only means the token escapes bulk revocation until it expires; an index
entry without a record is pruned the next time the index is walked.

The cache is not a system of record. Store failures are logged and absorbed
here so that authentication keeps working when the cache is down.
"""

from __future__ import annotations

import json
import math
from typing import Optional, Set

from tokengate.config import CacheFailMode
from tokengate.logging import get_logger
from tokengate.storage.errors import CacheStoreError
from tokengate.storage.kv import TTL_MISSING, TTL_PERSISTENT, KeyValueStore, token_key, user_tokens_key
from tokengate.storage.models import TokenRecord, UserSnapshot

logger = get_logger(__name__)


class TokenCacheService:
    """Owns token records and user token indexes in the key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        fail_mode: CacheFailMode | str = CacheFailMode.OPEN,
    ) -> None:
        self.store = store
        self.fail_mode = CacheFailMode(fail_mode)

    @staticmethod
    def _normalize_ttl(ttl_seconds: Optional[float]) -> Optional[int]:
        if ttl_seconds is None or isinstance(ttl_seconds, bool):
            return None
        try:
            ttl = math.ceil(float(ttl_seconds))
        except (TypeError, ValueError, OverflowError):
            return None
        return ttl if ttl > 0 else None

    @staticmethod
    def _encode(user_id: str, snapshot: UserSnapshot) -> str:
        return json.dumps(
            TokenRecord(user_id=user_id, snapshot=snapshot).to_dict(),
            separators=(",", ":"),
        )

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[TokenRecord]:
        if not raw:
            return None
        try:
            return TokenRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - callers treat it as carrying no owner
            return None

    async def store_token(
        self, jti: str, snapshot: UserSnapshot, ttl_seconds: Optional[float]
    ) -> None:
        """Register an issued token as active for ``ttl_seconds`` (rounded up).

        A missing or non-positive TTL skips caching: the token stays valid by
        signature but is not tracked by the cache.
        """
        if not jti:
            return

        ttl = self._normalize_ttl(ttl_seconds)
        if ttl is None:
            logger.warning(
                "token_cache_skip_invalid_ttl",
                jti=jti,
                user_id=snapshot.id,
                ttl_seconds=ttl_seconds,
            )
            return

        try:
            await self.store.set(token_key(jti), self._encode(snapshot.id, snapshot), ttl)
        except CacheStoreError as exc:
            logger.warning("token_cache_store_failed", jti=jti, user_id=snapshot.id, error=str(exc))
            return

        await self._register_token_for_user(snapshot.id, jti, ttl)

    async def _register_token_for_user(self, user_id: str, jti: str, ttl: int) -> None:
        index_key = user_tokens_key(user_id)
        try:
            await self.store.sadd(index_key, jti)
            current_ttl = await self.store.ttl(index_key)
            # The index must outlive its longest-lived member, never shrink
            if current_ttl == TTL_PERSISTENT or current_ttl < ttl:
                await self.store.expire(index_key, ttl)
        except CacheStoreError as exc:
            logger.warning(
                "token_index_register_failed", jti=jti, user_id=user_id, error=str(exc)
            )

    async def is_token_active(self, jti: str) -> bool:
        """Return True when a token record exists for ``jti``.

        When the store cannot be read the answer follows ``fail_mode``.
        """
        if not jti:
            return False

        try:
            return await self.store.get(token_key(jti)) is not None
        except CacheStoreError as exc:
            fail_open = self.fail_mode == CacheFailMode.OPEN
            logger.warning(
                "token_cache_read_failed",
                jti=jti,
                fail_mode=self.fail_mode.value,
                assumed_active=fail_open,
                error=str(exc),
            )
            return fail_open

    async def get_token(self, jti: str) -> Optional[TokenRecord]:
        if not jti:
            return None
        try:
            raw = await self.store.get(token_key(jti))
        except CacheStoreError as exc:
            logger.warning("token_cache_read_failed", jti=jti, error=str(exc))
            return None
        return self._decode(raw)

    async def invalidate_token(self, jti: str, fallback_user_id: Optional[str] = None) -> None:
        """Delete the token record and drop it from its owner's index.

        Invalidating an absent token is a silent success.
        """
        if not jti:
            return
        await self._invalidate(jti, fallback_user_id)

    async def _invalidate(
        self,
        jti: str,
        fallback_user_id: Optional[str],
        *,
        expected_owner: Optional[str] = None,
    ) -> None:
        key = token_key(jti)
        try:
            record = self._decode(await self.store.get(key))
            if expected_owner and record is not None and record.user_id != expected_owner:
                # Stale membership pointing at another user's token
                logger.warning(
                    "token_index_foreign_member",
                    jti=jti,
                    index_user_id=expected_owner,
                    owner_user_id=record.user_id,
                )
                await self.store.srem(user_tokens_key(expected_owner), jti)
                return
            await self.store.delete(key)
        except CacheStoreError as exc:
            logger.warning("token_cache_invalidate_failed", jti=jti, error=str(exc))
            return

        user_id = record.user_id if record else fallback_user_id
        if user_id:
            await self._remove_token_from_user_set(user_id, jti)

    async def _remove_token_from_user_set(self, user_id: str, jti: str) -> None:
        try:
            await self.store.srem(user_tokens_key(user_id), jti)
        except CacheStoreError as exc:
            logger.warning(
                "token_index_remove_failed", jti=jti, user_id=user_id, error=str(exc)
            )

    async def list_user_tokens(self, user_id: str) -> Set[str]:
        try:
            return await self.store.smembers(user_tokens_key(user_id))
        except CacheStoreError as exc:
            logger.warning("token_index_read_failed", user_id=user_id, error=str(exc))
            return set()

    async def update_user_snapshot(self, snapshot: UserSnapshot) -> int:
        """Rewrite every live token record of the user with ``snapshot``.

        Remaining TTLs are preserved. Members whose record is gone, or belongs
        to another user, are pruned from the index instead of being recreated.
        Returns the number of records rewritten.
        """
        index_key = user_tokens_key(snapshot.id)
        try:
            token_ids = await self.store.smembers(index_key)
        except CacheStoreError as exc:
            logger.warning(
                "token_snapshot_update_failed", user_id=snapshot.id, error=str(exc)
            )
            return 0

        updated = 0
        pruned = 0
        failed = 0
        value = self._encode(snapshot.id, snapshot)
        for jti in sorted(token_ids):
            key = token_key(jti)
            try:
                ttl = await self.store.ttl(key)
                if ttl == TTL_MISSING:
                    await self.store.srem(index_key, jti)
                    pruned += 1
                    continue

                record = self._decode(await self.store.get(key))
                if record is not None and record.user_id != snapshot.id:
                    await self.store.srem(index_key, jti)
                    pruned += 1
                    continue

                if ttl == TTL_PERSISTENT:
                    written = await self.store.set(key, value, only_if_exists=True)
                else:
                    # A record at 0s would be lost by the rewrite; keep it for 1s
                    written = await self.store.set(key, value, max(ttl, 1), only_if_exists=True)

                if written:
                    updated += 1
                else:
                    # Expired between the TTL read and the rewrite
                    await self.store.srem(index_key, jti)
                    pruned += 1
            except CacheStoreError as exc:
                logger.warning(
                    "token_snapshot_update_failed",
                    user_id=snapshot.id,
                    jti=jti,
                    error=str(exc),
                )
                failed += 1

        logger.info(
            "token_snapshot_updated",
            user_id=snapshot.id,
            updated=updated,
            pruned=pruned,
            failed=failed,
        )
        return updated

    async def invalidate_all_tokens_for_user(self, user_id: str) -> int:
        """Revoke every indexed token of the user, then drop the index.

        Returns the number of index members processed.
        """
        if not user_id:
            return 0

        index_key = user_tokens_key(user_id)
        try:
            token_ids = await self.store.smembers(index_key)
        except CacheStoreError as exc:
            logger.warning("token_bulk_invalidate_failed", user_id=user_id, error=str(exc))
            return 0

        for jti in sorted(token_ids):
            await self._invalidate(jti, user_id, expected_owner=user_id)

        try:
            await self.store.delete(index_key)
        except CacheStoreError as exc:
            logger.warning("token_bulk_invalidate_failed", user_id=user_id, error=str(exc))

        logger.info("token_bulk_invalidated", user_id=user_id, count=len(token_ids))
        return len(token_ids)
