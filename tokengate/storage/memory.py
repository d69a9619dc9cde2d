from __future__ import annotations

import math
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Optional, Set, Tuple, Union

from tokengate.logging import get_logger
from tokengate.storage.errors import CacheStoreError, ConstraintViolation
from tokengate.storage.kv import TTL_MISSING, TTL_PERSISTENT
from tokengate.storage.models import ROLE_USER, User

_Value = Union[str, Set[str]]


class MemoryKeyValueStore:
    """Process-local ``KeyValueStore`` with Redis-compatible TTL semantics.

    Expired keys are dropped lazily on access. ``clock`` returns seconds and
    defaults to ``time.monotonic``; tests pass a controllable clock to move
    time forward and observe natural expiry.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[_Value, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds

    def _set_of(self, key: str) -> Optional[Tuple[Set[str], Optional[float]]]:
        entry = self._live(key)
        if entry is None:
            return None
        value, expires_at = entry
        if not isinstance(value, set):
            raise CacheStoreError("WRONGTYPE key holds a string", operation="set-op", key=key)
        return value, expires_at

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            value, _ = entry
            if isinstance(value, set):
                raise CacheStoreError("WRONGTYPE key holds a set", operation="get", key=key)
            return value

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        only_if_exists: bool = False,
    ) -> bool:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise CacheStoreError("invalid expire time in 'set' command", operation="set", key=key)
        with self._lock:
            if only_if_exists and self._live(key) is None:
                return False
            self._data[key] = (value, self._expiry(ttl_seconds))
            return True

    async def delete(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return 0
            del self._data[key]
            return 1

    async def sadd(self, key: str, member: str) -> int:
        with self._lock:
            current = self._set_of(key)
            if current is None:
                self._data[key] = ({member}, None)
                return 1
            members, _ = current
            if member in members:
                return 0
            members.add(member)
            return 1

    async def srem(self, key: str, member: str) -> int:
        with self._lock:
            current = self._set_of(key)
            if current is None:
                return 0
            members, _ = current
            if member not in members:
                return 0
            members.discard(member)
            if not members:
                del self._data[key]
            return 1

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            current = self._set_of(key)
            if current is None:
                return set()
            return set(current[0])

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return TTL_MISSING
            _, expires_at = entry
            if expires_at is None:
                return TTL_PERSISTENT
            return int(math.ceil(expires_at - self._clock()))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            if ttl_seconds <= 0:
                del self._data[key]
                return True
            self._data[key] = (entry[0], self._expiry(ttl_seconds))
            return True

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


class MemoryUserStore:
    """In-memory primary user store used by the authentication use cases."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self._data_lock = threading.RLock()

    def _check_unique(self, username: str, email: str, *, exclude: Optional[str] = None) -> None:
        for existing in self.users.values():
            if existing.id == exclude:
                continue
            if existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = ROLE_USER,
        bio: str = "",
        profile_image: str = "",
    ) -> User:
        with self._data_lock:
            self._check_unique(username, email)
            user = User.new(username, email, role=role, bio=bio, profile_image=profile_image)
            self.users[user.id] = user
            return user

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        """Find a user by username or email."""
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.username == identifier or u.email == identifier
                ),
                None,
            )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def update_user(self, user_id: str, **changes) -> Optional[User]:
        """Apply profile changes; ``None`` values are ignored."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            changes = {k: v for k, v in changes.items() if v is not None}
            self._check_unique(
                changes.get("username", user.username),
                changes.get("email", user.email),
                exclude=user_id,
            )
            for name, value in changes.items():
                if not hasattr(user, name):
                    raise AttributeError(f"unknown user field: {name}")
                setattr(user, name, value)
            user.updated_at = datetime.utcnow()
            return user

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self.update_user(user_id, role=role)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self.update_user(user_id, is_active=is_active)
