from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidTokenPayloadError,
    NotFoundError,
    TokenRevokedError,
    ValidationError,
)
from tokengate.service.queue import UserStateQueueService
from tokengate.service.signer import TokenSigner
from tokengate.service.token_cache import TokenCacheService
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import ROLE_ADMIN, ROLE_USER, User, UserSnapshot

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class UserStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = ROLE_USER,
        bio: str = "",
        profile_image: str = "",
    ) -> User: ...

    def count_users(self) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_login(self, identifier: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def update_user(self, user_id: str, **changes) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    token_id: str
    user: User


@dataclass
class IssuedToken:
    token: str
    jti: str
    ttl_seconds: Optional[int]


@dataclass
class AuthResult:
    access_token: str
    token_id: str
    user: User


@dataclass
class UserChange:
    """A committed user change and whether its propagation job was accepted."""

    user: User
    propagation_enqueued: bool


class AuthService:
    """Token issuance, the validation gate and the user-state producers.

    Issued tokens are registered in the token cache; the gate refuses any
    token whose identifier is no longer cached. Administrative changes are
    committed to the user store first and then propagated to cached tokens
    through the user-state queue.
    """

    def __init__(
        self,
        store: UserStore,
        token_cache: TokenCacheService,
        user_state_queue: UserStateQueueService,
        signer: TokenSigner,
        settings: Settings,
    ) -> None:
        self.store: UserStore = store
        self.token_cache = token_cache
        self.user_state_queue = user_state_queue
        self.signer = signer
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # -- passwords -----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        if not password:
            raise ValidationError("password cannot be empty")
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- issuance ------------------------------------------------------------

    def _token_ttl(self, token: str) -> Optional[int]:
        claims = self.signer.decode(token)
        if not claims:
            return None
        exp = claims.get("exp")
        if exp is None or isinstance(exp, bool):
            return None
        try:
            remaining = float(exp) - self._now().timestamp()
        except (TypeError, ValueError):
            return None
        if math.isnan(remaining):
            return None
        return max(0, math.floor(remaining))

    async def issue_token(self, user: User) -> IssuedToken:
        """Sign an access token for ``user`` and register it as active.

        The cached record lives exactly as long as the signed token. When the
        remaining lifetime cannot be read back from the token it is returned
        uncached: valid by signature, invisible to revocation.
        """
        now = self._now()
        jti = str(uuid.uuid4())
        exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "username": user.username,
            "role": user.role,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
        }
        token = self.signer.sign(payload)

        ttl = self._token_ttl(token)
        if ttl is None:
            self.logger.warning("token_ttl_uncomputable", user_id=user.id, jti=jti)
            return IssuedToken(token=token, jti=jti, ttl_seconds=None)

        await self.token_cache.store_token(jti, UserSnapshot.from_user(user), ttl)
        self.logger.info("access_token_issued", user_id=user.id, jti=jti, ttl_seconds=ttl)
        return IssuedToken(token=token, jti=jti, ttl_seconds=ttl)

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        bio: str = "",
        profile_image: str = "",
    ) -> AuthResult:
        if not password:
            raise ValidationError("password cannot be empty")
        role = ROLE_USER
        if self.settings.first_user_is_admin and self.store.count_users() == 0:
            role = ROLE_ADMIN
        try:
            user = self.store.create_user(
                username,
                email,
                role=role,
                bio=bio,
                profile_image=profile_image,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Username or email already exists", detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id, role=user.role)

        issued = await self.issue_token(user)
        return AuthResult(access_token=issued.token, token_id=issued.jti, user=user)

    async def login(self, identifier: str, password: str) -> AuthResult:
        """Authenticate by username or email and issue a fresh token."""
        user = self.store.get_user_by_login(identifier)
        if not user or not user.is_active:
            raise AuthenticationError("Invalid credentials")
        if not self.verify_password(user.id, password):
            raise AuthenticationError("Invalid credentials")

        issued = await self.issue_token(user)
        return AuthResult(access_token=issued.token, token_id=issued.jti, user=user)

    # -- validation gate -----------------------------------------------------

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer header to an authenticated user.

        The token identifier is checked against the cache before the signature
        is verified, so a revoked token is refused as revoked even when it is
        also expired or tampered with.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")

        claims = self.signer.peek(token)
        if claims is None:
            raise AuthenticationError("invalid token")
        jti = claims.get("jti")
        if not jti or not isinstance(jti, str):
            raise InvalidTokenPayloadError()

        if not await self.token_cache.is_token_active(jti):
            self.logger.info("access_token_revoked", jti=jti)
            raise TokenRevokedError()

        verified = self.signer.decode(token)
        if not verified or verified.get("jti") != jti:
            raise AuthenticationError("invalid token")

        user_id = verified.get("sub")
        user = self.store.get_user(user_id) if isinstance(user_id, str) else None
        if not user or not user.is_active:
            raise AuthenticationError("User not found or inactive")
        return AuthContext(user_id=user.id, role=user.role, token_id=jti, user=user)

    # -- revocation ----------------------------------------------------------

    async def is_token_active(self, jti: str) -> bool:
        return await self.token_cache.is_token_active(jti)

    async def revoke_token(self, jti: str, user_id: Optional[str] = None) -> None:
        """Logout: the token stops validating as soon as this returns."""
        await self.token_cache.invalidate_token(jti, user_id)
        self.logger.info("access_token_revoked_by_owner", jti=jti, user_id=user_id)

    async def revoke_all_tokens(self, user_id: str) -> bool:
        return await self.user_state_queue.enqueue_invalidate_tokens(user_id)

    async def sync_snapshot(self, user: User) -> bool:
        return await self.user_state_queue.enqueue_snapshot_update(UserSnapshot.from_user(user))

    # -- administrative producers --------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> UserChange:
        user = self._require_user(user_id)
        if not self.verify_password(user_id, current_password):
            raise AuthenticationError("Current password is incorrect")
        self.save_password(user_id, new_password)
        self.logger.info("password_changed", user_id=user_id)
        enqueued = await self.revoke_all_tokens(user_id)
        return UserChange(user=user, propagation_enqueued=enqueued)

    async def deactivate_user(self, user_id: str) -> UserChange:
        self._require_user(user_id)
        user = self.store.set_user_active(user_id, False)
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("user_deactivated", user_id=user_id)
        enqueued = await self.revoke_all_tokens(user_id)
        return UserChange(user=user, propagation_enqueued=enqueued)

    async def promote_to_admin(self, user_id: str) -> UserChange:
        self._require_user(user_id)
        user = self.store.update_user_role(user_id, ROLE_ADMIN)
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("user_promoted", user_id=user_id, role=user.role)
        enqueued = await self.sync_snapshot(user)
        return UserChange(user=user, propagation_enqueued=enqueued)

    async def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        bio: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> UserChange:
        self._require_user(user_id)
        try:
            user = self.store.update_user(
                user_id,
                username=username,
                email=email,
                bio=bio,
                profile_image=profile_image,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Username or email already exists", detail=exc.detail) from exc
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("user_profile_updated", user_id=user_id)
        enqueued = await self.sync_snapshot(user)
        return UserChange(user=user, propagation_enqueued=enqueued)
