from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from tokengate.logging import get_logger

logger = get_logger(__name__)


class JobQueueBackend(str, Enum):
    """Transport used for user-state propagation jobs.

    - REDIS: Redis Streams consumer group (at-least-once)
    - MEMORY: in-process queue for tests and single-process development
    - NONE: propagation disabled; revocation falls back to natural TTL expiry
    """

    REDIS = "redis"
    MEMORY = "memory"
    NONE = "none"


class CacheFailMode(str, Enum):
    """Answer given by the token validation gate when the cache cannot be read."""

    OPEN = "open"
    CLOSED = "closed"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token cache and revocation pipeline."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout_ms: int = env_field(
        250,
        "REDIS_SOCKET_TIMEOUT_MS",
        description="Upper bound for a single cache or queue command; a timeout counts as a store failure",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows an ephemeral JWT secret",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tokengate", "JWT_ISSUER")
    jwt_audience: str = env_field("tokengate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(7 * 24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    token_cache_fail_mode: CacheFailMode = env_field(
        CacheFailMode.OPEN,
        "TOKEN_CACHE_FAIL_MODE",
        description="open: accept tokens when the cache is down; closed: reject them",
    )
    job_queue_backend: JobQueueBackend = env_field(
        JobQueueBackend.REDIS, "JOB_QUEUE_BACKEND"
    )
    job_queue_stream: str = env_field("user-state", "JOB_QUEUE_STREAM")
    job_queue_group: str = env_field("user-state-workers", "JOB_QUEUE_GROUP")
    job_queue_max_len: int = env_field(10000, "JOB_QUEUE_MAX_LEN")
    user_state_worker_enabled: bool = env_field(True, "USER_STATE_WORKER_ENABLED")
    user_state_worker_batch_size: int = env_field(50, "USER_STATE_WORKER_BATCH_SIZE")
    user_state_worker_block_ms: int = env_field(1000, "USER_STATE_WORKER_BLOCK_MS")
    first_user_is_admin: bool = env_field(True, "FIRST_USER_IS_ADMIN")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def redis_socket_timeout(self) -> float:
        return self.redis_socket_timeout_ms / 1000.0

    @field_validator("token_cache_fail_mode")
    @classmethod
    def _validate_fail_mode(cls, value: CacheFailMode) -> CacheFailMode:
        return CacheFailMode(value)

    @field_validator("job_queue_backend")
    @classmethod
    def _validate_queue_backend(cls, value: JobQueueBackend) -> JobQueueBackend:
        return JobQueueBackend(value)

    @field_validator("redis_socket_timeout_ms", "access_token_ttl_minutes")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        if info.data.get("test_mode"):
            # Tokens signed with an ephemeral secret do not survive a restart
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
