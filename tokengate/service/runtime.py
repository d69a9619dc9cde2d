from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokengate.config import CacheFailMode, JobQueueBackend, get_settings, reset_settings_cache
from tokengate.logging import get_logger
from tokengate.service.auth import AuthService
from tokengate.service.queue import (
    JobQueue,
    MemoryJobQueue,
    NullJobQueue,
    RedisStreamJobQueue,
    UserStateQueueService,
)
from tokengate.service.signer import TokenSigner
from tokengate.service.token_cache import TokenCacheService
from tokengate.service.user_state_worker import UserStateProcessor, UserStateWorker
from tokengate.storage.memory import MemoryKeyValueStore, MemoryUserStore
from tokengate.storage.redis_cache import RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            job_queue_backend=self.settings.job_queue_backend.value,
        )

        self.store = MemoryUserStore()
        self.kv = self._build_kv_store()
        self.queue = self._build_job_queue()

        self.token_cache = TokenCacheService(
            self.kv, fail_mode=self.settings.token_cache_fail_mode
        )
        if self.settings.token_cache_fail_mode == CacheFailMode.OPEN:
            logger.warning(
                "token_cache_fail_open",
                message=(
                    "Tokens are accepted when the token cache cannot be read; "
                    "revoked tokens validate until the cache recovers."
                ),
            )

        self.user_state_queue = UserStateQueueService(self.queue)
        self.signer = TokenSigner(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway=timedelta(seconds=0),
        )
        self.auth = AuthService(
            self.store,
            self.token_cache,
            self.user_state_queue,
            self.signer,
            self.settings,
        )
        self.user_state_processor = UserStateProcessor(self.token_cache)
        self.user_state_worker = UserStateWorker(
            self.queue,
            self.user_state_processor,
            batch_size=self.settings.user_state_worker_batch_size,
            block_ms=self.settings.user_state_worker_block_ms,
        )

        logger.info(
            "runtime_initialized",
            kv_backend="memory" if isinstance(self.kv, MemoryKeyValueStore) else "redis",
            job_queue_backend=self.queue.backend,
            fail_mode=self.settings.token_cache_fail_mode.value,
        )

    def _build_kv_store(self) -> Union[MemoryKeyValueStore, RedisKeyValueStore]:
        if self.settings.use_memory_store:
            logger.info("runtime_kv_initialized", kv_backend="memory")
            return MemoryKeyValueStore()

        kv = RedisKeyValueStore(
            self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
        )
        try:
            kv.verify_connection()
        except Exception as exc:
            if self.settings.test_mode:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    mode="TEST_MODE",
                )
                return MemoryKeyValueStore()
            # The cache is not a system of record; requests degrade per fail mode
            logger.error(
                "redis_unreachable_at_startup",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                error_type=type(exc).__name__,
            )
        logger.info(
            "runtime_kv_initialized",
            kv_backend="redis",
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        return kv

    def _build_job_queue(self) -> JobQueue:
        backend = self.settings.job_queue_backend
        if backend == JobQueueBackend.NONE:
            logger.warning(
                "revocation_propagation_disabled",
                message=(
                    "No job queue configured: password changes, deactivation and "
                    "profile updates do not reach issued tokens before they expire."
                ),
            )
            return NullJobQueue()

        if backend == JobQueueBackend.REDIS and isinstance(self.kv, RedisKeyValueStore):
            return RedisStreamJobQueue.from_url(
                self.settings.redis_url,
                block_ms=self.settings.user_state_worker_block_ms,
                stream=self.settings.job_queue_stream,
                group=self.settings.job_queue_group,
                max_len=self.settings.job_queue_max_len,
                command_timeout=self.settings.redis_socket_timeout,
            )

        if backend == JobQueueBackend.REDIS:
            logger.info(
                "job_queue_memory_fallback",
                reason="key-value store is process-local",
            )
        return MemoryJobQueue(self.settings.job_queue_stream)

    @property
    def worker_enabled(self) -> bool:
        return bool(self.queue.enabled and self.settings.user_state_worker_enabled)

    async def start(self) -> None:
        if self.worker_enabled:
            await self.user_state_worker.start()

    async def close(self) -> None:
        await self.user_state_worker.stop()
        await self.queue.close()
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.kv, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.kv.close())
            else:
                loop.create_task(runtime.kv.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
