from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI

from tokengate.api.error_handling import register_exception_handlers
from tokengate.api.routes import router
from tokengate.logging import get_logger, set_correlation_id
from tokengate.storage.errors import CacheStoreError

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the user-state worker with the app and release connections on shutdown."""
    from tokengate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.start()
        if runtime.worker_enabled:
            logger.info("user_state_worker_started_on_startup")
    except Exception as exc:
        logger.error("startup_user_state_worker_failed", error=str(exc))

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokengate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID for structured logging and echo it as X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report token cache reachability and the propagation queue in use.

    An unreachable cache is reported as degraded rather than unhealthy:
    authentication keeps working according to the configured fail mode.
    """
    from tokengate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        cache_ok = await runtime.kv.ping()
    except CacheStoreError as exc:
        logger.warning("health_check_cache_failed", error=str(exc))
        cache_ok = False

    checks = {
        "token_cache": {
            "status": "healthy" if cache_ok else "unhealthy",
            "fail_mode": runtime.settings.token_cache_fail_mode.value,
        },
        "job_queue": {
            "backend": runtime.queue.backend,
            "propagation_enabled": runtime.queue.enabled,
            "worker_running": runtime.user_state_worker.running,
        },
    }
    return {
        "status": "healthy" if cache_ok else "degraded",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }


def create_app() -> FastAPI:
    return app
