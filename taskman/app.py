from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskman.api.error_handling import register_exception_handlers
from taskman.api.routes import router
from taskman.config import Settings
from taskman.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_prune_task: asyncio.Task | None = None


async def _run_revocation_prune(interval_seconds: int) -> None:
    """Background loop that drops revocation entries for naturally expired tokens."""

    from taskman.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await get_runtime().auth.prune_revocations()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Next tick retries; entries are only kept longer than needed
                logger.warning("revocation_prune_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("revocation_prune_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; run and stop the prune loop around it."""
    global _prune_task

    from taskman.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.revocation_prune_interval_seconds
    if interval > 0:
        _prune_task = asyncio.create_task(_run_revocation_prune(interval))
    logger.info("app_started", version=__version__, prune_interval_seconds=interval)

    yield

    if _prune_task:
        _prune_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _prune_task
        _prune_task = None
    if runtime.redis is not None:
        await runtime.redis.close()
    close_store = getattr(runtime.store, "close", None)
    if callable(close_store):
        close_store()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Task Management System API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation ID for logs and the response.

    Taken from the client's ``X-Request-ID`` header when present, otherwise a
    new UUID. It is echoed back in ``X-Request-ID`` and used as the
    envelope's ``request_id``.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Responses carry bearer tokens and per-user data
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    """Report store and Redis reachability; 503 when any check fails."""

    from taskman.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks["store"] = {"status": "healthy" if store_ok else "unhealthy", "type": store_type}

    redis_ok = True
    if runtime.redis is not None:
        redis_ok = await _run_bounded("redis", runtime.redis.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = store_ok and redis_ok
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "revocation_backend": runtime.settings.revocation_backend.value,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=_settings.port)
