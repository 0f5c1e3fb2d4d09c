from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from chatgate.api.error_handling import register_exception_handlers
from chatgate.api.routes import apply_session_cookie, router
from chatgate.config import Settings, get_settings
from chatgate.logging import get_logger, set_correlation_id
from chatgate.storage.memory_cache import MemoryCache

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

# Paths that manage the session cookie themselves
_AUTO_REFRESH_EXEMPT = {"/logout", "/session/refresh", "/callback"}

_sweep_task: asyncio.Task | None = None


async def _run_idle_sweep(interval_seconds: int) -> None:
    """Background loop closing idle chat sockets and purging expired cache rows."""
    from chatgate.service.runtime import get_runtime

    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                runtime = get_runtime()
                closed = await runtime.hub.cleanup_inactive()
                purged = 0
                if isinstance(runtime.cache, MemoryCache):
                    purged = runtime.cache.purge_expired()
                if closed or purged:
                    logger.info("idle_sweep_complete", closed=closed, purged=purged)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("idle_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("idle_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _sweep_task
    from chatgate.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_idle_sweep(runtime.settings.ws_cleanup_interval_seconds)
    )

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="chatgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Avoid wildcard when credentials are enabled
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def refresh_session_cookie(request: Request, call_next):
    """Rotate a near-expiry session cookie after the request has been served."""
    response = await call_next(request)
    settings = get_settings()
    if not settings.session_auto_refresh or request.url.path in _AUTO_REFRESH_EXEMPT:
        return response
    token = request.cookies.get(settings.session_cookie_name)
    if not token:
        return response
    from chatgate.service.runtime import get_runtime

    try:
        issued = await get_runtime().auth.refresh(token)
    except Exception as exc:
        logger.warning("session_auto_refresh_failed", error=str(exc))
        return response
    if issued is not None:
        apply_session_cookie(response, issued, settings)
        logger.info("session_auto_refreshed", session_id=issued.session.id)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith(("/session", "/api/", "/admin/")):
        response.headers.setdefault("Cache-Control", "no-store, private")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report keyed-store reachability and the number of open chat sockets."""
    from chatgate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await asyncio.to_thread(runtime.cache.verify_connection)
        cache_ok = True
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        cache_ok = False
    return {
        "status": "healthy" if cache_ok else "unhealthy",
        "checks": {
            "cache": {
                "status": "healthy" if cache_ok else "unhealthy",
                "type": type(runtime.cache).__name__,
            },
        },
        "connections": runtime.hub.stats()["connections"],
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    """ASGI application factory (uvicorn --factory chatgate.app:create_app)."""
    return app
