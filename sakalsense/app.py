from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sakalsense.api.error_handling import register_exception_handlers
from sakalsense.api.routes import router
from sakalsense.config import get_settings
from sakalsense.logging import get_logger, set_correlation_id
from sakalsense.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    runtime = Runtime()
    app.state.runtime = runtime
    app.state.started_at = time.monotonic()
    await runtime.start()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request: Request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def log_request_completion(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.debug(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
        stakeholder=getattr(request.state, "stakeholder", None),
    )
    return response


async def add_rate_limit_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in getattr(request.state, "rate_limit_headers", {}).items():
        response.headers.setdefault(name, value)
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/health":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and get_settings().is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


async def _run_bounded(label: str, func: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


async def health(request: Request) -> Dict[str, Any]:
    """Liveness plus a bounded check of the primary store and the cache.

    Always answers 200; a failed check degrades the status instead of raising.
    """
    runtime = get_runtime(request)
    store_ok = await _run_bounded("primary_store", runtime.store.verify_connection)
    cache_ok = await _run_bounded("cache_store", runtime.cache.verify_connection)
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    return {
        "status": "healthy" if store_ok and cache_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - started_at, 3),
        "services": {
            "primaryStore": "connected" if store_ok else "disconnected",
            "cacheStore": "connected" if cache_ok else "disconnected",
        },
    }


def create_app() -> FastAPI:
    app = FastAPI(title="SakalSense API", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )
    # last added runs first: correlation id must be set before anything logs
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_rate_limit_headers)
    app.middleware("http")(log_request_completion)
    app.middleware("http")(add_correlation_id)

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return app


app = create_app()
