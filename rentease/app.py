from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from rentease.api.error_handling import error_response, register_exception_handlers
from rentease.api.routes import client_ip, router
from rentease.config import Settings
from rentease.logging import bind_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0
GLOBAL_RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from rentease.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))
        raise

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="RentEase Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return _settings.cors_allow_origins or [_settings.frontend_url]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    # Auth travels in cookies, so credentials must be allowed
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_global_rate_limit(request: Request, call_next):
    """Per-IP token bucket in front of every API route."""
    if not request.url.path.startswith("/api/"):
        return await call_next(request)

    from rentease.service.runtime import check_rate_limit, get_runtime

    runtime = get_runtime()
    ip = client_ip(request)
    allowed = await check_rate_limit(
        runtime,
        f"global:{ip}",
        runtime.settings.global_rate_limit,
        runtime.settings.global_rate_limit_window_seconds,
    )
    if not allowed:
        logger.warning("global_rate_limited", path=request.url.path)
        return error_response(429, GLOBAL_RATE_LIMIT_MESSAGE, code="rate_limited")
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for structured logging.

    A client-supplied ``X-Request-ID`` is reused, otherwise a new UUID is
    generated; either way it is echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    bind_request_context(client_ip=client_ip(request), path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report database and key-value store reachability."""
    from rentease.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    cache_ok = await _run_bounded("redis", runtime.cache.verify_connection)
    checks = {
        "database": {"status": "healthy" if db_ok else "unhealthy"},
        "redis": {
            "status": "healthy" if cache_ok else "unhealthy",
            "in_memory": not runtime.redis_enabled,
        },
    }
    return {
        "status": "healthy" if db_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
