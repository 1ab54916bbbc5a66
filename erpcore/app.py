from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from erpcore.api.error_handling import _error_response, register_exception_handlers
from erpcore.api.routes import router
from erpcore.config import Settings, get_settings
from erpcore.logging import get_logger, set_correlation_id
from erpcore.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard since credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def _runtime_for(app: FastAPI) -> Runtime:
    runtime = getattr(app.state, "runtime", None)
    return runtime if runtime is not None else get_runtime()


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = _runtime_for(app)
    app.state.runtime = runtime
    logger.info("app_started", version=__version__, app_env=runtime.settings.app_env.value)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the ASGI app; the runtime is created lazily when not supplied."""
    settings = runtime.settings if runtime is not None else get_settings()
    app = FastAPI(title="ERP Core Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def enforce_request_timeout(request: Request, call_next):
        timeout = _runtime_for(request.app).settings.request_timeout_seconds
        try:
            return await asyncio.wait_for(call_next(request), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "request_timeout",
                path=request.url.path,
                method=request.method,
                timeout_seconds=timeout,
            )
            return _error_response(408, "Request timeout", code="request_timeout")

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-XSS-Protection", "1; mode=block")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Auth responses carry tokens; keep them out of proxy caches
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
        )
        if request.url.scheme == "https":
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Take X-Request-ID from the client or generate one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health():
        """Store and Redis reachability; 503 when either is down."""
        current = _runtime_for(app)
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

        db_ok = await _run_bounded("database", current.store.verify_connection)
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": "memory" if current.settings.use_memory_store else "postgres",
        }
        healthy = db_ok

        if current.cache is not None:
            redis_ok = await _run_bounded("redis", current.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        body = {
            "success": healthy,
            "data": {
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
