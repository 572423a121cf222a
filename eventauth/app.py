from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eventauth.api.error_handling import register_exception_handlers
from eventauth.api.routes import router
from eventauth.config import Settings
from eventauth.logging import get_logger, set_correlation_id
from eventauth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Verify the revocation store and own the sweep task for the app's lifetime."""
    from eventauth.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.verify_cache()
    await runtime.start_background()
    logger.info("auth_service_started", version=__version__)

    yield

    try:
        await runtime.shutdown()
        logger.info("runtime_cleanup_complete")
    except StoreUnavailableError as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Event Auth Service", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; a wildcard is not allowed alongside credentials
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID (generated if absent)."""
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
    # Token-bearing responses must never be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report revocation store connectivity and the sweep status."""
    from eventauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await asyncio.wait_for(
            runtime.cache.verify_connection(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["revocation_store"] = {
            "status": "healthy",
            "type": type(runtime.cache).__name__,
        }
    except (StoreUnavailableError, asyncio.TimeoutError) as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["revocation_store"] = {"status": "unhealthy"}
    checks["token_sweeper"] = {
        "status": "running" if runtime.sweeper.running else "stopped"
    }
    healthy = checks["revocation_store"]["status"] == "healthy"
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app
