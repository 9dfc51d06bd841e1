from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ssoidp import __version__
from ssoidp.api.error_handling import _error_response, register_exception_handlers
from ssoidp.api.oauth_routes import router as oauth_router
from ssoidp.api.routes import router
from ssoidp.config import Settings, get_settings
from ssoidp.logging import get_logger, set_correlation_id
from ssoidp.service.errors import CsrfError
from ssoidp.service.runtime import get_runtime

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Back-channel endpoints authenticate the client itself, not a browser session
_CSRF_EXEMPT_PATHS = frozenset({"/token", "/revoke", "/introspect"})


async def _run_sweeper(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().sweep_expired)
        except Exception as exc:
            logger.error("expired_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry sweeper on startup; close pools on shutdown."""
    runtime = get_runtime()
    sweeper = None
    if runtime.settings.sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(_run_sweeper(runtime.settings.sweep_interval_seconds))
    logger.info("app_started", version=__version__, issuer=runtime.settings.issuer)

    yield

    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # No wildcard: credentials are allowed
    return ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]


def _csrf_required(request: Request) -> bool:
    if request.url.path in _CSRF_EXEMPT_PATHS:
        return False
    # Bearer callers hold the credential themselves, the browser cannot attach it
    authorization = request.headers.get("Authorization", "")
    return not authorization.lower().startswith("bearer ")


async def health() -> Dict[str, Any]:
    """Liveness plus bounded dependency checks for the store and Redis."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            result = await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return result is not False
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    fs_path = Path(runtime.settings.shared_fs_root)
    fs_ok = await _run_bounded("filesystem", fs_path.is_dir)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    healthy = db_ok and redis_ok and fs_ok
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="SSO Identity Provider", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        if not _csrf_required(request):
            return await call_next(request)
        runtime = get_runtime()
        try:
            runtime.csrf.validate(
                request.method,
                request.cookies.get(runtime.settings.csrf_cookie_name),
                request.headers.get("X-CSRF-Token"),
            )
        except CsrfError as exc:
            logger.warning("csrf_rejected", path=request.url.path, reason=exc.message)
            return _error_response(exc.status_code, exc.message, code=exc.error_code)
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
        )
        return response

    # Registered last so it runs outermost and every log line carries the id
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    app.include_router(router)
    app.include_router(oauth_router)
    return app


app = create_app()
