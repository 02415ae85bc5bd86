from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from appauth.api.error_handling import register_exception_handlers
from appauth.api.routes import router
from appauth.config import Settings
from appauth.logging import get_logger, set_correlation_id
from appauth.service.app_registry import AppRegistry
from appauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the runtime on startup and release it on shutdown."""
    runtime: Runtime = app.state.runtime
    runtime.connect()
    logger.info("runtime_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Every registered app frontend may call the API
    return sorted(AppRegistry(settings.app_endpoints).supported_endpoints())


def create_app(settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None) -> FastAPI:
    settings = settings or (runtime.settings if runtime else Settings.from_env())
    app = FastAPI(title="App Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime or Runtime(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag each request with a correlation ID for log tracing.

        The ID comes from the X-Request-ID header when the client sends one
        and is echoed back in the response header.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        response.headers.setdefault("API-Version", __version__)
        return response

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report store and Redis reachability plus version info."""
        report = await app.state.runtime.health_check(timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        body = {
            **report,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if report["status"] != "healthy":
            return JSONResponse(status_code=503, content=body)
        return body

    register_exception_handlers(app)
    app.include_router(router)
    return app
