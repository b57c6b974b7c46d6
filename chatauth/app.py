from __future__ import annotations

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from chatauth.api.error_handling import error_response, register_exception_handlers
from chatauth.api.routes import router
from chatauth.config import Settings, load_settings
from chatauth.logging import configure_logging, get_logger, set_correlation_id
from chatauth.service.errors import ConfigError
from chatauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    runtime: Runtime = app.state.runtime
    try:
        await asyncio.to_thread(runtime.close)
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _install_middleware(app: FastAPI, settings: Settings) -> None:
    # Registered innermost first; the correlation id wraps everything else
    integrations = settings.client_integrations
    timeout = settings.server.request_timeout_secs

    if integrations.allow_request_timeout_middleware:

        @app.middleware("http")
        async def enforce_request_timeout(request: Request, call_next):
            try:
                return await asyncio.wait_for(call_next(request), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "request_timeout",
                    path=request.url.path,
                    method=request.method,
                    timeout=timeout,
                )
                return error_response(408, "request timed out", code="request_timeout")

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    if integrations.allow_logging_middleware:

        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            started = time.perf_counter()
            response = await call_next(request)
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with ``X-Request-ID``, reusing the client's value if sent."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application around one configuration snapshot.

    Without ``settings`` the snapshot is loaded from ``config/`` and the
    environment; a ``ConfigError`` propagates to the caller.
    """
    settings = settings or load_settings()
    obs = settings.observability
    configure_logging(
        log_level=obs.log_level,
        json_output=obs.log_json,
        development_mode=obs.log_dev_mode,
    )

    app = FastAPI(title=settings.app.name, version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = Runtime(settings)

    _install_middleware(app, settings)
    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        runtime: Runtime = app.state.runtime

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

        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        return {
            "status": "healthy" if db_ok else "unhealthy",
            "checks": {"database": {"status": "healthy" if db_ok else "unhealthy"}},
            "version": __version__,
            "environment": settings.app.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    logger.info(
        "app_created",
        environment=settings.app.environment,
        request_timeout_middleware=settings.client_integrations.allow_request_timeout_middleware,
    )
    return app


def main() -> None:
    import uvicorn

    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error("config_invalid", field=exc.field, message=exc.message, errors=exc.errors)
        sys.exit(1)

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.observability.log_level.lower(),
    )


if __name__ == "__main__":
    main()
