"""FastAPI application factory (create_app)."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import FastAPI, Request
from starlette.responses import Response

from streamrelay.infrastructure.config import AppConfig
from streamrelay.interfaces.app_state import AppState
from streamrelay.interfaces.composition import lifespan

log = structlog.get_logger(__name__)


def create_app(config: AppConfig) -> FastAPI:
    """Create FastAPI app. Configuration ONLY, NO resource initialization.

    Resources (HTTP client, caches, background tasks) are created in lifespan().
    """
    app = FastAPI(
        title="streamrelay",
        description="Range-aware HLS and media file reverse proxy",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state = AppState()
    app.state.config = config

    from streamrelay.interfaces.api.proxy.router import router as proxy_router
    from streamrelay.interfaces.api.stats.router import router as stats_router

    if config.proxy.enabled:
        app.include_router(proxy_router)
    else:
        log.info("proxy_routes_disabled")
    app.include_router(stats_router, prefix="/api/v1")

    @app.get("/api/v1/healthz")
    async def healthz() -> dict[str, str | bool]:
        """Liveness probe; returns 200 as long as the process is running."""
        return {"status": "ok", "proxy_enabled": config.proxy.enabled}

    @app.middleware("http")
    async def log_requests(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ):
        start = time.perf_counter()
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            status_code = getattr(locals().get("response", None), "status_code", 500)

            log.info(
                "http_request",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=round(duration_ms, 2),
                client_host=(request.client.host if request.client else None),
            )

    return app
