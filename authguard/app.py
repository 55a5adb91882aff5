from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from authguard.api.error_handling import register_exception_handlers
from authguard.api.routes import router
from authguard.config import Settings
from authguard.logging import get_logger, set_correlation_id
from authguard.service.auth import AuthService
from authguard.service.runtime import build_auth_service

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    cache = app.state.auth.rate_limiter.cache
    if cache is not None:
        await cache.close()
        logger.info("redis_cache_closed")


def create_app(
    settings: Optional[Settings] = None, service: Optional[AuthService] = None
) -> FastAPI:
    """Build the HTTP app around a single ``AuthService`` kept on ``app.state``."""
    app = FastAPI(title="AuthGuard", version=__version__, lifespan=lifespan)
    app.state.auth = service or build_auth_service(settings)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Propagate X-Request-ID (or a fresh id) through logs and the response."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", tags=["health"])
    async def healthz():
        return {"status": "ok", "version": __version__}

    return app
