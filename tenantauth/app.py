from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tenantauth.api.error_handling import register_exception_handlers
from tenantauth.api.routes import metrics_router, router
from tenantauth.logging import get_logger, set_correlation_id
from tenantauth.service.cookies import CSRF_HEADER, USER_ID_HEADER
from tenantauth.service.guard import VERSION_HEADER
from tenantauth.service.runtime import Runtime, build_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the FastAPI app around an explicitly wired runtime.

    Run with ``uvicorn tenantauth.app:create_app --factory``.
    """
    runtime = runtime or build_runtime()
    settings = runtime.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("auth_service_started", version=__version__)
        yield
        await runtime.cache.close()
        logger.info("auth_service_stopped")

    app = FastAPI(title="Tenant Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Request-ID",
            CSRF_HEADER,
            VERSION_HEADER,
            USER_ID_HEADER,
        ],
        expose_headers=["X-Request-ID", "Deprecation"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Carry ``X-Request-ID`` (or a fresh id) through logs and back to the client."""
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
        if request.url.path.startswith("/api/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if settings.server_https:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(metrics_router)
    return app
