"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from wishcraft.api.v1.router import api_router
from wishcraft.core.config import settings
from wishcraft.core.exceptions import (
    ErrorKind,
    InvalidCollaborationSettings,
    LifecycleViolation,
    RateLimited,
    SignatureInvalid,
    Unauthenticated,
    WishcraftError,
)
from wishcraft.core.logging_config import (
    generate_request_id,
    request_id_var,
    setup_logging,
)
from wishcraft.core.rate_limit import limiter

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    ErrorKind.CRYPTO_FAILURE: 400,
    ErrorKind.STATE_OR_PKCE_MISMATCH: 400,
    ErrorKind.EXPIRED_EXCHANGE: 400,
    ErrorKind.UPSTREAM_EXCHANGE_FAILURE: 502,
    ErrorKind.AUTHORIZATION_DENIED: 403,
    ErrorKind.LIFECYCLE_VIOLATION: 409,
    ErrorKind.RATE_LIMITED: 429,
}


def error_response(exc: WishcraftError) -> JSONResponse:
    """Translate a core error into an HTTP response."""
    status_code = _STATUS_BY_KIND[exc.kind]
    content: dict[str, Any] = {"detail": exc.message, "code": exc.code}
    headers: dict[str, str] = {}

    if isinstance(exc, Unauthenticated):
        status_code = 401
    elif isinstance(exc, SignatureInvalid):
        status_code = 401
    elif isinstance(exc, LifecycleViolation):
        status_code = exc.status_code
        if isinstance(exc, InvalidCollaborationSettings):
            content["errors"] = exc.errors
    elif isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    elif exc.kind is ErrorKind.AUTHORIZATION_DENIED:
        # Never reveal which check failed
        content = {"detail": "Not permitted", "code": "permission_denied"}

    return JSONResponse(status_code=status_code, content=content, headers=headers or None)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging(debug=settings.debug)
    logger.info("Starting %s v%s", settings.project_name, settings.version)
    logger.info("Environment: %s", settings.environment)
    yield
    logger.info("Shutting down...")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    # Sentry/GlitchTip init (before middleware)
    if settings.sentry_dsn:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
            send_default_pii=False,
        )

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]
    app.add_middleware(SlowAPIMiddleware)

    # Session cookies are sent cross-origin from the storefront, so origins are listed
    # explicitly rather than matched by pattern.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next: Any) -> Response:
        rid = request.headers.get("X-Request-ID") or generate_request_id()
        request_id_var.set(rid)
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    # Include API routes
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.exception_handler(WishcraftError)
    async def wishcraft_error_handler(_request: Request, exc: WishcraftError) -> JSONResponse:
        return error_response(exc)

    # Global exception handler to ensure CORS headers are present on 500 errors
    @app.exception_handler(Exception)
    async def global_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
        """Handle unhandled exceptions with proper JSON response."""
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Redirect /docs to versioned docs URL
    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"{settings.api_v1_prefix}/docs")

    # Root endpoint
    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "name": settings.project_name,
            "version": settings.version,
            "docs": f"{settings.api_v1_prefix}/docs",
            "health": f"{settings.api_v1_prefix}/health",
        }

    return app


app = create_app()
