from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sheetgate import __version__
from sheetgate.app.api.auth import router as auth_router
from sheetgate.app.api.billing import router as billing_router
from sheetgate.app.api.health import router as health_router
from sheetgate.app.api.scrape import router as scrape_router
from sheetgate.app.api.sheets import router as sheets_router
from sheetgate.app.api.user import router as user_router
from sheetgate.app.core.config import settings
from sheetgate.app.core.logging import get_log_context, get_logger, setup_logging
from sheetgate.app.db.async_session import close_async_engine
from sheetgate.app.dependencies import Services, build_services, init_storage
from sheetgate.app.exceptions import (
    GatewayException,
    QuotaExceededError,
    RateLimitedError,
    StoreUnavailableError,
)
from sheetgate.app.middleware.rate_limit import RateLimitMiddleware, rate_limited_response
from sheetgate.app.middleware.request_id import RequestIdMiddleware, get_request_id


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt service graph. Built from settings at startup
            when omitted; a graph passed in is owned by the caller.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build shared resources on startup and release them on shutdown."""
        owned = app.state.services is None
        if owned:
            app.state.services = build_services(settings)
        await init_storage(app.state.services)

        logger.info(
            "Application startup complete",
            extra={
                "cache_backend": settings.resolved_cache_backend,
                "rate_limiter": app.state.services.rate_limiter.mode,
                "account_store": settings.account_store,
            },
        )

        yield

        app.state.shutting_down = True
        if owned:
            await app.state.services.close()
            await close_async_engine()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Sheetgate",
        description="Browser extension backend with usage metering, billing and Google Sheets export",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.shutting_down = False

    # Middleware order matters: last added = first executed
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=600,
    )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(billing_router)
    app.include_router(sheets_router)
    app.include_router(scrape_router)

    @app.exception_handler(RateLimitedError)
    async def rate_limited_handler(request: Request, exc: RateLimitedError) -> JSONResponse:
        """Handle RateLimitedError and return HTTP 429 with retry metadata."""
        return rate_limited_response(exc.scope, exc.result)

    @app.exception_handler(QuotaExceededError)
    async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
        """Handle QuotaExceededError and return HTTP 403 with the usage snapshot."""
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(
        request: Request, exc: StoreUnavailableError
    ) -> JSONResponse:
        """The durable store failed: log everything, tell the client nothing."""
        request_id = get_request_id(request)
        logger.error(
            f"Account store unavailable during {exc.operation}: {exc.detail}",
            extra=get_log_context(
                request_id=request_id, path=request.url.path, method=request.method
            ),
        )
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Failed to process request. Please try again.",
                "request_id": request_id,
            },
        )

    @app.exception_handler(GatewayException)
    async def gateway_exception_handler(request: Request, exc: GatewayException) -> JSONResponse:
        """Map the remaining gateway exceptions to their status codes."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.message,
                "code": exc.error_code,
                "request_id": get_request_id(request),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; the full exception is
        logged server-side with the request id.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                },
            )

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal server error",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
