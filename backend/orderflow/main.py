"""
FastAPI application entry point with health endpoints and service routing.

This module builds the application: CORS, request logging with correlation
ids, the CheckoutError handler that renders every domain error the same way,
health endpoints, and the v1 routers. The database handle and gateway client
are created in the lifespan and closed on shutdown.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orderflow.api.v1 import orders_router, payments_router, vouchers_router
from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import CheckoutError
from orderflow.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from orderflow.database.connection import Database
from orderflow.services.payments.gateway import GatewayClient

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan: open shared resources on startup, close on shutdown.

    Args:
        app: FastAPI application instance

    Yields:
        None during application runtime
    """
    settings: Settings = app.state.settings

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    with log_performance(logger, "application_startup"):
        app.state.database = Database.from_settings(settings)
        app.state.gateway_client = GatewayClient(settings)

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        await app.state.gateway_client.aclose()
        await app.state.database.dispose()


async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Sets request ID for correlation, logs request details, and measures
    response time. Clears context after request processing.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response
    finally:
        clear_context()


async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    """Render a domain error with its code, message, and context."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request rejected",
        method=request.method,
        path=request.url.path,
        error_code=exc.code,
        reason=exc.message,
        context=exc.context,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(
            {
                "error": exc.code,
                "message": exc.message,
                "context": exc.context,
                "request_id": get_request_id(),
            }
        ),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors with structured error response."""
    errors = jsonable_encoder(exc.errors())
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=errors,
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": errors,
            "request_id": get_request_id(),
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without exposing internal details."""
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(),
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (defaults to cached settings)

    Returns:
        Configured application
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Order intake, voucher, and payment reconciliation API",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.middleware("http")(request_logging_middleware)

    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health", tags=["Health"], summary="Liveness check")
    async def health_check() -> dict[str, str]:
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
        }

    @app.get("/ready", tags=["Health"], summary="Readiness check")
    async def readiness_check(request: Request):
        database: Optional[Database] = getattr(request.app.state, "database", None)
        healthy = database is not None and await database.check_health(max_retries=1)
        if not healthy:
            logger.warning("Readiness check failed", database="unhealthy")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "not_ready",
                    "service": settings.app_name,
                    "database": "unhealthy",
                },
            )
        return {
            "status": "ready",
            "service": settings.app_name,
            "version": settings.app_version,
            "database": "healthy",
        }

    app.include_router(orders_router, prefix=settings.api_v1_prefix)
    app.include_router(payments_router, prefix=settings.api_v1_prefix)
    app.include_router(vouchers_router, prefix=settings.api_v1_prefix)

    return app


app = create_app()
