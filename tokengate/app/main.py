from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tokengate.app.api import admin_router, ratelimit_router
from tokengate.app.core.config import settings
from tokengate.app.core.logging import get_log_context, get_logger, setup_logging
from tokengate.app.db.async_session import close_async_engine
from tokengate.app.db.init_db import init_database, verify_connection
from tokengate.app.exceptions import (
    AuthenticationError,
    PolicyConfigurationError,
    RateLimitExceededError,
    StorageUnavailableError,
)
from tokengate.app.middleware.rate_limit import RateLimitHeadersMiddleware
from tokengate.app.middleware.request_id import RequestIdMiddleware, get_request_id
from tokengate.app.ratelimit.limiter import RateLimiterService, get_rate_limiter
from tokengate.app.ratelimit.policies import get_policy_table


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    # Setup logging
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Validates the policy table (a misconfigured table aborts startup),
        prepares the bucket store and closes it on shutdown.
        """
        policies = get_policy_table()
        policies.validate()

        if settings.rate_limit_backend == "database":
            if not await verify_connection():
                logger.error("Database connection failed!")
                raise RuntimeError("Cannot connect to database")
            await init_database()

        limiter = get_rate_limiter()

        logger.info(
            "Application startup complete",
            extra={
                "backend": limiter.store.name,
                "policies_loaded": len(policies.entries),
                "fail_closed": limiter.fail_closed,
                "debug_mode": settings.debug,
            }
        )

        yield

        await limiter.close()
        if settings.rate_limit_backend == "database":
            await close_async_engine()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="tokengate",
        description="Token bucket rate limiting for multi-tenant HTTP APIs",
        version="0.1.0",
        lifespan=lifespan
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RateLimitHeadersMiddleware)

    # Request ID middleware, outside the header middleware so errors carry it too
    app.add_middleware(RequestIdMiddleware)

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=600,  # Cache preflight requests for 10 minutes
    )

    # Include routers
    app.include_router(ratelimit_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health(limiter: RateLimiterService = Depends(get_rate_limiter)) -> dict[str, Any]:
        """Health check with bucket store connectivity."""
        storage_ok = await limiter.ping()
        return {
            "status": "ok" if storage_ok else "degraded",
            "components": {
                "storage": {
                    "status": "ok" if storage_ok else "error",
                    "backend": limiter.store.name,
                    "fail_closed": limiter.fail_closed,
                },
            },
        }

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        result = exc.result
        return JSONResponse(
            status_code=429,
            content={
                "error": "rate_limit_exceeded",
                "message": exc.message,
                "retry_after": result.retry_after_seconds,
                "limit": result.capacity,
                "remaining": result.tokens_remaining,
                "reset_at": result.reset_at.isoformat(),
            },
            headers=result.to_headers(),
        )

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        """Handle AuthenticationError and return HTTP 401 response."""
        return JSONResponse(
            status_code=401,
            content={"error": "authentication_failed", "message": exc.detail}
        )

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
        """Handle StorageUnavailableError and return HTTP 503 response."""
        logger.warning(
            f"Storage unavailable: {exc.message}",
            extra=get_log_context(
                request_id=get_request_id(request),
                path=request.url.path,
            ),
        )
        return JSONResponse(
            status_code=503,
            content={"error": "storage_unavailable", "message": "Rate limit storage unavailable"},
            headers={"Retry-After": str(settings.rate_limit_storage_retry_after)},
        )

    @app.exception_handler(PolicyConfigurationError)
    async def policy_configuration_handler(request: Request, exc: PolicyConfigurationError) -> JSONResponse:
        """Handle PolicyConfigurationError and return HTTP 500 response."""
        request_id = get_request_id(request)
        logger.error(
            f"Rate limit policy misconfigured: {exc.message}",
            extra=get_log_context(request_id=request_id, path=request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "policy_configuration_error",
                "message": exc.message if settings.debug else "Rate limit policy misconfigured",
                "request_id": request_id,
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details are logged
        server-side and debug mode adds the exception message.
        """
        request_id = get_request_id(request)

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            }
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                }
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,  # Include for support correlation
            }
        )

    return app


# Create the application instance
app = create_app()
