"""
FastAPI application entry point with health endpoints and service routing.

This module provides the main FastAPI application instance with CORS
configuration, request correlation, global exception handling and the v1
routers. The lifespan builds the long-lived payment collaborators (gateway
client, apply strategy, reconciliation engine, webhook receiver) once and
refuses to start when gateway credentials are missing.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from schoolphotos.api.v1 import orders_router, payments_router
from schoolphotos.core.config import get_settings
from schoolphotos.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from schoolphotos.core.rate_limit import limiter
from schoolphotos.database.connection import (
    check_database_health,
    close_database_connections,
    get_engine,
    get_session_factory,
)
from schoolphotos.services.payments.appliers import select_applier
from schoolphotos.services.payments.gateway_client import create_gateway_client
from schoolphotos.services.payments.reconciliation import (
    ReconciliationEngine,
    ReconciliationRetrier,
)
from schoolphotos.services.payments.webhook import WebhookReceiver, WebhookVerifier

# Configure logging before application initialization
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan context manager for startup and shutdown events.

    Raises:
        GatewayConfigurationError: If the gateway access token is missing
        SecurityError: If the webhook secret is missing
        ApplierConfigurationError: If the apply strategy cannot be used
    """
    settings = get_settings()

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    with log_performance(logger, "application_startup"):
        gateway_client = create_gateway_client(settings)
        verifier = WebhookVerifier(settings.mp_webhook_secret)
        session_factory = get_session_factory()
        applier = await select_applier(
            settings.payment_apply_strategy,
            get_engine(),
            session_factory,
        )
        engine = ReconciliationEngine(session_factory, gateway_client, applier)
        retrier = ReconciliationRetrier.from_settings(engine, settings)

        app.state.gateway_client = gateway_client
        app.state.webhook_receiver = WebhookReceiver(verifier, retrier, settings)
        logger.info("Resources initialized successfully", apply_strategy=applier.name)

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        await gateway_client.close()
        await close_database_connections()
        logger.info("Resources cleaned up successfully")


# Initialize FastAPI application
settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="School photo ordering and payment settlement API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Sets request ID for correlation, logs request details, and measures
    response time. Clears context after request processing.
    """
    request_id = request.headers.get("X-Request-ID")
    request_id = set_request_id(request_id)

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
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        clear_context()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors with structured error response."""
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        error_count=len(exc.errors()),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": {
                "message": "Request validation failed",
                "code": "VALIDATION_ERROR",
                "errors": jsonable_encoder(exc.errors(), exclude={"ctx", "input"}),
            },
            "request_id": get_request_id(),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions with structured error response.

    Logs error with full context and returns generic error message
    to avoid exposing internal details.
    """
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
            "detail": {
                "message": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
            "request_id": get_request_id(),
        },
    )


@app.get(
    "/health",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Health check endpoint",
    response_description="Application and database health status",
)
async def health_check():
    """
    Health check endpoint.

    Returns 200 when the database answers, 503 otherwise.
    """
    database_ok = await check_database_health()
    body = {
        "status": "healthy" if database_ok else "unhealthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "healthy" if database_ok else "unhealthy",
    }
    if not database_ok:
        logger.warning("Health check failed", database=False)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body,
        )
    return body


@app.get(
    "/live",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Liveness check endpoint",
    response_description="Application liveness status",
)
async def liveness_check() -> dict[str, str]:
    """Indicates whether the process is alive; always 200 while running."""
    return {
        "status": "alive",
        "service": settings.app_name,
        "version": settings.app_version,
    }


app.include_router(orders_router, prefix=settings.api_v1_prefix)
app.include_router(payments_router, prefix=settings.api_v1_prefix)
