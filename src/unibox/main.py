"""Unibox API - Main FastAPI application."""

import os
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import socketio
import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import _rate_limit_exceeded_handler as _slowapi_handler
from slowapi.errors import RateLimitExceeded

from unibox.config import settings
from unibox.database import close_database, init_database
from unibox.exceptions import (
    AccountNotConnected,
    ExternalSendFailure,
    LimitExceeded,
    MessageNotRetryable,
    NotFoundError,
    TransientStorageError,
)
from unibox.logging_config import configure_logging
from unibox.middleware.auth import AuthMiddleware
from unibox.middleware.logging_filter import configure_logging_filter
from unibox.middleware.rate_limit import RATE_LIMIT_HEALTH, close_redis_client, limiter
from unibox.middleware.request_id import RequestIDMiddleware
from unibox.routes import channels, webhooks
from unibox.sentry import SentryConfig, init_sentry
from unibox.services.unipile_client import close_http_client
from unibox.websocket.broadcaster import get_broadcaster
from unibox.websocket.hub import sio


def _init_sentry() -> None:
    """Initialize Sentry with the configured settings."""
    sentry_config = SentryConfig(
        service_name="unibox-api",
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"unibox-api@{settings.VERSION}",
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        profiles_sample_rate=settings.SENTRY_PROFILES_SAMPLE_RATE,
        enable_db_tracing=True,
        enable_redis_tracing=bool(settings.REDIS_URL),
    )
    init_sentry(sentry_config)


# Initialize Sentry before logging so breadcrumbs are wired
_init_sentry()
configure_logging("unibox-api")
configure_logging_filter()

logger = structlog.get_logger()


def _rate_limit_exceeded_handler(request: Request, exc: Exception) -> Response:
    """Wrapper for slowapi handler with correct signature for FastAPI."""
    if isinstance(exc, RateLimitExceeded):
        return _slowapi_handler(request, exc)  # type: ignore[no-any-return]
    raise exc


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled exceptions with an error id and return a generic 500."""
    error_id = str(uuid.uuid4())[:8]

    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


# ============================================================================
# Domain exception handlers
# ============================================================================


async def _limit_exceeded_handler(_request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, LimitExceeded)
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Monthly message limit reached",
            "code": "LIMIT_EXCEEDED",
            "provider": exc.provider,
            "limit": exc.limit,
            "sent": exc.sent,
            "period": exc.period,
        },
    )


async def _send_failure_handler(_request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ExternalSendFailure)
    return JSONResponse(
        status_code=502,
        content={
            "detail": "Failed to send message",
            "code": "SEND_FAILED",
            "provider": exc.provider,
            "error": exc.detail,
            "message_id": exc.message_id,
        },
    )


async def _conflict_handler(_request: Request, exc: Exception) -> JSONResponse:
    code = "ACCOUNT_NOT_CONNECTED" if isinstance(exc, AccountNotConnected) else "NOT_RETRYABLE"
    return JSONResponse(status_code=409, content={"detail": str(exc), "code": code})


async def _not_found_handler(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Request failed, service temporarily unavailable",
        path=str(request.url.path),
        error=str(exc),
    )
    return JSONResponse(
        status_code=503,
        content={"detail": "Temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("Starting Unibox API", version=settings.VERSION)

    await init_database()
    await get_broadcaster().start()

    yield

    logger.info("Shutting down Unibox API")
    await get_broadcaster().stop()
    await close_http_client()
    await close_redis_client()  # Close rate limit Redis connection
    await close_database()


# OpenAPI metadata
OPENAPI_TAGS = [
    {"name": "webhooks", "description": "Provider webhooks (relay and inbound email)"},
    {"name": "channels", "description": "Connected accounts, conversations and messages"},
]

app = FastAPI(
    title="Unibox API",
    description="""
## Unibox API - Unified Inbox

Ingests provider webhooks into a single inbox, sends replies under monthly
usage limits and pushes live updates to every open session.

### Authentication

Endpoints other than webhooks and health require a JWT, either in the
`Authorization` header as `Bearer <token>` or in the access-token cookie.

### WebSocket

Real-time updates are available via Socket.IO at the `/socket.io` endpoint.
""",
    version=settings.VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    openapi_tags=OPENAPI_TAGS,
    lifespan=lifespan,
)

# Configure slowapi rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(LimitExceeded, _limit_exceeded_handler)
app.add_exception_handler(ExternalSendFailure, _send_failure_handler)
app.add_exception_handler(AccountNotConnected, _conflict_handler)
app.add_exception_handler(MessageNotRetryable, _conflict_handler)
app.add_exception_handler(NotFoundError, _not_found_handler)
app.add_exception_handler(TransientStorageError, _unavailable_handler)
app.add_exception_handler(Exception, _global_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-Request-ID",
        "X-Socket-ID",
    ],
    expose_headers=["X-Request-ID"],
    max_age=600,  # Cache preflight for 10 minutes
)

# Custom middleware (order matters - first added is last executed)
app.add_middleware(AuthMiddleware)
app.add_middleware(RequestIDMiddleware)

# Create versioned API router (v1)
api_v1 = APIRouter()
api_v1.include_router(webhooks.router)  # Already has prefix
api_v1.include_router(channels.router)  # Already has prefix

# Mount v1 API at /api/v1
app.include_router(api_v1, prefix="/api/v1")

# Also mount at /api for older clients
app.include_router(api_v1, prefix="/api")


@app.get("/health")
@limiter.limit(RATE_LIMIT_HEALTH)
async def health_check(
    request: Request,  # noqa: ARG001
    response: Response,  # noqa: ARG001
) -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.VERSION}


# Mount Socket.IO
socket_app = socketio.ASGIApp(sio, app)


def create_app() -> socketio.ASGIApp:
    """Create and return the application instance."""
    return socket_app


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "127.0.0.1")
    uvicorn.run(
        "unibox.main:socket_app",
        host=host,
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
        log_level="info",
    )
