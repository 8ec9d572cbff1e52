"""Stripe Subscription Sync: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog MUST run before all other app imports:
# structlog caches the processor chain on first use.
from app.core.logging import configure_structlog
from app.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse

from app.api.routes import api_router
from app.core.config import Settings, get_settings
from app.core.exceptions import FatalConfigError
from app.db import init_db, close_db, init_redis, close_redis, get_redis, get_session_factory
from app.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)
from app.services.account_store import build_account_store
from app.services.webhook_processor import build_webhook_processor

logger = structlog.get_logger(__name__)


def validate_webhook_config(settings: Settings) -> None:
    """Fail fast when the service could not verify any webhook."""
    if settings.idempotency_backend.lower() not in ("database", "redis"):
        raise FatalConfigError(f"Unknown IDEMPOTENCY_BACKEND: {settings.idempotency_backend}")
    if settings.debug:
        return  # Skip secret checks in dev/test mode
    missing = [
        name
        for name, value in (
            ("stripe_webhook_secret", settings.stripe_webhook_secret),
            ("stripe_secret_key", settings.stripe_secret_key),
        )
        if not value
    ]
    if missing:
        raise FatalConfigError(f"Missing Stripe configuration at startup: {missing}")


def install_sigterm_drain(app: FastAPI):
    """Flip app.state.shutting_down on SIGTERM, then hand the signal to the previous handler.

    The previous handler (uvicorn's, when served by uvicorn) still runs, so the
    server shuts down. Returns it so the caller can restore it.
    """
    previous = signal.getsignal(signal.SIGTERM)

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            raise SystemExit(128 + signum)

    signal.signal(signal.SIGTERM, handle_sigterm)
    return previous


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while draining
    app.state.shutting_down = False
    previous_sigterm = install_sigterm_drain(app)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_webhook_config(settings)
    logger.info("webhook_config_validated", idempotency_backend=settings.idempotency_backend)

    await init_db()
    logger.info("db_initialized")

    redis_client = None
    if settings.idempotency_backend.lower() == "redis":
        await init_redis()
        redis_client = get_redis()
        logger.info("redis_initialized")

    app.state.account_store = build_account_store(settings, get_session_factory())
    app.state.webhook_processor = build_webhook_processor(
        settings, get_session_factory(), redis_client, store=app.state.account_store
    )
    logger.info("webhook_processor_ready")

    yield

    logger.info("shutdown_begin")
    app.state.webhook_processor = None
    app.state.account_store = None
    await close_redis()
    await close_db()
    if previous_sigterm is not None:
        signal.signal(signal.SIGTERM, previous_sigterm)
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Reconciles local subscription state with Stripe webhook events",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
