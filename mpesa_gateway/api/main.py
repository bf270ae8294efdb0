"""
Main FastAPI application.

M-PESA STK push gateway with:
- Internal payment request API
- Public callback receiver
- Token administration
- Request ID tracking and structured logging
- Prometheus metrics and health probes
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_gateway import __version__
from mpesa_gateway.config import Settings, get_settings
from mpesa_gateway.core.orchestrator import PaymentRequestOrchestrator
from mpesa_gateway.core.reconciler import CallbackReconciler
from mpesa_gateway.core.token_cache import TokenCache
from mpesa_gateway.database.connection import close_db, get_session_factory, init_db
from mpesa_gateway.database.repository import TransactionStore
from mpesa_gateway.integrations.mpesa_auth import MpesaAuthClient
from mpesa_gateway.integrations.mpesa_client import MpesaClient
from mpesa_gateway.monitoring.health import HealthCheck
from mpesa_gateway.monitoring.logging import setup_logging

from .routes import admin_router, callback_router, monitoring_router, payment_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


def init_services(
    app: FastAPI,
    app_settings: Settings,
    http_client: httpx.AsyncClient,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """
    Wire the gateway services onto ``app.state``.

    The token cache is created here once per process and shared by every
    request through the orchestrator.
    """
    auth_client = MpesaAuthClient(http_client=http_client, settings=app_settings)
    token_cache = TokenCache(
        auth_client.fetch,
        safety_margin_seconds=app_settings.token_safety_margin_seconds,
    )
    store = TransactionStore(session_factory)

    app.state.settings = app_settings
    app.state.token_cache = token_cache
    app.state.store = store
    app.state.orchestrator = PaymentRequestOrchestrator(
        token_cache=token_cache,
        mpesa_client=MpesaClient(http_client=http_client, settings=app_settings),
        store=store,
        settings=app_settings,
    )
    app.state.reconciler = CallbackReconciler(store)
    app.state.health_check = HealthCheck(session_factory=session_factory, token_cache=token_cache)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        mpesa_base_url=settings.mpesa_base_url,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    http_client = httpx.AsyncClient(timeout=settings.mpesa_http_timeout)
    init_services(app, settings, http_client, get_session_factory())

    yield

    # Shutdown
    logger.info("application_shutdown")
    await http_client.aclose()
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


# Create FastAPI application
app = FastAPI(
    title="M-PESA Gateway",
    description=(
        "M-PESA STK push gateway. Initiates payment prompts, caches the OAuth token "
        "and reconciles asynchronous callbacks against stored transactions."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        duration = time.time() - start_time
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=duration,
        )

        return response

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=duration,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


# Include routers
app.include_router(payment_router)
app.include_router(callback_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "mpesa_gateway.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
