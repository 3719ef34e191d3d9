"""
Main FastAPI application.

Escrow marketplace API with:
- CORS configuration
- Domain error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
- The expiry sweeper as a background task
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Type

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrow_market.config import get_settings
from escrow_market.core.errors import (
    Conflict,
    Forbidden,
    InvalidAmount,
    InvalidState,
    MarketError,
    NotFound,
    SelfTrade,
    SignatureInvalid,
    Unavailable,
)
from escrow_market.core.vault import VaultError
from escrow_market.database.connection import close_db, init_db
from escrow_market.integrations.payment_provider import ProviderError
from escrow_market.monitoring.logging import setup_logging
from escrow_market.workers.expiry_sweeper import ExpirySweeper

from .dependencies import build_lifecycle
from .routes import (
    admin_router,
    cart_router,
    listing_router,
    monitoring_router,
    order_router,
    seller_router,
    webhook_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()

ERROR_STATUS: Dict[Type[MarketError], int] = {
    NotFound: status.HTTP_404_NOT_FOUND,
    Forbidden: status.HTTP_403_FORBIDDEN,
    InvalidState: status.HTTP_409_CONFLICT,
    Conflict: status.HTTP_409_CONFLICT,
    Unavailable: status.HTTP_409_CONFLICT,
    InvalidAmount: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SelfTrade: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SignatureInvalid: status.HTTP_400_BAD_REQUEST,
    VaultError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Initializes the ledger and runs the expiry sweeper until shutdown.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    sweeper: ExpirySweeper | None = None
    sweeper_task: asyncio.Task | None = None
    stop = asyncio.Event()
    if settings.sweeper_enabled:
        sweeper = ExpirySweeper(build_lifecycle())
        sweeper_task = asyncio.create_task(sweeper.run_forever(stop))

    yield

    logger.info("application_shutdown")
    if sweeper_task is not None and sweeper is not None:
        stop.set()
        await sweeper_task
        await sweeper.close()
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


app = FastAPI(
    title="Escrow Market",
    description=(
        "Escrow marketplace for digital credentials: payment confirmation, "
        "gated credential disclosure, disputes, settlement and seller payouts."
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

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
    request_id = str(uuid.uuid4())
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

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError) -> JSONResponse:
    """Map domain errors to HTTP status codes."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "api_domain_error",
        error=exc.kind,
        message=exc.message,
        status_code=status_code,
        path=request.url.path,
        **exc.context,
    )
    if status_code >= 500:
        # Internal faults are not explained to the caller.
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.kind, "message": "The request could not be completed"},
        )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    logger.error("api_provider_error", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "provider_error", "message": "Payment provider request failed"},
    )


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


app.include_router(order_router)
app.include_router(webhook_router)
app.include_router(seller_router)
app.include_router(listing_router)
app.include_router(cart_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.app_env,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "escrow_market.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
