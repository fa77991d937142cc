"""
FastAPI application for the platform billing service.

Provides REST API for:
- Checkout session creation and on-demand subscription reconciliation
- Stripe webhook intake
- Admin-triggered trial housekeeping
- Health and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.billing.errors import ConfigurationError, NotFoundError, ProviderError
from src.billing.service import BillingService
from src.config import get_settings
from src.observability.logging import configure_logging, get_logger
from src.observability.logging_middleware import StructuredLoggingMiddleware
from src.observability.metrics import generate_metrics
from src.platform.service import PlatformService
from src.routers import billing_router
from src.storage.database import get_platform_db

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown:
    - Open and migrate the platform database
    - Build the billing engine (Stripe client, reconciler, housekeeper)
    - Build the platform request-path service
    """
    settings = get_settings()

    logger.info("=== Platform Billing Service Starting ===")

    db = None
    try:
        db = await get_platform_db()
        logger.info("Platform database ready", path=settings.database.path)

        billing = BillingService(settings, db)
        app.state.db = db
        app.state.billing = billing
        app.state.platform = PlatformService(db, billing)
        logger.info("Billing engine ready", stripe_enabled=billing.client.is_enabled)

        logger.info("=== Service Ready ===")

        yield  # Application runs here

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")
        if db:
            db.close()
        logger.info("=== Shutdown complete ===")


# Create FastAPI app
app = FastAPI(
    title="Platform Billing API",
    description="Subscription reconciliation and trial lifecycle for platform teams",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(StructuredLoggingMiddleware)

app.include_router(billing_router)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    logger.warning("Record not found", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)},
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Missing product/price mapping: an operator problem, not the caller's."""
    logger.error(
        "Billing configuration error",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Billing is not configured for this plan", "error": str(exc)},
    )


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    """Handle Stripe connection/operation errors."""
    logger.error(
        "Billing provider error occurred",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Billing provider temporarily unavailable", "error": str(exc)},
    )


class LivenessResponse(BaseModel):
    status: str = "alive"


@app.get("/health/liveness", response_model=LivenessResponse, tags=["Health"])
async def liveness_probe() -> LivenessResponse:
    """
    Liveness probe for Kubernetes.

    Performs no I/O; only fails if the process is dead.
    """
    return LivenessResponse()


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics endpoint."""
    content, content_type = generate_metrics()
    return Response(content=content, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    """
    Root endpoint with API information.
    """
    return {
        "service": "Platform Billing API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health/liveness",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        log_level="info",
    )
