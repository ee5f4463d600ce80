"""Main FastAPI application."""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from src.canary.core.config import settings
from src.canary.core.errors import ConfigError, ControllerError, InvalidTransition, RolloutNotFound
from src.canary.core.middleware import RequestContextMiddleware
from src.canary.monitoring.metrics import PrometheusMiddleware, metrics_endpoint
from src.canary.monitoring.tracing import setup_tracing
from src.canary.api import api_router
from src.canary.api.health import router as health_router
from src.canary.services.rollout_service import rollout_manager
from src.canary.core.limiter import limiter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from src.canary.core.logging import setup_logging

ERROR_STATUS = {
    ConfigError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RolloutNotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle: load templates on startup, stop rollout tasks on shutdown."""
    logger.info("🚀 Starting {} v{}", settings.PROJECT_NAME, settings.VERSION)
    app.state.shutting_down = False

    if settings.TEMPLATES_DIR:
        rollout_manager.load_templates(settings.TEMPLATES_DIR)
    else:
        logger.warning("⚠️  TEMPLATES_DIR not set; templates must be registered through the API")

    logger.info("✅ Controller is ready to accept revisions")

    yield

    logger.info("🛑 Shutting down gracefully...")
    app.state.shutting_down = True
    await rollout_manager.shutdown()
    logger.info("✅ Shutdown complete")


async def controller_error_handler(request: Request, exc: ControllerError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error(f"Unhandled controller error: {exc!r}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "context": exc.context},
    )


def create_app() -> FastAPI:
    """Create FastAPI application with all middleware and routes."""

    # Setup structured logging
    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )

    # Initialize state
    app.state.shutting_down = False

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ControllerError, controller_error_handler)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(PrometheusMiddleware)

    # Setup distributed tracing
    setup_tracing(app)

    # Include routers
    app.include_router(health_router, prefix="/api", tags=["health"])
    app.include_router(api_router, prefix=settings.API_V1_STR)

    # Prometheus metrics endpoint
    app.add_route("/metrics", metrics_endpoint)

    logger.info("📦 Application configured successfully")

    return app


app = create_app()
