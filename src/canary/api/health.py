"""Health check endpoints."""
from fastapi import APIRouter, Response, status
from prometheus_client import Gauge
from loguru import logger

from src.canary.core.config import settings
from src.canary.core.circuit_breaker import metrics_backend_breaker
from src.canary.services.rollout_service import rollout_manager

router = APIRouter()

CONTROLLER_READY = Gauge("controller_ready", "Controller readiness: 1=ready, 0=not ready")


@router.get("/healthz", status_code=status.HTTP_200_OK)
async def healthz():
    """Liveness probe: is the process alive?"""
    return {
        "status": "ok",
        "version": settings.VERSION,
        "service": settings.PROJECT_NAME,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(response: Response):
    """
    Readiness probe: can the controller drive rollouts?

    Checks:
    - At least one analysis template registered
    - Metrics backend circuit breaker not open
    """
    checks = {
        "templates_loaded": bool(rollout_manager.templates),
        "circuit_breaker_closed": metrics_backend_breaker.current_state != "open",
    }

    is_ready = all(checks.values())
    CONTROLLER_READY.set(1 if is_ready else 0)

    if not is_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(f"Controller NOT READY: {checks}")
        return {
            "status": "not_ready",
            "checks": checks,
            "circuit_state": metrics_backend_breaker.current_state,
        }

    return {
        "status": "ready",
        "checks": checks,
        "active_rollouts": rollout_manager.active_count,
    }
