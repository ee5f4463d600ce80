"""Request context middleware for correlation and logging."""
import re
import time
import uuid
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from loguru import logger

from src.canary.core.logging import rollout_id as rollout_id_var, trace_id as trace_id_var
from src.canary.monitoring.tracing import get_current_span, set_span_attributes, record_exception

ROLLOUT_PATH = re.compile(r"/rollouts/(?P<rollout_id>[^/]+)")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a correlation ID to every request and log its outcome.

    Requests addressed to a single rollout also carry its id into the logs.
    """

    async def dispatch(self, request: Request, call_next):
        if getattr(request.app.state, "shutting_down", False):
            logger.warning("⚠️  Rejecting request during shutdown")
            return JSONResponse(
                status_code=503,
                content={"detail": "Controller is shutting down"},
            )

        start_time = time.time()
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        trace_id_var.set(correlation_id)
        match = ROLLOUT_PATH.search(request.url.path)
        if match:
            rollout_id_var.set(match.group("rollout_id"))

        span = get_current_span()
        if span:
            set_span_attributes(
                span,
                correlation_id=correlation_id,
                http_method=request.method,
                http_url=str(request.url),
            )

        request.state.correlation_id = correlation_id
        request.state.start_time = start_time

        try:
            response = await call_next(request)
        except Exception as e:
            logger.bind(correlation_id=correlation_id).error(
                f"❌ {request.method} {request.url.path} failed: {e}"
            )
            if span:
                record_exception(span, e)
            raise

        process_time = time.time() - start_time
        logger.bind(
            correlation_id=correlation_id,
            latency_ms=round(process_time * 1000, 2),
            status_code=response.status_code,
        ).info(f"{request.method} {request.url.path} → {response.status_code}")

        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        return response
