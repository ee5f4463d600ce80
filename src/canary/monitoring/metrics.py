import time
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from fastapi import Request, Response

# HTTP metrics for the controller API
REQUEST_COUNT = Counter(
    "controller_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_LATENCY = Histogram(
    "controller_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"]
)

# Rollout metrics
ROLLOUT_WEIGHT = Gauge(
    "rollout_canary_weight",
    "Current canary traffic weight (0-100)",
    ["rollout"]
)

ROLLOUT_TRANSITIONS = Counter(
    "rollout_transitions_total",
    "Rollout status transitions",
    ["from_status", "to_status"]
)

# Analysis metrics
ANALYSIS_MEASUREMENTS = Counter(
    "analysis_measurements_total",
    "Provider measurements by outcome",
    ["metric", "provider", "phase"]
)

ANALYSIS_RUNS = Counter(
    "analysis_runs_total",
    "Completed analysis runs by verdict",
    ["template", "phase"]
)

ANALYSIS_RUN_DURATION = Histogram(
    "analysis_run_duration_seconds",
    "Wall time of an analysis run",
    ["template"]
)

# Rollback metrics
ROLLBACKS_TOTAL = Counter(
    "rollbacks_total",
    "Rollbacks performed",
    ["reason"]
)

ROLLBACK_ESCALATIONS = Counter(
    "rollback_escalations_total",
    "Rollbacks whose traffic reversion could not be confirmed"
)

class PrometheusMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            process_time = time.time() - start_time

            # Skip health checks and scrapes to reduce noise
            if "/health" not in request.url.path and "/metrics" not in request.url.path:
                REQUEST_COUNT.labels(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=status_code
                ).inc()

                REQUEST_LATENCY.labels(
                    method=request.method,
                    endpoint=request.url.path
                ).observe(process_time)

        return response

def metrics_endpoint(request: Request):
    """Endpoint for Prometheus scraping."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
