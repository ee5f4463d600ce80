"""Query provider: PromQL scalar compared against threshold conditions.

Example:
    >>> metric = MetricSpec(
    ...     name="success-rate",
    ...     provider=QueryProviderSpec(
    ...         query='sum(rate(http_requests_total{{app="{app}",code!~"5.."}}[5m]))'
    ...               ' / sum(rate(http_requests_total{{app="{app}"}}[5m])) * 100'
    ...     ),
    ...     success_condition=">= 95",
    ... )
    >>> result = await QueryProvider().invoke(metric, InvocationContext(timeout=10, args={"app": "vote"}))
"""
import asyncio
import math
from typing import Dict, Optional

import httpx
import pybreaker
from loguru import logger

from src.canary.core.circuit_breaker import metrics_backend_breaker
from src.canary.core.config import settings
from src.canary.core.errors import ProviderError
from src.canary.models.analysis import MetricResult
from src.canary.models.schemas import MetricSpec
from src.canary.providers.base import AnalysisProvider, InvocationContext, evaluate_conditions, format_template


class QueryProvider(AnalysisProvider):
    """Runs instant queries against a Prometheus-compatible backend.

    Backend calls go through a shared circuit breaker so an unreachable
    backend fails fast once the breaker opens.
    """
    kind = "query"

    def __init__(
        self,
        prometheus_url: Optional[str] = None,
        timeout: Optional[float] = None,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ):
        """Initialize query provider.

        Args:
            prometheus_url: Default backend URL when a metric sets no address
            timeout: HTTP timeout in seconds
            breaker: Circuit breaker guarding the backend
        """
        self.prometheus_url = (prometheus_url or settings.PROMETHEUS_URL).rstrip("/")
        self.timeout = timeout or settings.METRICS_BACKEND_TIMEOUT
        self.breaker = breaker or metrics_backend_breaker
        self.client = httpx.Client(timeout=self.timeout)

    async def measure(self, metric: MetricSpec, context: InvocationContext) -> MetricResult:
        spec = metric.provider
        query = format_template(spec.query, context.args)
        address = (spec.address or self.prometheus_url).rstrip("/")

        headers = {}
        if spec.auth:
            headers["Authorization"] = f"Bearer {context.credentials.get(spec.auth)}"

        value = await self._fetch_value(address, query, headers, context.timeout)
        phase = evaluate_conditions(metric, value)
        return self.result(metric, phase, value=value, message=f"{metric.success_condition} (value={value:g})")

    async def _fetch_value(self, address: str, query: str, headers: Dict[str, str], timeout: float) -> float:
        """Run the query through the circuit breaker in a worker thread.

        The HTTP timeout never exceeds the invocation timeout.
        """
        try:
            return await asyncio.to_thread(
                self.breaker.call, self._query_backend, address, query, headers, min(timeout, self.timeout)
            )
        except pybreaker.CircuitBreakerError as e:
            raise ProviderError(f"Metrics backend circuit open: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Metrics backend unreachable: {e.__class__.__name__}: {e}") from e

    def _query_backend(self, address: str, query: str, headers: Dict[str, str], timeout: float) -> float:
        """Execute a PromQL instant query and return its scalar value.

        Raises:
            httpx.HTTPError: If the backend cannot be reached
            ProviderError: If the response is malformed or empty
        """
        response = self.client.get(
            f"{address}/api/v1/query", params={"query": query}, headers=headers, timeout=timeout
        )
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError:
            raise ProviderError("Metrics backend returned non-JSON response") from None

        if not isinstance(data, dict) or data.get("status") != "success":
            error = data.get("error", "unknown error") if isinstance(data, dict) else "unexpected payload"
            raise ProviderError(f"Query failed: {error}")

        try:
            payload = data["data"]
            result = payload["result"]
            if payload.get("resultType") == "scalar":
                value_str = result[1]
            else:
                if not result:
                    logger.warning(f"No data returned for query: {query}")
                    raise ProviderError("Query returned no data")
                value_str = result[0]["value"][1]
        except (KeyError, IndexError, TypeError):
            raise ProviderError("Malformed query response") from None

        try:
            value = float(value_str)
        except (ValueError, TypeError):
            raise ProviderError(f"Invalid metric value: {value_str!r}") from None

        if math.isnan(value):
            raise ProviderError("Query returned NaN")
        return value

    async def close(self):
        """Close HTTP client."""
        self.client.close()
