"""Probe provider: synthetic HTTP request checked for status and latency."""
import time
from typing import Optional

import httpx

from src.canary.core.errors import ProviderError
from src.canary.models.analysis import AnalysisPhase, MetricResult
from src.canary.models.schemas import MetricSpec
from src.canary.providers.base import AnalysisProvider, InvocationContext, evaluate_conditions, format_template


class ProbeProvider(AnalysisProvider):
    kind = "probe"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(follow_redirects=False)

    async def measure(self, metric: MetricSpec, context: InvocationContext) -> MetricResult:
        spec = metric.provider
        url = format_template(spec.url, context.args)

        headers = dict(spec.headers)
        if spec.auth:
            headers["Authorization"] = f"Bearer {context.credentials.get(spec.auth)}"

        start = time.perf_counter()
        try:
            response = await self.client.request(spec.method, url, headers=headers, timeout=context.timeout)
        except httpx.HTTPError as e:
            raise ProviderError(f"Probe to {url} failed: {e.__class__.__name__}") from e
        latency_ms = (time.perf_counter() - start) * 1000

        if response.status_code not in spec.expected_status:
            return self.result(
                metric,
                AnalysisPhase.FAILED,
                value=latency_ms,
                message=f"status {response.status_code} not in {spec.expected_status}",
            )

        if spec.max_latency_ms is not None and latency_ms > spec.max_latency_ms:
            return self.result(
                metric,
                AnalysisPhase.FAILED,
                value=latency_ms,
                message=f"latency {latency_ms:.1f}ms above {spec.max_latency_ms:g}ms",
            )

        phase = evaluate_conditions(metric, latency_ms)
        return self.result(
            metric, phase, value=latency_ms, message=f"status {response.status_code} in {latency_ms:.1f}ms"
        )

    async def close(self):
        await self.client.aclose()
