"""Analysis provider contract shared by every provider kind."""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from loguru import logger

from src.canary.core.errors import CredentialError, MetricTimeout, ProviderError
from src.canary.models.analysis import AnalysisPhase, ErrorKind, MetricResult
from src.canary.models.schemas import MetricSpec
from src.canary.monitoring.metrics import ANALYSIS_MEASUREMENTS
from src.canary.monitoring.tracing import tracer, set_span_attributes, record_exception
from src.canary.providers.credentials import ResolvedCredentials


@dataclass
class InvocationContext:
    """Everything a provider may use for one invocation."""
    timeout: float
    credentials: ResolvedCredentials = field(default_factory=ResolvedCredentials)
    args: Dict[str, str] = field(default_factory=dict)


def evaluate_conditions(metric: MetricSpec, value: float) -> AnalysisPhase:
    """Map a scalar measurement onto a verdict.

    A matching failure condition wins. Without a failure condition a value
    that misses the success condition is a failure; with one it is
    inconclusive.
    """
    if metric.failure_condition is not None and metric.failure_condition.evaluate(value):
        return AnalysisPhase.FAILED
    if metric.success_condition is None:
        return AnalysisPhase.SUCCESSFUL
    if metric.success_condition.evaluate(value):
        return AnalysisPhase.SUCCESSFUL
    if metric.failure_condition is None:
        return AnalysisPhase.FAILED
    return AnalysisPhase.INCONCLUSIVE


class AnalysisProvider(ABC):
    kind: str = ""

    async def invoke(self, metric: MetricSpec, context: InvocationContext) -> MetricResult:
        """Measure ``metric`` once. Provider failures come back as Error results."""
        with tracer.start_as_current_span(f"provider.{self.kind}") as span:
            set_span_attributes(span, metric=metric.name, provider=self.kind)
            try:
                result = await self._measure_within_timeout(metric, context)
            except MetricTimeout as e:
                result = self.error_result(metric, ErrorKind.TIMEOUT, str(e))
            except CredentialError as e:
                result = self.error_result(metric, ErrorKind.CREDENTIAL, context.credentials.redact(str(e)))
            except ProviderError as e:
                record_exception(span, e)
                result = self.error_result(metric, ErrorKind.PROVIDER, context.credentials.redact(str(e)))

            set_span_attributes(span, phase=result.phase.value, value=result.value)

        ANALYSIS_MEASUREMENTS.labels(
            metric=metric.name, provider=self.kind, phase=result.phase.value
        ).inc()
        if result.counts_as_error:
            logger.warning(f"Metric {metric.name} ({self.kind}) error: {result.message}")
        else:
            logger.debug(f"Metric {metric.name} ({self.kind}): {result.phase.value} value={result.value}")
        return result

    async def _measure_within_timeout(self, metric: MetricSpec, context: InvocationContext) -> MetricResult:
        try:
            return await asyncio.wait_for(self.measure(metric, context), timeout=context.timeout)
        except asyncio.TimeoutError:
            raise MetricTimeout(f"No verdict within {context.timeout:g}s") from None

    @abstractmethod
    async def measure(self, metric: MetricSpec, context: InvocationContext) -> MetricResult:
        """Take one measurement; raise ProviderError when none can be taken."""
        pass

    async def close(self) -> None:
        """Release clients held by the provider."""
        pass

    def result(
        self,
        metric: MetricSpec,
        phase: AnalysisPhase,
        value: Optional[float] = None,
        message: str = "",
    ) -> MetricResult:
        return MetricResult(metric=metric.name, provider=self.kind, phase=phase, value=value, message=message)

    def error_result(self, metric: MetricSpec, kind: ErrorKind, message: str) -> MetricResult:
        return MetricResult(
            metric=metric.name,
            provider=self.kind,
            phase=AnalysisPhase.ERROR,
            error_kind=kind,
            message=message,
        )


def format_template(template: str, args: Dict[str, str]) -> str:
    """Fill ``{arg}`` placeholders, reporting unknown ones as provider errors."""
    try:
        return template.format(**args)
    except KeyError as e:
        raise ProviderError(f"Missing analysis arg {e.args[0]!r}") from None
    except (IndexError, ValueError) as e:
        raise ProviderError(f"Malformed template: {e}") from None
