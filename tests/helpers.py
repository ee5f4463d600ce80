"""Shared test doubles and builders."""
import asyncio
from typing import Dict, List

from src.canary.core.errors import ProviderError
from src.canary.models.analysis import AnalysisPhase, MetricResult
from src.canary.models.schemas import AnalysisTemplate, MetricSpec, QueryProviderSpec
from src.canary.providers import AnalysisProvider, InvocationContext


class ScriptedProvider(AnalysisProvider):
    """Returns queued verdicts per metric; the last one repeats once the queue runs dry."""
    kind = "query"

    def __init__(self, delay: float = 0.0):
        self.script: Dict[str, List[AnalysisPhase]] = {}
        self.delay = delay
        self.calls: List[tuple] = []

    async def measure(self, metric: MetricSpec, context: InvocationContext) -> MetricResult:
        self.calls.append((metric.name, dict(context.args)))
        if self.delay:
            await asyncio.sleep(self.delay)
        queue = self.script.get(metric.name) or [AnalysisPhase.SUCCESSFUL]
        phase = queue.pop(0) if len(queue) > 1 else queue[0]
        if phase == AnalysisPhase.ERROR:
            raise ProviderError("backend unavailable")
        return self.result(metric, phase, value=1.0)


class RecordingNotifier:
    def __init__(self):
        self.escalations = []

    async def escalate(self, summary, details):
        self.escalations.append((summary, details))
        return False


def make_metric(name: str, **kwargs) -> MetricSpec:
    fields = {
        "name": name,
        "provider": QueryProviderSpec(query="up"),
        "success_condition": ">= 1",
        "interval": 0.01,
        "count": 3,
        "timeout": 1.0,
    }
    fields.update(kwargs)
    return MetricSpec(**fields)


def make_template(name: str = "success-rate", *metrics: MetricSpec, **args: str) -> AnalysisTemplate:
    return AnalysisTemplate(name=name, metrics=list(metrics) or [make_metric("success-rate")], args=args)


async def wait_for_status(machine, status, timeout: float = 2.0) -> None:
    """Poll a state machine until it reaches ``status``."""
    async def _poll():
        while machine.status != status:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout=timeout)
