"""Analysis runner: polls providers for every metric of a template.

Each metric gets its own polling task. The runner coroutine is the only
writer of metric phases and of the run verdict; a decisive Failed/Error
metric cancels the remaining tasks. The whole run is bounded by a hard
timeout derived from the metrics' count, interval and timeout.

Example:
    >>> runner = AnalysisRunner(ProviderRegistry(), MappingCredentialResolver({}))
    >>> run = await runner.run(template, AnalysisContext("vote-7f3a", "v2", step_index=1))
    >>> run.phase
    <AnalysisPhase.SUCCESSFUL: 'Successful'>
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from loguru import logger

from src.canary.core.config import settings
from src.canary.core.errors import CredentialError
from src.canary.deployment.history import AnalysisHistoryStore
from src.canary.models.analysis import (
    AnalysisContext,
    AnalysisPhase,
    AnalysisRun,
    ErrorKind,
    MetricResult,
)
from src.canary.models.schemas import AnalysisTemplate, MetricSpec
from src.canary.monitoring.metrics import ANALYSIS_MEASUREMENTS, ANALYSIS_RUNS, ANALYSIS_RUN_DURATION
from src.canary.monitoring.tracing import tracer, set_span_attributes
from src.canary.providers import CredentialResolver, InvocationContext, ProviderRegistry

DECISIVE_FAILURES = (AnalysisPhase.FAILED, AnalysisPhase.ERROR)


class AnalysisRunner:
    """Runs analysis templates and reports a verdict by return value."""

    def __init__(
        self,
        providers: ProviderRegistry,
        credential_resolver: CredentialResolver,
        history: Optional[AnalysisHistoryStore] = None,
        grace_seconds: Optional[float] = None,
    ):
        """Initialize analysis runner.

        Args:
            providers: Provider instance per kind
            credential_resolver: Capability that turns SecretRefs into values
            history: Store receiving every measurement
            grace_seconds: Slack added to the computed hard timeout
        """
        self.providers = providers
        self.credential_resolver = credential_resolver
        self.history = history or AnalysisHistoryStore()
        self.grace_seconds = settings.ANALYSIS_GRACE_SECONDS if grace_seconds is None else grace_seconds

    def hard_timeout(self, template: AnalysisTemplate) -> float:
        return max(metric.max_duration for metric in template.metrics) + self.grace_seconds

    async def run(
        self,
        template: AnalysisTemplate,
        context: AnalysisContext,
        abort: Optional[asyncio.Event] = None,
    ) -> AnalysisRun:
        """Evaluate ``template`` until every metric resolves or one fails.

        Args:
            template: Analysis template to evaluate
            context: Rollout the analysis belongs to
            abort: Set by the owner to cancel the run

        Returns:
            The resolved AnalysisRun; its phase is never Pending or Running
        """
        abort = abort or asyncio.Event()
        run = AnalysisRun(template=template.name, rollout_id=context.rollout_id, step_index=context.step_index)
        for metric in template.metrics:
            run.metric_phases[metric.name] = AnalysisPhase.PENDING
            run.metric_providers[metric.name] = metric.provider.kind
            run.measurements[metric.name] = []

        args = {"rollout_id": context.rollout_id, "revision": context.revision}
        args.update(template.args)
        args.update(context.args)

        deadline = self.hard_timeout(template)
        run.phase = AnalysisPhase.RUNNING
        run.started_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        logger.info(
            f"Analysis {run.id} started: template={template.name} rollout={context.rollout_id} "
            f"metrics={[m.name for m in template.metrics]}"
        )

        with tracer.start_as_current_span("analysis_run") as span:
            set_span_attributes(span, run_id=run.id, template=template.name, rollout_id=context.rollout_id)
            try:
                await asyncio.wait_for(self._evaluate(template, run, args, abort), timeout=deadline)
            except asyncio.TimeoutError:
                self._mark_unfinished(run, AnalysisPhase.ERROR)
                run.phase = AnalysisPhase.ERROR
                run.message = f"Analysis exceeded hard timeout of {deadline:g}s"
            set_span_attributes(span, phase=run.phase.value)

        run.finished_at = datetime.now(timezone.utc)
        ANALYSIS_RUNS.labels(template=template.name, phase=run.phase.value).inc()
        ANALYSIS_RUN_DURATION.labels(template=template.name).observe(time.perf_counter() - started)

        log = logger.info if run.phase == AnalysisPhase.SUCCESSFUL else logger.warning
        log(f"Analysis {run.id} finished: {run.phase.value} {run.message}".rstrip())
        return run

    async def _evaluate(
        self,
        template: AnalysisTemplate,
        run: AnalysisRun,
        args: Dict[str, str],
        abort: asyncio.Event,
    ) -> None:
        tasks = {
            asyncio.create_task(self._poll_metric(metric, run, args, abort)): metric.name
            for metric in template.metrics
        }
        for name in tasks.values():
            run.metric_phases[name] = AnalysisPhase.RUNNING

        abort_watch = asyncio.create_task(abort.wait())
        pending: Set[asyncio.Task] = set(tasks) | {abort_watch}
        decisive: Optional[str] = None

        try:
            while pending - {abort_watch} and decisive is None and not abort.is_set():
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is abort_watch:
                        continue
                    name = tasks[task]
                    run.metric_phases[name] = self._task_phase(task, name)
                    if run.metric_phases[name] in DECISIVE_FAILURES and decisive is None:
                        decisive = name
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._mark_unfinished(run, AnalysisPhase.CANCELLED)
        run.phase, run.message = self._aggregate(run, abort)

    def _task_phase(self, task: asyncio.Task, name: str) -> AnalysisPhase:
        if task.cancelled():
            return AnalysisPhase.CANCELLED
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error(f"Polling for metric {name} crashed")
            return AnalysisPhase.ERROR
        return task.result()

    @staticmethod
    def _mark_unfinished(run: AnalysisRun, phase: AnalysisPhase) -> None:
        for name, current in run.metric_phases.items():
            if not current.completed:
                run.metric_phases[name] = phase

    @staticmethod
    def _aggregate(run: AnalysisRun, abort: asyncio.Event):
        phases = run.metric_phases
        for verdict in DECISIVE_FAILURES:
            names = [name for name, phase in phases.items() if phase == verdict]
            if names:
                return verdict, f"metric '{names[0]}' {verdict.value.lower()}"
        if abort.is_set():
            return AnalysisPhase.CANCELLED, "analysis aborted"
        if all(phase == AnalysisPhase.SUCCESSFUL for phase in phases.values()):
            return AnalysisPhase.SUCCESSFUL, ""
        undecided = sorted(name for name, phase in phases.items() if phase != AnalysisPhase.SUCCESSFUL)
        return AnalysisPhase.INCONCLUSIVE, f"no decisive verdict for {', '.join(undecided)}"

    async def _poll_metric(
        self,
        metric: MetricSpec,
        run: AnalysisRun,
        args: Dict[str, str],
        abort: asyncio.Event,
    ) -> AnalysisPhase:
        """Poll one metric until it is decided or ``count`` is exhausted."""
        results = run.measurements[metric.name]
        failures = errors = successes = 0

        for attempt in range(metric.count):
            if attempt and await self._wait_interval(abort, metric.interval):
                return AnalysisPhase.CANCELLED
            if abort.is_set():
                return AnalysisPhase.CANCELLED

            result = await self._measure(metric, args)
            results.append(result)
            await self.history.record(run.id, result)

            if result.phase == AnalysisPhase.SUCCESSFUL:
                successes += 1
                failures = errors = 0
            elif result.phase == AnalysisPhase.FAILED:
                failures += 1
                successes = errors = 0
            elif result.phase == AnalysisPhase.ERROR:
                successes = 0
                if metric.error_limit is None:
                    failures += 1
                else:
                    errors += 1
            else:
                successes = 0

            if failures >= metric.failure_limit:
                return AnalysisPhase.FAILED
            if metric.error_limit is not None and errors >= metric.error_limit:
                return AnalysisPhase.ERROR
            if successes >= metric.success_limit:
                return AnalysisPhase.SUCCESSFUL

        return AnalysisPhase.INCONCLUSIVE

    @staticmethod
    async def _wait_interval(abort: asyncio.Event, interval: float) -> bool:
        """Sleep for one interval; True when the abort signal arrived instead."""
        try:
            await asyncio.wait_for(abort.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _measure(self, metric: MetricSpec, args: Dict[str, str]) -> MetricResult:
        provider = self.providers.get(metric.provider.kind)
        try:
            credentials = self.credential_resolver.resolve_bindings(metric.credentials)
        except CredentialError as e:
            ANALYSIS_MEASUREMENTS.labels(
                metric=metric.name, provider=provider.kind, phase=AnalysisPhase.ERROR.value
            ).inc()
            logger.warning(f"Metric {metric.name}: {e}")
            return provider.error_result(metric, ErrorKind.CREDENTIAL, str(e))

        context = InvocationContext(timeout=metric.timeout, credentials=credentials, args=args)
        return await provider.invoke(metric, context)
