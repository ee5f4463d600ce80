"""Rollout state machine.

Drives one rollout through its ordered steps. It is the only writer of the
rollout's status and weight; the analysis runner and the rollback controller
report back by return value.

    Progressing --Pause step / operator pause--> Paused --elapsed / promote / resume--> Progressing
    Progressing --Analysis step--> AnalysisPending --Successful--> Progressing
    AnalysisPending --Failed / Error / Inconclusive(fail)--> Degraded --reverted--> Aborted
    AnalysisPending --Inconclusive(pause)--> Paused
    Progressing --last step done, weight 100--> Healthy
"""
import asyncio
import contextlib
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Tuple

from loguru import logger

from src.canary.core.config import settings
from src.canary.core.errors import ConfigError, InvalidTransition
from src.canary.core.logging import rollout_id as rollout_id_var
from src.canary.deployment.analysis_runner import AnalysisRunner
from src.canary.deployment.rollback import RollbackController
from src.canary.deployment.traffic import TrafficRouter
from src.canary.models.analysis import AnalysisContext, AnalysisPhase, AnalysisRun
from src.canary.models.rollout import Rollout, RolloutStatus
from src.canary.models.schemas import AnalysisStep, AnalysisTemplate, PauseStep, RevisionSubmitted, SetWeightStep
from src.canary.monitoring.metrics import ROLLOUT_TRANSITIONS, ROLLOUT_WEIGHT
from src.canary.monitoring.tracing import tracer, set_span_attributes

ALLOWED_TRANSITIONS = {
    RolloutStatus.PROGRESSING: {
        RolloutStatus.PAUSED,
        RolloutStatus.ANALYSIS_PENDING,
        RolloutStatus.DEGRADED,
        RolloutStatus.HEALTHY,
    },
    RolloutStatus.PAUSED: {RolloutStatus.PROGRESSING, RolloutStatus.DEGRADED},
    RolloutStatus.ANALYSIS_PENDING: {
        RolloutStatus.PROGRESSING,
        RolloutStatus.PAUSED,
        RolloutStatus.DEGRADED,
    },
    RolloutStatus.DEGRADED: {RolloutStatus.ABORTED},
    RolloutStatus.HEALTHY: set(),
    RolloutStatus.ABORTED: set(),
}

# (reason, analysis run that triggered it)
Failure = Tuple[str, Optional[AnalysisRun]]


def create_rollout(
    event: RevisionSubmitted,
    templates: Mapping[str, AnalysisTemplate],
    rollout_id: Optional[str] = None,
) -> Rollout:
    """Validate a submitted revision and build its rollout.

    Raises:
        ConfigError: If weights decrease or an analysis template is unknown
    """
    weight = 0
    for index, step in enumerate(event.steps):
        if isinstance(step, SetWeightStep):
            if step.weight < weight:
                raise ConfigError(
                    f"Step {index}: weight {step.weight} is below the preceding weight {weight}",
                    context={"step": index},
                )
            weight = step.weight
        elif isinstance(step, AnalysisStep) and step.template not in templates:
            raise ConfigError(
                f"Step {index}: unknown analysis template '{step.template}'",
                context={"step": index, "template": step.template},
            )

    kwargs = {"id": rollout_id or event.rollout_id} if (rollout_id or event.rollout_id) else {}
    return Rollout(
        application=event.application,
        revision=event.revision,
        steps=list(event.steps),
        args=dict(event.args),
        source=event.source,
        **kwargs,
    )


class RolloutStateMachine:
    """Runs a single rollout to Healthy or Aborted."""

    def __init__(
        self,
        rollout: Rollout,
        templates: Mapping[str, AnalysisTemplate],
        runner: AnalysisRunner,
        rollback_controller: RollbackController,
        router: TrafficRouter,
        inconclusive_policy: Optional[str] = None,
    ):
        """Initialize state machine.

        Args:
            rollout: Rollout to drive; must be freshly created
            templates: Analysis templates by name
            runner: Analysis runner for Analysis steps
            rollback_controller: Reverts traffic on failure or abort
            router: Traffic router receiving weight changes
            inconclusive_policy: "fail" degrades, "pause" waits for an operator
        """
        self.rollout = rollout
        self.templates: Dict[str, AnalysisTemplate] = dict(templates)
        self.runner = runner
        self.rollback_controller = rollback_controller
        self.router = router
        self.inconclusive_policy = inconclusive_policy or settings.INCONCLUSIVE_POLICY
        if self.inconclusive_policy not in ("fail", "pause"):
            raise ConfigError(f"Unknown inconclusive policy: {self.inconclusive_policy}")

        self._abort = asyncio.Event()
        self._signal = asyncio.Event()
        self._abort_reason = ""
        self._held = False
        self._promoted = False
        self._started = False
        self._analysis_in_flight: Optional[int] = None

    # ------------------------------------------------------------------
    # Control signals
    # ------------------------------------------------------------------

    @property
    def status(self) -> RolloutStatus:
        return self.rollout.status

    @property
    def held(self) -> bool:
        return self._held

    def promote(self) -> None:
        """Force-advance past the current pause."""
        if self.status != RolloutStatus.PAUSED:
            raise InvalidTransition(f"Cannot promote a rollout that is {self.status.value}")
        self._promoted = True
        self._held = False
        self._signal.set()

    def pause(self) -> None:
        """Hold the rollout at the next step boundary until resumed or promoted."""
        if self.status.terminal or self.status == RolloutStatus.DEGRADED:
            raise InvalidTransition(f"Cannot pause a rollout that is {self.status.value}")
        self._held = True
        self._signal.set()

    def resume(self) -> None:
        """Release an operator hold."""
        if not self._held:
            raise InvalidTransition("Rollout is not held by an operator")
        self._held = False
        self._signal.set()

    def abort(self, reason: str = "aborted by operator") -> None:
        """Roll back. No-op once the rollout is already rolling back or aborted."""
        if self.status == RolloutStatus.HEALTHY:
            raise InvalidTransition("Cannot abort a Healthy rollout")
        if self.status in (RolloutStatus.DEGRADED, RolloutStatus.ABORTED) or self._abort.is_set():
            return
        self._abort_reason = reason
        self._abort.set()
        self._signal.set()

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def run(self) -> RolloutStatus:
        """Drive the rollout to a terminal status and return it."""
        if self._started:
            raise InvalidTransition(f"Rollout {self.rollout.id} is already running")
        self._started = True
        token = rollout_id_var.set(self.rollout.id)

        try:
            with tracer.start_as_current_span("rollout") as span:
                set_span_attributes(
                    span, rollout_id=self.rollout.id, application=self.rollout.application, revision=self.rollout.revision
                )
                await self._drive()
                set_span_attributes(span, status=self.rollout.status.value, weight=self.rollout.weight)
            return self.rollout.status
        finally:
            if self.rollout.status.terminal:
                with contextlib.suppress(KeyError):
                    ROLLOUT_WEIGHT.remove(self.rollout.id)
            rollout_id_var.reset(token)

    async def _drive(self) -> None:
        logger.info(
            f"🚀 Rollout {self.rollout.id} started: {self.rollout.application} {self.rollout.revision} "
            f"({len(self.rollout.steps)} steps, {self.rollout.analysis_step_count} analysis)"
        )
        failure = await self._advance()
        if failure is None:
            failure = await self._complete()
        if failure is not None:
            await self._roll_back(*failure)

    async def _advance(self) -> Optional[Failure]:
        steps = self.rollout.steps
        while self.rollout.current_step_index < len(steps):
            if not self._abort.is_set():
                await self._hold_at_boundary()
            if self._abort.is_set():
                return self._abort_reason, None

            index = self.rollout.current_step_index
            step = steps[index]
            logger.debug(f"Step {index}: {step.type}")

            if isinstance(step, SetWeightStep):
                failure = await self._set_weight(step.weight)
            elif isinstance(step, PauseStep):
                failure = await self._pause(step)
            else:
                failure = await self._analyze(step, index)
            if failure is not None:
                return failure

            self.rollout.current_step_index += 1
        return None

    async def _complete(self) -> Optional[Failure]:
        if self._abort.is_set():
            return self._abort_reason, None
        if self.rollout.weight < 100:
            failure = await self._set_weight(100)
            if failure is not None:
                return failure
            # abort may arrive while the router applies the final weight
            if self._abort.is_set():
                return self._abort_reason, None
        self._transition(RolloutStatus.HEALTHY, "rollout complete")
        logger.info(f"✅ Rollout {self.rollout.id} is Healthy at 100%")
        return None

    async def _set_weight(self, weight: int) -> Optional[Failure]:
        if weight < self.rollout.weight:
            raise InvalidTransition(
                f"Weight may not decrease while progressing ({self.rollout.weight} -> {weight})"
            )
        try:
            await self.router.set_weight(self.rollout.application, weight)
        except Exception as e:
            logger.opt(exception=e).error(f"Traffic router failed to apply {weight}%")
            return f"traffic router failed to apply weight {weight}: {e}", None

        self.rollout.weight = weight
        self.rollout.updated_at = datetime.now(timezone.utc)
        ROLLOUT_WEIGHT.labels(rollout=self.rollout.id).set(weight)
        logger.info(f"Canary weight for {self.rollout.application} set to {weight}%")
        return None

    async def _pause(self, step: PauseStep) -> Optional[Failure]:
        duration = "until promoted" if step.indefinite else f"for {step.duration:g}s"
        self._transition(RolloutStatus.PAUSED, f"pause {duration}")
        self._promoted = False

        await self._wait(lambda: self._promoted, timeout=step.duration)
        if not self._abort.is_set() and not self._promoted:
            await self._wait(lambda: not self._held)
        if self._abort.is_set():
            return self._abort_reason, None

        self._promoted = False
        self._transition(RolloutStatus.PROGRESSING, "pause complete")
        return None

    async def _hold_at_boundary(self) -> None:
        if not self._held:
            return
        self._transition(RolloutStatus.PAUSED, "paused by operator")
        await self._wait(lambda: not self._held)
        if self._abort.is_set():
            return
        self._promoted = False
        self._transition(RolloutStatus.PROGRESSING, "resumed by operator")

    async def _analyze(self, step: AnalysisStep, index: int) -> Optional[Failure]:
        if self._analysis_in_flight is not None:
            raise InvalidTransition(f"Analysis for step {self._analysis_in_flight} is still in flight")

        template = self.templates[step.template]
        self._transition(RolloutStatus.ANALYSIS_PENDING, f"analysis '{template.name}'")
        context = AnalysisContext(
            rollout_id=self.rollout.id,
            revision=self.rollout.revision,
            step_index=index,
            args={"application": self.rollout.application, **self.rollout.args, **step.args},
        )

        self._analysis_in_flight = index
        try:
            run = await self.runner.run(template, context, abort=self._abort)
        finally:
            self._analysis_in_flight = None
        self.rollout.analysis_runs.append(run)

        if run.phase == AnalysisPhase.SUCCESSFUL:
            self._transition(RolloutStatus.PROGRESSING, f"analysis '{template.name}' successful")
            return None
        if run.phase == AnalysisPhase.CANCELLED:
            return self._abort_reason, run
        if run.phase == AnalysisPhase.INCONCLUSIVE and self.inconclusive_policy == "pause":
            return await self._await_judgement(run)
        return f"analysis '{template.name}' {run.phase.value.lower()}: {run.message}", run

    async def _await_judgement(self, run: AnalysisRun) -> Optional[Failure]:
        """Inconclusive analysis under the pause policy: an operator decides."""
        self._transition(RolloutStatus.PAUSED, f"analysis '{run.template}' inconclusive; awaiting promote or abort")
        self._promoted = False
        await self._wait(lambda: self._promoted)
        if self._abort.is_set():
            return self._abort_reason, run
        self._promoted = False
        self._transition(RolloutStatus.PROGRESSING, "inconclusive analysis promoted by operator")
        return None

    async def _roll_back(self, reason: str, run: Optional[AnalysisRun]) -> None:
        self._transition(RolloutStatus.DEGRADED, reason)
        status = RolloutStatus.ABORTED
        message = "rollback did not complete"
        try:
            status = await self.rollback_controller.rollback(self.rollout, reason, run)
            message = "traffic reverted to stable"
        finally:
            self.rollout.weight = 0
            self.rollout.failure_report = self.rollback_controller.report_for(self.rollout.id)
            self._transition(status, message)

    async def _wait(self, predicate: Callable[[], bool], timeout: Optional[float] = None) -> None:
        """Wait until ``predicate`` holds, abort is signalled, or ``timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not predicate() and not self._abort.is_set():
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return
            self._signal.clear()
            try:
                await asyncio.wait_for(self._signal.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return

    def _transition(self, new: RolloutStatus, message: str = "") -> None:
        old = self.rollout.status
        if new == old:
            self.rollout.message = message or self.rollout.message
            return
        if new not in ALLOWED_TRANSITIONS[old]:
            raise InvalidTransition(f"Rollout {self.rollout.id}: {old.value} -> {new.value} is not allowed")

        now = datetime.now(timezone.utc)
        self.rollout.status = new
        self.rollout.message = message
        self.rollout.updated_at = now
        self.rollout.history.append({
            "from": old.value,
            "to": new.value,
            "step": self.rollout.current_step_index,
            "message": message,
            "at": now.isoformat(),
        })
        ROLLOUT_TRANSITIONS.labels(from_status=old.value, to_status=new.value).inc()
        logger.info(f"Rollout {self.rollout.id}: {old.value} → {new.value} {message}".rstrip())
