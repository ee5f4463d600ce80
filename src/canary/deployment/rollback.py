"""Rollback controller for failed or aborted canary rollouts.

Reverts canary traffic to zero, emits one structured failure report per
rollout and escalates when the routing layer does not confirm the reversion
in time. Reversion is never retried indefinitely.
"""
import asyncio
from typing import Dict, List, Optional

from loguru import logger

from src.canary.core.config import settings
from src.canary.deployment.alerts import AlertNotifier
from src.canary.deployment.traffic import TrafficRouter
from src.canary.models.analysis import AnalysisRun
from src.canary.models.rollout import FailureReport, Rollout, RolloutStatus
from src.canary.monitoring.metrics import ROLLBACKS_TOTAL


class RollbackController:
    """Reverts traffic for a rollout; reads rollout state but never writes it."""

    def __init__(
        self,
        router: TrafficRouter,
        notifier: Optional[AlertNotifier] = None,
        confirm_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        report_results: Optional[int] = None,
    ):
        """Initialize rollback controller.

        Args:
            router: Traffic router used to revert weight
            notifier: Escalation channel for unconfirmed reversions
            confirm_timeout: Seconds to wait for the router to report weight 0
            poll_interval: Seconds between confirmation reads
            report_results: Number of recent measurements kept in a report
        """
        self.router = router
        self.notifier = notifier or AlertNotifier()
        self.confirm_timeout = confirm_timeout if confirm_timeout is not None else settings.ROLLBACK_CONFIRM_TIMEOUT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else settings.ROLLBACK_CONFIRM_POLL_SECONDS
        self.report_results = report_results if report_results is not None else settings.FAILURE_REPORT_RESULTS
        self._reports: Dict[str, FailureReport] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def reports(self) -> List[FailureReport]:
        return list(self._reports.values())

    def report_for(self, rollout_id: str) -> Optional[FailureReport]:
        return self._reports.get(rollout_id)

    def forget(self, rollout_id: str) -> None:
        """Drop the report and lock kept for an evicted rollout."""
        self._reports.pop(rollout_id, None)
        self._locks.pop(rollout_id, None)

    async def rollback(
        self,
        rollout: Rollout,
        reason: str = "",
        analysis_run: Optional[AnalysisRun] = None,
    ) -> RolloutStatus:
        """Revert ``rollout`` to zero canary traffic.

        Args:
            rollout: Rollout to revert
            reason: Why the rollout is being rolled back
            analysis_run: Analysis run whose verdict triggered the rollback

        Returns:
            Status the rollout should settle in (Aborted)
        """
        # Serialise per rollout only; other rollouts revert concurrently
        async with self._locks.setdefault(rollout.id, asyncio.Lock()):
            if rollout.status == RolloutStatus.ABORTED or rollout.id in self._reports:
                logger.debug(f"Rollback of {rollout.id} already done; nothing to do")
                return RolloutStatus.ABORTED

            weight_before = rollout.weight
            logger.warning(f"⏪ Rolling back {rollout.id} ({rollout.application} {rollout.revision}) from {weight_before}%: {reason}")

            reverted = await self._revert(rollout.application)
            report = self._build_report(rollout, reason, analysis_run, weight_before, reverted)
            self._reports[rollout.id] = report

        ROLLBACKS_TOTAL.labels(reason="analysis" if analysis_run else "abort").inc()
        logger.bind(failure_report=report.to_dict()).error(
            f"Rollout {rollout.id} rolled back: metric={report.metric} provider={report.provider} reason={reason}"
        )

        if not reverted:
            await self.notifier.escalate(
                f"Rollback of {rollout.application} {rollout.revision} not confirmed "
                f"within {self.confirm_timeout:g}s",
                report.to_dict(),
            )

        return RolloutStatus.ABORTED

    async def _revert(self, application: str) -> bool:
        """Set canary weight to 0 and wait for the router to confirm it."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout

        try:
            await asyncio.wait_for(self.router.set_weight(application, 0), timeout=self.confirm_timeout)
        except Exception as e:
            logger.error(f"Failed to revert traffic for {application}: {e!r}")
            return False

        while True:
            try:
                if await self.router.get_weight(application) == 0:
                    return True
            except Exception as e:
                logger.warning(f"Could not read back weight for {application}: {e!r}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))

    def _build_report(
        self,
        rollout: Rollout,
        reason: str,
        analysis_run: Optional[AnalysisRun],
        weight_before: int,
        reverted: bool,
    ) -> FailureReport:
        report = FailureReport(
            rollout_id=rollout.id,
            application=rollout.application,
            revision=rollout.revision,
            reason=reason,
            weight_before=weight_before,
            reverted=reverted,
        )
        if analysis_run is not None:
            report.analysis_run_id = analysis_run.id
            report.metric = analysis_run.failed_metric()
            if report.metric:
                report.provider = analysis_run.metric_providers.get(report.metric)
                report.recent_results = analysis_run.results(report.metric)[-self.report_results:]
        return report
