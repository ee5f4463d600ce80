"""Tests for the rollout state machine."""
import asyncio
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from src.canary.core.errors import ConfigError, InvalidTransition
from src.canary.deployment.rollout import ALLOWED_TRANSITIONS, RolloutStateMachine, create_rollout
from src.canary.deployment.traffic import InMemoryTrafficRouter
from src.canary.models.analysis import AnalysisPhase
from src.canary.models.rollout import RolloutStatus
from src.canary.models.schemas import RevisionSubmitted
from tests.helpers import make_metric, make_template, wait_for_status

S, F, I = AnalysisPhase.SUCCESSFUL, AnalysisPhase.FAILED, AnalysisPhase.INCONCLUSIVE


@pytest.fixture
def templates():
    return {
        "success-rate": make_template("success-rate", make_metric("success-rate")),
        "latency": make_template("latency", make_metric("latency", count=50, interval=0.05)),
    }


@pytest.fixture
def build(templates, runner, rollback_controller, router):
    def _build(steps, policy="fail", **event):
        submitted = RevisionSubmitted(application="vote", revision="v2", steps=steps, **event)
        rollout = create_rollout(submitted, templates)
        return RolloutStateMachine(
            rollout, templates, runner, rollback_controller, router, inconclusive_policy=policy
        )
    return _build


def statuses(machine):
    return [entry["to"] for entry in machine.rollout.history]


class TestCreateRollout:
    def test_decreasing_weight_rejected(self, templates):
        event = RevisionSubmitted(application="vote", revision="v2", steps=[{"setWeight": 50}, {"setWeight": 20}])
        with pytest.raises(ConfigError, match="below"):
            create_rollout(event, templates)

    def test_unknown_template_rejected(self, templates):
        event = RevisionSubmitted(
            application="vote", revision="v2", steps=[{"analysis": {"templateName": "nope"}}]
        )
        with pytest.raises(ConfigError, match="unknown analysis template"):
            create_rollout(event, templates)

    def test_initial_state(self, templates):
        event = RevisionSubmitted(application="vote", revision="v2", steps=[{"setWeight": 10}], rollout_id="vote-v2")
        rollout = create_rollout(event, templates)

        assert rollout.id == "vote-v2"
        assert rollout.status == RolloutStatus.PROGRESSING
        assert rollout.weight == 0
        assert rollout.current_step_index == 0


class TestProgression:
    """Test rollouts that run to Healthy."""

    @pytest.mark.asyncio
    async def test_happy_path(self, build, router):
        machine = build([
            {"setWeight": 20},
            {"analysis": {"templateName": "success-rate"}},
            {"setWeight": 50},
            {"pause": {"duration": 0.01}},
            {"analysis": {"templateName": "success-rate"}},
            {"setWeight": 100},
        ])

        status = await machine.run()

        assert status == RolloutStatus.HEALTHY
        assert router.calls == [("vote", 20), ("vote", 50), ("vote", 100)]
        assert machine.rollout.weight == 100
        assert [run.phase for run in machine.rollout.analysis_runs] == [S, S]
        assert statuses(machine) == [
            "AnalysisPending", "Progressing", "Paused", "Progressing",
            "AnalysisPending", "Progressing", "Healthy",
        ]

    @pytest.mark.asyncio
    async def test_promotes_to_full_weight_on_completion(self, build, router):
        machine = build([{"setWeight": 30}])

        assert await machine.run() == RolloutStatus.HEALTHY
        assert router.calls == [("vote", 30), ("vote", 100)]

    @pytest.mark.asyncio
    async def test_every_transition_is_allowed(self, build):
        machine = build([{"setWeight": 10}, {"analysis": {"templateName": "success-rate"}}, {"pause": {"duration": 0}}])
        await machine.run()

        for entry in machine.rollout.history:
            assert RolloutStatus(entry["to"]) in ALLOWED_TRANSITIONS[RolloutStatus(entry["from"])]

    @pytest.mark.asyncio
    async def test_cannot_run_twice(self, build):
        machine = build([{"setWeight": 10}])
        await machine.run()
        with pytest.raises(InvalidTransition):
            await machine.run()


class TestAnalysisFailure:
    @pytest.mark.asyncio
    async def test_failed_analysis_rolls_back(self, build, provider, router):
        provider.script["success-rate"] = [F]
        machine = build([
            {"setWeight": 20},
            {"analysis": {"templateName": "success-rate"}},
            {"setWeight": 50},
        ])

        status = await machine.run()

        assert status == RolloutStatus.ABORTED
        assert router.calls == [("vote", 20), ("vote", 0)]
        assert machine.rollout.weight == 0
        assert statuses(machine)[-2:] == ["Degraded", "Aborted"]

        report = machine.rollout.failure_report
        assert report.metric == "success-rate"
        assert report.provider == "query"
        assert report.weight_before == 20
        assert report.reverted is True
        assert report.analysis_run_id == machine.rollout.analysis_runs[0].id
        assert [r.phase for r in report.recent_results] == [F]

    @pytest.mark.asyncio
    async def test_inconclusive_fails_under_fail_policy(self, build, provider):
        provider.script["success-rate"] = [I]
        machine = build([{"setWeight": 20}, {"analysis": {"templateName": "success-rate"}}])

        assert await machine.run() == RolloutStatus.ABORTED
        assert machine.rollout.analysis_runs[0].phase == I

    @pytest.mark.asyncio
    async def test_inconclusive_pauses_under_pause_policy(self, build, provider):
        provider.script["success-rate"] = [I]
        machine = build([{"setWeight": 20}, {"analysis": {"templateName": "success-rate"}}], policy="pause")

        task = asyncio.create_task(machine.run())
        await wait_for_status(machine, RolloutStatus.PAUSED)
        machine.promote()

        assert await task == RolloutStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_router_failure_rolls_back(self, build, router):
        class FlakyRouter(InMemoryTrafficRouter):
            async def set_weight(self, application, weight):
                if weight == 50:
                    raise RuntimeError("ingress update rejected")
                await super().set_weight(application, weight)

        machine = build([{"setWeight": 20}, {"setWeight": 50}])
        flaky = FlakyRouter()
        machine.router = flaky
        machine.rollback_controller.router = flaky

        assert await machine.run() == RolloutStatus.ABORTED
        assert flaky.weights["vote"] == 0
        assert "ingress update rejected" in machine.rollout.failure_report.reason


class TestControlSignals:
    """Test operator promote, pause, resume and abort."""

    @pytest.mark.asyncio
    async def test_indefinite_pause_waits_for_promote(self, build, router):
        machine = build([{"setWeight": 20}, {"pause": {}}, {"setWeight": 60}])

        task = asyncio.create_task(machine.run())
        await wait_for_status(machine, RolloutStatus.PAUSED)
        await asyncio.sleep(0.05)
        assert machine.status == RolloutStatus.PAUSED
        assert router.calls == [("vote", 20)]

        machine.promote()
        assert await task == RolloutStatus.HEALTHY
        assert router.calls[-1] == ("vote", 100)

    @pytest.mark.asyncio
    async def test_operator_pause_holds_at_step_boundary(self, build, router):
        machine = build([{"setWeight": 20}, {"setWeight": 50}])
        machine.pause()

        task = asyncio.create_task(machine.run())
        await wait_for_status(machine, RolloutStatus.PAUSED)
        assert router.calls == []

        machine.resume()
        assert await task == RolloutStatus.HEALTHY
        assert "paused by operator" in [entry["message"] for entry in machine.rollout.history]

    @pytest.mark.asyncio
    async def test_abort_during_pause(self, build, router):
        machine = build([{"setWeight": 20}, {"pause": {}}, {"setWeight": 60}])

        task = asyncio.create_task(machine.run())
        await wait_for_status(machine, RolloutStatus.PAUSED)
        machine.abort("bad dashboards")

        assert await task == RolloutStatus.ABORTED
        assert router.calls[-1] == ("vote", 0)
        report = machine.rollout.failure_report
        assert report.reason == "bad dashboards"
        assert report.metric is None

    @pytest.mark.asyncio
    async def test_abort_during_analysis_cancels_it(self, build):
        machine = build([{"setWeight": 20}, {"analysis": {"templateName": "latency"}}])
        machine.runner.providers.get("query").script["latency"] = [I]

        task = asyncio.create_task(machine.run())
        await wait_for_status(machine, RolloutStatus.ANALYSIS_PENDING)
        machine.abort()
        machine.abort()

        assert await asyncio.wait_for(task, timeout=1.0) == RolloutStatus.ABORTED
        assert machine.rollout.analysis_runs[0].phase == AnalysisPhase.CANCELLED

    @pytest.mark.asyncio
    async def test_abort_after_abort_is_noop(self, build, rollback_controller):
        machine = build([{"setWeight": 20}])
        machine.abort()
        await machine.run()

        machine.abort()
        assert machine.status == RolloutStatus.ABORTED
        assert len(rollback_controller.reports) == 1

    @pytest.mark.asyncio
    async def test_invalid_signals(self, build):
        machine = build([{"setWeight": 20}])
        with pytest.raises(InvalidTransition):
            machine.promote()
        with pytest.raises(InvalidTransition):
            machine.resume()

        await machine.run()
        with pytest.raises(InvalidTransition):
            machine.abort()
        with pytest.raises(InvalidTransition):
            machine.pause()


class TestSettling:
    """Every rollout ends Healthy or Aborted."""

    @pytest.mark.asyncio
    async def test_abort_during_final_weight_change(self, build):
        entered = asyncio.Event()

        class SlowRouter(InMemoryTrafficRouter):
            async def set_weight(self, application, weight):
                if weight == 100:
                    entered.set()
                    await asyncio.sleep(0.1)
                await super().set_weight(application, weight)

        machine = build([{"setWeight": 20}])
        slow = SlowRouter()
        machine.router = slow
        machine.rollback_controller.router = slow

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(entered.wait(), timeout=1.0)
        machine.abort("operator abort")

        assert await task == RolloutStatus.ABORTED
        assert slow.weights["vote"] == 0
        assert machine.rollout.failure_report.reason == "operator abort"
        assert machine.rollout.failure_report.weight_before == 100

    @pytest.mark.asyncio
    async def test_rollback_error_still_aborts(self, build, provider):
        provider.script["success-rate"] = [F]
        machine = build([{"setWeight": 20}, {"analysis": {"templateName": "success-rate"}}])
        machine.rollback_controller.rollback = AsyncMock(side_effect=RuntimeError("ingress API down"))

        with pytest.raises(RuntimeError):
            await machine.run()

        assert machine.status == RolloutStatus.ABORTED
        assert machine.rollout.weight == 0
        assert statuses(machine)[-2:] == ["Degraded", "Aborted"]
        assert machine.rollout.history[-1]["message"] == "rollback did not complete"

    @pytest.mark.asyncio
    async def test_weight_gauge_removed_when_finished(self, build):
        machine = build([{"setWeight": 20}])

        await machine.run()

        assert REGISTRY.get_sample_value("rollout_canary_weight", {"rollout": machine.rollout.id}) is None
