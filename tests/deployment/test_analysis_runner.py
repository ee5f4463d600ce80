"""Tests for the analysis runner.

Metrics poll a scripted provider with short intervals so every verdict
path (limits, errors, cancellation, hard timeout) runs in milliseconds.
"""
import asyncio

import pytest

from src.canary.deployment.analysis_runner import AnalysisRunner
from src.canary.deployment.history import AnalysisHistoryStore
from src.canary.models.analysis import AnalysisContext, AnalysisPhase, AnalysisRun, ErrorKind
from src.canary.models.schemas import QueryProviderSpec
from src.canary.providers import MappingCredentialResolver, ProviderRegistry
from tests.helpers import ScriptedProvider, make_metric, make_template

S, F, I, E = (
    AnalysisPhase.SUCCESSFUL,
    AnalysisPhase.FAILED,
    AnalysisPhase.INCONCLUSIVE,
    AnalysisPhase.ERROR,
)


@pytest.fixture
def context():
    return AnalysisContext(rollout_id="r-1", revision="v2", step_index=1)


class TestVerdicts:
    """Test aggregation of metric verdicts into a run phase."""

    @pytest.mark.asyncio
    async def test_all_metrics_pass(self, runner, provider, context):
        template = make_template("t", make_metric("a"), make_metric("b"))

        run = await runner.run(template, context)

        assert run.phase == S
        assert run.metric_phases == {"a": S, "b": S}
        assert len(run.results("a")) == 1
        assert run.started_at is not None and run.finished_at is not None

    @pytest.mark.asyncio
    async def test_failure_limit_counts_consecutive_failures(self, runner, provider, context):
        """A pass between failures resets the failure count."""
        provider.script["a"] = [F, S, F, F, S]
        template = make_template("t", make_metric("a", count=5, failure_limit=2, success_limit=3))

        run = await runner.run(template, context)

        assert run.phase == F
        assert [r.phase for r in run.results("a")] == [F, S, F, F]

    @pytest.mark.asyncio
    async def test_success_limit(self, runner, provider, context):
        provider.script["a"] = [S, I, S, S]
        template = make_template("t", make_metric("a", count=4, success_limit=2))

        run = await runner.run(template, context)

        assert run.phase == S
        assert len(run.results("a")) == 4

    @pytest.mark.asyncio
    async def test_exhausted_count_is_inconclusive(self, runner, provider, context):
        provider.script["a"] = [I]
        template = make_template("t", make_metric("a", count=2))

        run = await runner.run(template, context)

        assert run.phase == I
        assert "a" in run.message

    @pytest.mark.asyncio
    async def test_errors_count_as_failures_by_default(self, runner, provider, context):
        provider.script["a"] = [E]
        template = make_template("t", make_metric("a"))

        run = await runner.run(template, context)

        assert run.phase == F
        assert run.results("a")[0].error_kind == ErrorKind.PROVIDER

    @pytest.mark.asyncio
    async def test_error_limit_yields_error_phase(self, runner, provider, context):
        """Repeated provider errors never read as a pass."""
        provider.script["a"] = [E]
        template = make_template("t", make_metric("a", count=5, error_limit=2))

        run = await runner.run(template, context)

        assert run.phase == E
        assert len(run.results("a")) == 2

    def test_failed_wins_over_error(self):
        run = AnalysisRun(template="t", rollout_id="r-1", step_index=0)
        run.metric_phases = {"a": E, "b": F, "c": S}

        phase, message = AnalysisRunner._aggregate(run, asyncio.Event())

        assert phase == F
        assert "'b'" in message
        assert run.failed_metric() == "b"

    @pytest.mark.asyncio
    async def test_decisive_failure_cancels_other_metrics(self, runner, provider, context):
        provider.script["slow"] = [I]
        provider.script["bad"] = [F]
        template = make_template(
            "t",
            make_metric("slow", count=50, interval=0.05),
            make_metric("bad"),
        )

        run = await asyncio.wait_for(runner.run(template, context), timeout=1.0)

        assert run.phase == F
        assert run.metric_phases["slow"] == AnalysisPhase.CANCELLED
        assert len(run.results("slow")) < 50

    @pytest.mark.asyncio
    async def test_missing_credentials_are_errors(self, runner, context):
        metric = make_metric(
            "a",
            provider=QueryProviderSpec(query="up", auth="TOKEN"),
            credentials={"TOKEN": {"name": "absent"}},
            error_limit=1,
        )

        run = await runner.run(make_template("t", metric), context)

        assert run.phase == E
        assert run.results("a")[0].error_kind == ErrorKind.CREDENTIAL


class TestCancellation:
    @pytest.mark.asyncio
    async def test_abort_cancels_run(self, runner, provider, context):
        provider.script["a"] = [I]
        template = make_template("t", make_metric("a", count=100, interval=0.05))
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, abort.set)

        run = await asyncio.wait_for(runner.run(template, context, abort=abort), timeout=1.0)

        assert run.phase == AnalysisPhase.CANCELLED
        assert run.metric_phases["a"] == AnalysisPhase.CANCELLED

    @pytest.mark.asyncio
    async def test_hard_timeout_is_error(self, context):
        """A run that outlives its bound ends as Error, never as Pending."""
        slow = ScriptedProvider(delay=0.5)
        runner = AnalysisRunner(ProviderRegistry({"query": slow}), MappingCredentialResolver({}))
        runner.hard_timeout = lambda template: 0.05

        run = await runner.run(make_template("t", make_metric("a")), context)

        assert run.phase == E
        assert "hard timeout" in run.message
        assert run.metric_phases["a"] == E

    def test_hard_timeout_bound(self, runner):
        template = make_template(
            "t",
            make_metric("a", count=3, interval=10, timeout=5),
            make_metric("b", count=1, interval=1, timeout=1),
        )
        assert runner.hard_timeout(template) == 45 + runner.grace_seconds


class TestArgsAndHistory:
    @pytest.mark.asyncio
    async def test_args_layering(self, runner, provider):
        template = make_template("t", make_metric("a"), service="vote", window="5m")
        context = AnalysisContext(rollout_id="r-1", revision="v2", step_index=0, args={"window": "1m"})

        await runner.run(template, context)

        _, args = provider.calls[0]
        assert args == {"rollout_id": "r-1", "revision": "v2", "service": "vote", "window": "1m"}

    @pytest.mark.asyncio
    async def test_measurements_recorded(self, provider, context, tmp_path):
        history = AnalysisHistoryStore(str(tmp_path))
        runner = AnalysisRunner(ProviderRegistry({"query": provider}), MappingCredentialResolver({}), history=history)

        run = await runner.run(make_template("t", make_metric("a")), context)

        assert await history.summary() == {run.id: 1}
        assert (tmp_path / f"{run.id}.jsonl").exists()

        reloaded = AnalysisHistoryStore(str(tmp_path))
        results = await reloaded.history(run.id)
        assert [r.phase for r in results] == [S]
