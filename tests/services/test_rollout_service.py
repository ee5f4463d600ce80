"""Tests for the rollout manager."""
import asyncio

import pytest

from src.canary.core.errors import ConfigError, RolloutNotFound
from src.canary.deployment.traffic import InMemoryTrafficRouter
from src.canary.models.rollout import RolloutStatus
from src.canary.providers import MappingCredentialResolver, ProviderRegistry
from src.canary.services.rollout_service import RolloutManager
from tests.helpers import RecordingNotifier, ScriptedProvider, make_metric, make_template, wait_for_status

TEMPLATE_YAML = """
name: success-rate
args:
  service: vote
metrics:
  - name: success-rate
    interval: 0.01
    count: 2
    provider:
      kind: query
      query: 'sum(rate(http_requests_total{{service="{service}"}}[5m]))'
    success_condition: ">= 95"
"""

# Query metrics need a success condition
INVALID_TEMPLATE_YAML = """
name: broken
metrics:
  - name: success-rate
    provider:
      kind: query
      query: up
"""


@pytest.fixture
def manager():
    manager = RolloutManager(
        router=InMemoryTrafficRouter(),
        credential_resolver=MappingCredentialResolver({}),
        providers=ProviderRegistry({"query": ScriptedProvider()}),
        notifier=RecordingNotifier(),
    )
    manager.register_template(make_template("success-rate", make_metric("success-rate")))
    return manager


class TestTemplates:
    def test_load_templates_from_directory(self, tmp_path):
        (tmp_path / "success-rate.yaml").write_text(TEMPLATE_YAML)
        (tmp_path / "notes.txt").write_text("not a template")
        manager = RolloutManager(router=InMemoryTrafficRouter(), credential_resolver=MappingCredentialResolver({}))

        loaded = manager.load_templates(str(tmp_path))

        assert [t.name for t in loaded] == ["success-rate"]
        template = manager.templates["success-rate"]
        assert template.args == {"service": "vote"}
        assert template.metrics[0].count == 2

    def test_invalid_template_rejected(self, tmp_path):
        (tmp_path / "bad.yaml").write_text(INVALID_TEMPLATE_YAML)
        manager = RolloutManager(router=InMemoryTrafficRouter(), credential_resolver=MappingCredentialResolver({}))

        with pytest.raises(ConfigError) as exc_info:
            manager.load_templates(str(tmp_path))
        assert exc_info.value.context["errors"]

    def test_missing_directory(self, tmp_path):
        manager = RolloutManager(router=InMemoryTrafficRouter(), credential_resolver=MappingCredentialResolver({}))
        with pytest.raises(ConfigError):
            manager.load_templates(str(tmp_path / "absent"))


class TestRollouts:
    @pytest.mark.asyncio
    async def test_submit_and_wait(self, manager):
        rollout = await manager.submit({
            "application": "vote",
            "revision": "v2",
            "source": "ci/build-42",
            "steps": [{"setWeight": 25}, {"analysis": {"templateName": "success-rate"}}],
        })

        finished = await manager.wait(rollout.id, timeout=2.0)

        assert finished.status == RolloutStatus.HEALTHY
        assert manager.router.weights["vote"] == 100
        assert len(manager.analysis_runs(rollout.id)) == 1

    @pytest.mark.asyncio
    async def test_invalid_submission(self, manager):
        with pytest.raises(ConfigError):
            await manager.submit({"application": "vote", "revision": "v2", "steps": [{"setWeight": 500}]})
        assert manager.list() == []

    @pytest.mark.asyncio
    async def test_duplicate_rollout_id(self, manager):
        event = {"application": "vote", "revision": "v2", "steps": [{"pause": {}}], "rollout_id": "vote-v2"}
        await manager.submit(event)
        with pytest.raises(ConfigError, match="already exists"):
            await manager.submit(event)
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_new_revision_supersedes_live_rollout(self, manager):
        first = await manager.submit({"application": "vote", "revision": "v2", "steps": [{"setWeight": 20}, {"pause": {}}]})
        await wait_for_status(manager.machine(first.id), RolloutStatus.PAUSED)

        second = await manager.submit({"application": "vote", "revision": "v3", "steps": [{"setWeight": 50}]})

        assert first.status == RolloutStatus.ABORTED
        assert first.failure_report.reason == "superseded by revision v3"
        assert (await manager.wait(second.id, timeout=2.0)).status == RolloutStatus.HEALTHY
        assert manager.router.calls == [("vote", 20), ("vote", 0), ("vote", 50), ("vote", 100)]

    @pytest.mark.asyncio
    async def test_control_signals(self, manager):
        rollout = await manager.submit({"application": "cart", "revision": "v9", "steps": [{"setWeight": 10}, {"pause": {}}]})
        await wait_for_status(manager.machine(rollout.id), RolloutStatus.PAUSED)

        manager.promote(rollout.id)

        assert (await manager.wait(rollout.id, timeout=2.0)).status == RolloutStatus.HEALTHY

    def test_unknown_rollout(self, manager):
        with pytest.raises(RolloutNotFound):
            manager.get("missing")
        with pytest.raises(RolloutNotFound):
            manager.abort("missing")

    @pytest.mark.asyncio
    async def test_list_filters_by_application(self, manager):
        await manager.submit({"application": "vote", "revision": "v2", "steps": [{"pause": {}}]})
        await manager.submit({"application": "cart", "revision": "v7", "steps": [{"pause": {}}]})

        assert [r.application for r in manager.list("cart")] == ["cart"]
        assert len(manager.list()) == 2
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_stops_live_rollouts(self, manager):
        rollout = await manager.submit({"application": "vote", "revision": "v2", "steps": [{"pause": {}}]})
        await asyncio.sleep(0.01)

        await manager.shutdown()

        assert manager.active_count == 0
        assert manager.get(rollout.id).status == RolloutStatus.PAUSED


class TestSupersessionAndRetention:
    @pytest.mark.asyncio
    async def test_concurrent_submissions_leave_one_live_rollout(self, manager):
        first = await manager.submit({"application": "vote", "revision": "v1", "steps": [{"setWeight": 20}, {"pause": {}}]})
        await wait_for_status(manager.machine(first.id), RolloutStatus.PAUSED)

        await asyncio.gather(
            manager.submit({"application": "vote", "revision": "v2", "steps": [{"pause": {}}]}),
            manager.submit({"application": "vote", "revision": "v3", "steps": [{"pause": {}}]}),
        )

        live = [r.revision for r in manager.list("vote") if not r.status.terminal]
        assert live == ["v3"]
        assert [r.status for r in manager.list("vote")][:2] == [RolloutStatus.ABORTED, RolloutStatus.ABORTED]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_finished_rollouts_are_evicted(self, manager):
        manager.retention = 2
        aborted = await manager.submit({"application": "vote", "revision": "v2", "steps": [{"pause": {}}]})
        await wait_for_status(manager.machine(aborted.id), RolloutStatus.PAUSED)
        manager.abort(aborted.id)
        await manager.wait(aborted.id, timeout=2.0)
        assert manager.rollback_controller.report_for(aborted.id) is not None

        for application in ("cart", "search"):
            rollout = await manager.submit({"application": application, "revision": "v2", "steps": [{"setWeight": 10}]})
            await manager.wait(rollout.id, timeout=2.0)
        await asyncio.sleep(0)

        with pytest.raises(RolloutNotFound):
            manager.get(aborted.id)
        assert manager.rollback_controller.report_for(aborted.id) is None
        assert sorted(r.application for r in manager.list()) == ["cart", "search"]

    @pytest.mark.asyncio
    async def test_live_rollouts_are_never_evicted(self, manager):
        manager.retention = 0
        live = await manager.submit({"application": "vote", "revision": "v2", "steps": [{"pause": {}}]})
        done = await manager.submit({"application": "cart", "revision": "v2", "steps": [{"setWeight": 10}]})
        await asyncio.gather(manager._tasks[done.id], return_exceptions=True)

        assert manager.get(live.id).status == RolloutStatus.PAUSED
        with pytest.raises(RolloutNotFound):
            manager.get(done.id)
        await manager.shutdown()
