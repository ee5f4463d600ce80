"""Rollout manager: owns templates, rollouts and their driving tasks."""
import asyncio
import os
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

import yaml
from loguru import logger

from src.canary.core.config import settings
from src.canary.core.errors import ConfigError, RolloutNotFound
from src.canary.deployment.alerts import AlertNotifier
from src.canary.deployment.analysis_runner import AnalysisRunner
from src.canary.deployment.history import AnalysisHistoryStore
from src.canary.deployment.rollback import RollbackController
from src.canary.deployment.rollout import RolloutStateMachine, create_rollout
from src.canary.deployment.traffic import TrafficRouter, create_traffic_router
from src.canary.models.analysis import AnalysisRun
from src.canary.models.rollout import Rollout, RolloutStatus
from src.canary.models.schemas import AnalysisTemplate, RevisionSubmitted, parse_model
from src.canary.providers import (
    CredentialResolver,
    EnvironmentCredentialResolver,
    FileCredentialResolver,
    ProviderRegistry,
)


class RolloutManager:
    """Accepts revisions and runs one state machine task per rollout.

    A new revision of an application supersedes its live rollout, which is
    aborted and rolled back before the new one shifts traffic.
    """

    def __init__(
        self,
        router: Optional[TrafficRouter] = None,
        credential_resolver: Optional[CredentialResolver] = None,
        providers: Optional[ProviderRegistry] = None,
        history: Optional[AnalysisHistoryStore] = None,
        notifier: Optional[AlertNotifier] = None,
        inconclusive_policy: Optional[str] = None,
        retention: Optional[int] = None,
    ):
        self.router = router or create_traffic_router()
        self.providers = providers or ProviderRegistry()
        self.history = history or AnalysisHistoryStore(settings.ANALYSIS_HISTORY_DIR)
        self.runner = AnalysisRunner(
            self.providers,
            credential_resolver or default_credential_resolver(),
            history=self.history,
        )
        self.rollback_controller = RollbackController(self.router, notifier=notifier)
        self.inconclusive_policy = inconclusive_policy
        self.retention = retention if retention is not None else settings.ROLLOUT_RETENTION

        self.templates: Dict[str, AnalysisTemplate] = {}
        self._machines: Dict[str, RolloutStateMachine] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._live: Dict[str, str] = {}  # application -> rollout id
        self._submit_locks: Dict[str, asyncio.Lock] = {}
        self._finished: Deque[str] = deque()  # rollout ids in completion order

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def register_template(self, template: Any) -> AnalysisTemplate:
        if not isinstance(template, AnalysisTemplate):
            template = parse_model(AnalysisTemplate, template)
        self.templates[template.name] = template
        logger.info(f"Registered analysis template '{template.name}' ({len(template.metrics)} metrics)")
        return template

    def load_templates(self, path: str) -> List[AnalysisTemplate]:
        """Register every template found in the ``*.yaml``/``*.yml`` files under ``path``."""
        directory = Path(path)
        if not directory.is_dir():
            raise ConfigError(f"Templates directory not found: {path}")

        loaded = []
        for file in sorted(directory.glob("*.y*ml")):
            try:
                documents = list(yaml.safe_load_all(file.read_text()))
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {file.name}: {e}") from e
            for document in documents:
                if document:
                    loaded.append(self.register_template(document))
        logger.info(f"📦 Loaded {len(loaded)} analysis template(s) from {path}")
        return loaded

    # ------------------------------------------------------------------
    # Rollouts
    # ------------------------------------------------------------------

    async def submit(self, event: Any) -> Rollout:
        """Create a rollout for a submitted revision and start driving it."""
        if not isinstance(event, RevisionSubmitted):
            event = parse_model(RevisionSubmitted, event)

        rollout = create_rollout(event, self.templates)
        machine = RolloutStateMachine(
            rollout,
            self.templates,
            self.runner,
            self.rollback_controller,
            self.router,
            inconclusive_policy=self.inconclusive_policy,
        )

        # Supersede and register atomically per application
        async with self._submit_locks.setdefault(event.application, asyncio.Lock()):
            if rollout.id in self._machines:
                raise ConfigError(f"Rollout {rollout.id} already exists")

            previous = self._live.get(event.application)
            if previous is not None:
                await self._supersede(previous, event.revision)

            self._machines[rollout.id] = machine
            self._live[event.application] = rollout.id
            self._tasks[rollout.id] = asyncio.create_task(self._drive(machine), name=f"rollout-{rollout.id}")

        logger.info(f"Accepted {event.application} {event.revision} as rollout {rollout.id} (source={event.source})")
        return rollout

    async def _supersede(self, rollout_id: str, revision: str) -> None:
        machine = self._machines[rollout_id]
        if machine.status.terminal:
            return
        logger.warning(f"Rollout {rollout_id} superseded by revision {revision}")
        machine.abort(f"superseded by revision {revision}")
        await asyncio.gather(self._tasks[rollout_id], return_exceptions=True)

    async def _drive(self, machine: RolloutStateMachine) -> RolloutStatus:
        rollout = machine.rollout
        try:
            return await machine.run()
        except Exception as e:
            logger.opt(exception=e).error(f"Rollout {rollout.id} crashed")
            raise
        finally:
            if self._live.get(rollout.application) == rollout.id:
                del self._live[rollout.application]
            self._finished.append(rollout.id)
            self._evict()

    def _evict(self) -> None:
        """Forget the oldest finished rollouts beyond the retention count."""
        while len(self._finished) > self.retention:
            rollout_id = self._finished.popleft()
            self._machines.pop(rollout_id, None)
            self._tasks.pop(rollout_id, None)
            self.rollback_controller.forget(rollout_id)
            logger.debug(f"Evicted finished rollout {rollout_id}")

    def machine(self, rollout_id: str) -> RolloutStateMachine:
        try:
            return self._machines[rollout_id]
        except KeyError:
            raise RolloutNotFound(f"Rollout {rollout_id} not found") from None

    def get(self, rollout_id: str) -> Rollout:
        return self.machine(rollout_id).rollout

    def list(self, application: Optional[str] = None) -> List[Rollout]:
        rollouts = [m.rollout for m in self._machines.values()]
        if application:
            rollouts = [r for r in rollouts if r.application == application]
        return sorted(rollouts, key=lambda r: r.created_at)

    def analysis_runs(self, rollout_id: str) -> List[AnalysisRun]:
        return list(self.get(rollout_id).analysis_runs)

    async def wait(self, rollout_id: str, timeout: Optional[float] = None) -> Rollout:
        """Wait for a rollout to reach Healthy or Aborted."""
        machine = self.machine(rollout_id)
        await asyncio.wait_for(asyncio.shield(self._tasks[rollout_id]), timeout=timeout)
        return machine.rollout

    def promote(self, rollout_id: str) -> Rollout:
        self.machine(rollout_id).promote()
        return self.get(rollout_id)

    def pause(self, rollout_id: str) -> Rollout:
        self.machine(rollout_id).pause()
        return self.get(rollout_id)

    def resume(self, rollout_id: str) -> Rollout:
        self.machine(rollout_id).resume()
        return self.get(rollout_id)

    def abort(self, rollout_id: str, reason: str = "aborted by operator") -> Rollout:
        self.machine(rollout_id).abort(reason)
        return self.get(rollout_id)

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def shutdown(self) -> None:
        """Stop driving rollouts and release provider resources.

        Rollout state is in memory only; live rollouts are left where they are
        rather than rolled back, so a restart does not yank canary traffic.
        """
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            logger.warning(f"Cancelling {len(pending)} live rollout task(s)")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.providers.close()


def default_credential_resolver() -> CredentialResolver:
    if settings.CREDENTIALS_DIR:
        return FileCredentialResolver(settings.CREDENTIALS_DIR)
    return EnvironmentCredentialResolver(os.environ)


rollout_manager = RolloutManager()
