"""Rollout state records."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from src.canary.models.analysis import AnalysisRun, MetricResult
from src.canary.models.schemas import AnalysisStep, Step


class RolloutStatus(str, Enum):
    PROGRESSING = "Progressing"
    PAUSED = "Paused"
    ANALYSIS_PENDING = "AnalysisPending"
    DEGRADED = "Degraded"
    ABORTED = "Aborted"
    HEALTHY = "Healthy"

    @property
    def terminal(self) -> bool:
        return self in (RolloutStatus.HEALTHY, RolloutStatus.ABORTED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FailureReport:
    """Structured account of why a rollout was rolled back."""
    rollout_id: str
    application: str
    revision: str
    reason: str
    weight_before: int
    reverted: bool  # routing layer confirmed weight 0
    metric: Optional[str] = None
    provider: Optional[str] = None
    analysis_run_id: Optional[str] = None
    recent_results: List[MetricResult] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "rollout_id": self.rollout_id,
            "application": self.application,
            "revision": self.revision,
            "reason": self.reason,
            "weight_before": self.weight_before,
            "reverted": self.reverted,
            "metric": self.metric,
            "provider": self.provider,
            "analysis_run_id": self.analysis_run_id,
            "recent_results": [r.to_dict() for r in self.recent_results],
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Rollout:
    """One progressive delivery of a revision.

    Mutated only by its RolloutStateMachine.
    """
    application: str
    revision: str
    steps: List[Step]
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    args: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None
    current_step_index: int = 0
    weight: int = 0
    status: RolloutStatus = RolloutStatus.PROGRESSING
    message: str = ""
    analysis_runs: List[AnalysisRun] = field(default_factory=list)
    failure_report: Optional[FailureReport] = None
    history: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def analysis_step_count(self) -> int:
        return sum(1 for step in self.steps if isinstance(step, AnalysisStep))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "application": self.application,
            "revision": self.revision,
            "source": self.source,
            "status": self.status.value,
            "message": self.message,
            "weight": self.weight,
            "current_step_index": self.current_step_index,
            "steps": [step.model_dump() for step in self.steps],
            "analysis_runs": [
                {"id": run.id, "template": run.template, "step_index": run.step_index, "phase": run.phase.value}
                for run in self.analysis_runs
            ],
            "failure_report": self.failure_report.to_dict() if self.failure_report else None,
            "history": list(self.history),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
