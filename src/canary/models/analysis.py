"""Runtime records produced by analysis: measurements and analysis runs."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class AnalysisPhase(str, Enum):
    """Outcome of a single measurement, a metric, or a whole analysis run."""
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    INCONCLUSIVE = "Inconclusive"
    ERROR = "Error"
    CANCELLED = "Cancelled"

    @property
    def completed(self) -> bool:
        return self not in (AnalysisPhase.PENDING, AnalysisPhase.RUNNING)


class ErrorKind(str, Enum):
    """Why a measurement ended in Error rather than a measured verdict."""
    PROVIDER = "provider_error"
    CREDENTIAL = "credential"
    TIMEOUT = "timeout"


@dataclass
class MetricResult:
    """A single provider measurement.

    Never carries credential material: providers redact resolved secrets out
    of ``message`` before building a result.
    """
    metric: str
    provider: str
    phase: AnalysisPhase
    value: Optional[float] = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def counts_as_error(self) -> bool:
        return self.phase == AnalysisPhase.ERROR

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "metric": self.metric,
            "provider": self.provider,
            "phase": self.phase.value,
            "value": self.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricResult":
        """Create from dictionary."""
        return cls(
            metric=data["metric"],
            provider=data["provider"],
            phase=AnalysisPhase(data["phase"]),
            value=data.get("value"),
            error_kind=ErrorKind(data["error_kind"]) if data.get("error_kind") else None,
            message=data.get("message", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class AnalysisContext:
    """What the runner knows about the rollout that requested analysis."""
    rollout_id: str
    revision: str
    step_index: int
    args: Dict[str, str] = field(default_factory=dict)


@dataclass
class AnalysisRun:
    """One execution of an analysis template for one Analysis step."""
    template: str
    rollout_id: str
    step_index: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    phase: AnalysisPhase = AnalysisPhase.PENDING
    metric_phases: Dict[str, AnalysisPhase] = field(default_factory=dict)
    metric_providers: Dict[str, str] = field(default_factory=dict)
    measurements: Dict[str, List[MetricResult]] = field(default_factory=dict)
    message: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def completed(self) -> bool:
        return self.phase.completed

    def results(self, metric: str) -> List[MetricResult]:
        return self.measurements.get(metric, [])

    def failed_metric(self) -> Optional[str]:
        """Name of the first metric that decided a Failed/Error/Inconclusive verdict."""
        for wanted in (AnalysisPhase.FAILED, AnalysisPhase.ERROR, AnalysisPhase.INCONCLUSIVE):
            for name, phase in self.metric_phases.items():
                if phase == wanted:
                    return name
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "template": self.template,
            "rollout_id": self.rollout_id,
            "step_index": self.step_index,
            "phase": self.phase.value,
            "message": self.message,
            "metrics": {
                name: {
                    "phase": phase.value,
                    "provider": self.metric_providers.get(name),
                    "measurements": [r.to_dict() for r in self.results(name)],
                }
                for name, phase in self.metric_phases.items()
            },
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
