"""Progressive delivery components: state machine, analysis, traffic and rollback."""

from .alerts import AlertNotifier
from .analysis_runner import AnalysisRunner
from .history import AnalysisHistoryStore
from .rollback import RollbackController
from .rollout import ALLOWED_TRANSITIONS, RolloutStateMachine, create_rollout
from .traffic import (
    InMemoryTrafficRouter,
    NginxIngressTrafficRouter,
    TrafficRouter,
    create_traffic_router,
)

__all__ = [
    # Rollout state machine
    "ALLOWED_TRANSITIONS",
    "RolloutStateMachine",
    "create_rollout",
    # Analysis
    "AnalysisRunner",
    "AnalysisHistoryStore",
    # Traffic and rollback
    "TrafficRouter",
    "InMemoryTrafficRouter",
    "NginxIngressTrafficRouter",
    "create_traffic_router",
    "RollbackController",
    "AlertNotifier",
]
