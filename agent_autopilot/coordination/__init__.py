"""Multi-session coordination: orchestrated runs and races."""

from agent_autopilot.coordination.orchestrator import (
    MultiSessionOrchestrator,
    OrchestratorMode,
    OrchestratorOutcome,
    OrchestratorPlan,
    TaskDecomposer,
    TerminalSpec,
)
from agent_autopilot.coordination.race import CompetitionCoordinator, RaceMetrics, RaceResult, compute_score

__all__ = [
    "CompetitionCoordinator",
    "MultiSessionOrchestrator",
    "OrchestratorMode",
    "OrchestratorOutcome",
    "OrchestratorPlan",
    "RaceMetrics",
    "RaceResult",
    "TaskDecomposer",
    "TerminalSpec",
    "compute_score",
]
