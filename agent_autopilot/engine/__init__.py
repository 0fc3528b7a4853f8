"""Supervision engine: classification, fast path, decisions and the session state machine."""

from agent_autopilot.engine.models import (
    ActivityEntry,
    ActivityLog,
    Category,
    ClassificationResult,
    Decision,
    DecisionAction,
    DecisionSource,
    SafetyLevel,
    SessionState,
    SessionStats,
    TaskDelivery,
)
from agent_autopilot.engine.errors import (
    AutopilotError,
    DecisionNetworkError,
    DecisionParseError,
    InsufficientSessionsError,
    MaxRetriesExceeded,
    ReadinessTimeout,
    SessionProcessExited,
)
from agent_autopilot.engine.classifier import classify, classify_text, clean_output, is_ready
from agent_autopilot.engine.decision import DecisionClient, parse_decision
from agent_autopilot.engine.fast_path import FastPathRouter, is_dangerous
from agent_autopilot.engine.host import TerminalHost
from agent_autopilot.engine.retry import BackoffPolicy, RetryController
from agent_autopilot.engine.supervisor import SessionSupervisor

__all__ = [
    "ActivityEntry",
    "ActivityLog",
    "AutopilotError",
    "BackoffPolicy",
    "Category",
    "ClassificationResult",
    "Decision",
    "DecisionAction",
    "DecisionClient",
    "DecisionNetworkError",
    "DecisionParseError",
    "DecisionSource",
    "FastPathRouter",
    "InsufficientSessionsError",
    "MaxRetriesExceeded",
    "ReadinessTimeout",
    "RetryController",
    "SafetyLevel",
    "SessionProcessExited",
    "SessionState",
    "SessionStats",
    "SessionSupervisor",
    "TaskDelivery",
    "TerminalHost",
    "classify",
    "classify_text",
    "clean_output",
    "is_dangerous",
    "is_ready",
    "parse_decision",
]
