"""Core data types shared by the supervisor, orchestrator and race coordinator."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from loguru import logger


class SessionState(Enum):
    """Lifecycle of one supervised terminal session."""

    IDLE = "idle"
    OBSERVING = "observing"
    FAST_PATH_DISPATCH = "fast_path_dispatch"
    AWAITING_DECISION = "awaiting_decision"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.STOPPED, SessionState.ERRORED})

# A session is in at most one of these at a time; evaluation only starts from OBSERVING.
BUSY_STATES = frozenset(
    {SessionState.FAST_PATH_DISPATCH, SessionState.AWAITING_DECISION, SessionState.DISPATCHING}
)


class Category(Enum):
    """What the recent terminal output says the assistant is doing."""

    READINESS_PROMPT = "readiness_prompt"
    WORKING_INDICATOR = "working_indicator"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETION_SIGNAL = "completion_signal"
    UNCLASSIFIED = "unclassified"


class SafetyLevel(str, Enum):
    """How much the engine may approve without asking the decision provider."""

    SAFE = "safe"
    MODERATE = "moderate"
    YOLO = "yolo"


class DecisionAction(str, Enum):
    WAIT = "wait"
    SEND = "send"
    DONE = "done"


class DecisionSource(str, Enum):
    FAST_PATH = "fast_path"
    LLM = "llm"


class TaskDelivery(str, Enum):
    """How the supervisor hands the task to the assistant."""

    IMMEDIATE = "immediate"  # send on start
    ON_READY = "on_ready"  # wait for the readiness prompt, fail open after a timeout
    TAKEOVER = "takeover"  # task already running, never send it


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of one classifier evaluation. Never persisted."""

    category: Category
    matched_rule: str | None = None
    confidence: float = 1.0
    also_matched: frozenset[Category] = frozenset()

    def has(self, category: Category) -> bool:
        return self.category == category or category in self.also_matched


@dataclass(frozen=True)
class Decision:
    """Next action for a session, from the fast path or the decision provider."""

    action: DecisionAction
    text: str | None = None
    source: DecisionSource = DecisionSource.LLM
    latency_ms: float = 0.0

    def __post_init__(self) -> None:
        # Fast-path answers may be a bare Enter; decision-provider sends may not.
        if self.action == DecisionAction.SEND and self.text is None:
            raise ValueError("send decision requires text")
        if self.action == DecisionAction.SEND and self.source == DecisionSource.LLM and not self.text.strip():
            raise ValueError("send decision requires non-empty text")
        if self.action != DecisionAction.SEND and self.text:
            object.__setattr__(self, "text", None)


@dataclass
class SessionStats:
    """Counters shown next to a session while it runs."""

    fast_path_decisions: int = 0
    llm_decisions: int = 0
    retries: int = 0
    dispatches: int = 0
    files_written: int = 0
    files_read: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    errors_encountered: int = 0

    def update(self, values: dict[str, int]) -> None:
        for key, value in values.items():
            if hasattr(self, key):
                setattr(self, key, value)


# ── Activity log ──────────────────────────────────────────────────────────────

ActivityListener = Callable[["ActivityEntry"], None]


@dataclass(frozen=True)
class ActivityEntry:
    """One line of the human-readable decision trail."""

    kind: str
    message: str
    detail: str | None = None
    session_id: str | None = None
    timestamp: float = field(default_factory=time.time)

    def format(self) -> str:
        stamp = time.strftime("%H:%M:%S", time.localtime(self.timestamp))
        who = f" {self.session_id}" if self.session_id else ""
        text = f"{stamp}{who} [{self.kind}] {self.message}"
        if self.detail:
            text += f" ({self.detail})"
        return text


class ActivityLog:
    """Bounded, append-only decision trail with optional listeners."""

    def __init__(self, max_entries: int = 500, session_id: str | None = None) -> None:
        self.session_id = session_id
        self._entries: deque[ActivityEntry] = deque(maxlen=max(1, max_entries))
        self._listeners: list[ActivityListener] = []

    def add(self, kind: str, message: str, detail: str | None = None) -> ActivityEntry:
        entry = ActivityEntry(kind=kind, message=message, detail=detail, session_id=self.session_id)
        self._entries.append(entry)
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("[activity] listener failed")
        return entry

    def add_listener(self, listener: ActivityListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    @property
    def entries(self) -> list[ActivityEntry]:
        return list(self._entries)

    @property
    def last(self) -> ActivityEntry | None:
        return self._entries[-1] if self._entries else None

    def kinds(self) -> list[str]:
        return [entry.kind for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)
