"""Competitive mode: two providers, one task, a score, a winner."""

from __future__ import annotations

import asyncio
import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from loguru import logger

from agent_autopilot.bus.queue import OutputBus
from agent_autopilot.config.schema import Config
from agent_autopilot.engine.classifier import clean_output, drop_sent_markers, split_pending_echo
from agent_autopilot.engine.decision import DecisionClient
from agent_autopilot.engine.errors import InsufficientSessionsError
from agent_autopilot.engine.host import TerminalHost
from agent_autopilot.engine.models import ActivityLog, SessionState, TaskDelivery
from agent_autopilot.engine.supervisor import SessionSupervisor
from agent_autopilot.providers.registry import get_cli_def

REQUIRED_SESSIONS = 2


def compute_score(tests_passed: int, files_created: int, lines_of_code: int, errors_hit: int) -> float:
    """`30*tests + 10*files + 0.1*lines - 5*errors`."""
    return 30 * tests_passed + 10 * files_created + lines_of_code / 10 - 5 * errors_hit


class RaceStatus(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass
class RaceMetrics:
    """Live metrics of one competitor."""

    session_id: str
    provider: str
    order: int
    tests_passed: int = 0
    files_created: int = 0
    lines_of_code: int = 0
    errors_hit: int = 0
    status: RaceStatus = RaceStatus.WAITING
    task_sent_at: float | None = None
    completed_at: float | None = None
    activity: ActivityLog = field(default_factory=lambda: ActivityLog(200))

    @property
    def score(self) -> float:
        return compute_score(self.tests_passed, self.files_created, self.lines_of_code, self.errors_hit)

    def rank_key(self) -> tuple[float, float, float, int]:
        """Higher score first, then earliest completion, earliest task delivery, registration order."""
        return (
            -self.score,
            self.completed_at if self.completed_at is not None else math.inf,
            self.task_sent_at if self.task_sent_at is not None else math.inf,
            self.order,
        )


# Patterns for live metric extraction from cleaned output chunks.
TEST_PASS_RE = re.compile(r"(\d+)\s*(?:tests?\s+)?passed|(\d+)\s*✓|passing\s+\(|(\d+)\s*passing", re.IGNORECASE)
ERROR_RE = re.compile(r"\berror[:\s]|exception:|traceback|✗\s|FAIL\b", re.IGNORECASE)
FILE_CREATED_RE = re.compile(
    r"(?:created?|wrote?|written|saved?)\s+.*\.(?:ts|tsx|js|jsx|py|go|rs|java|css|html|json|md)\b",
    re.IGNORECASE,
)
CODE_LINE_RE = re.compile(r"^\s{0,4}(?:const|let|var|function|class|def |fn |pub |import |export |type |interface )")


class MetricsTracker:
    """Updates one competitor's metrics from its output.

    Only complete lines are scored, once each. The terminal's echo of text
    the engine typed is removed first; an echo still arriving is held back
    until it completes.
    """

    MAX_CARRY_CHARS = 4000

    def __init__(self, metrics: RaceMetrics, sent_texts: Callable[[], Iterable[str]] = tuple):
        self.metrics = metrics
        self._sent_texts = sent_texts
        self._carry = ""

    def feed(self, chunk: str) -> None:
        text = self._carry + clean_output(chunk)
        complete, newline, partial = text.rpartition("\n")
        if not newline:
            self._carry = text[-self.MAX_CARRY_CHARS:]
            self._mark_running()
            return
        sent = tuple(self._sent_texts())
        settled, pending = split_pending_echo(complete, sent)
        self._carry = (f"{pending}\n{partial}" if pending else partial)[-self.MAX_CARRY_CHARS:]
        self._score(drop_sent_markers(settled, sent))
        self._mark_running()

    def _score(self, clean: str) -> None:
        if not clean.strip():
            return
        m = self.metrics
        passed = TEST_PASS_RE.search(clean)
        if passed:
            count = next((int(group) for group in passed.groups() if group), None)
            m.tests_passed = max(m.tests_passed, count if count is not None else m.tests_passed + 1)
        # At most one error per batch of lines.
        if ERROR_RE.search(clean):
            m.errors_hit += 1
        lines = clean.split("\n")
        m.files_created += sum(1 for line in lines if FILE_CREATED_RE.search(line))
        m.lines_of_code += sum(1 for line in lines if CODE_LINE_RE.match(line))

    def _mark_running(self) -> None:
        if self.metrics.status == RaceStatus.WAITING and self.metrics.task_sent_at is not None:
            self.metrics.status = RaceStatus.RUNNING


@dataclass(frozen=True)
class RaceResult:
    reason: str
    winner: RaceMetrics | None
    metrics: tuple[RaceMetrics, ...]
    duration_s: float


class CompetitionCoordinator:
    """
    Races two supervisors on an identical task.

    Each session gets the task once its readiness prompt shows, or after the
    readiness timeout at the latest. Sessions never receive a digest of the
    other competitor. The race ends on stop, on the first completion, or at
    the ceiling.
    """

    def __init__(
        self,
        host: TerminalHost,
        config: Config | None = None,
        decision_client: DecisionClient | None = None,
        bus: OutputBus | None = None,
        coordinator_log: ActivityLog | None = None,
    ):
        self.config = config or Config()
        self.host = host
        self.decision_client = decision_client
        self.bus = bus or OutputBus()
        self._owns_bus = bus is None
        self.log = coordinator_log or ActivityLog(self.config.buffer.activity_log_size, session_id="race")

        self.task: str = ""
        self.metrics: dict[str, RaceMetrics] = {}
        self.supervisors: dict[str, SessionSupervisor] = {}
        self.started_at: float | None = None
        self.result: RaceResult | None = None

        self._created: list[str] = []
        self._unregister: list = []
        self._ceiling_handle: asyncio.TimerHandle | None = None
        self._done = asyncio.Event()

    async def start(
        self,
        task: str,
        providers: tuple[str, str] | list[str],
        session_ids: list[str] | None = None,
        launch: bool = True,
    ) -> None:
        if self.started_at is not None:
            raise RuntimeError("Race already started")
        if len(providers) != REQUIRED_SESSIONS:
            raise ValueError(f"A race needs exactly {REQUIRED_SESSIONS} providers")
        self.task = task
        if self._owns_bus:
            self.bus.attach(self.host)

        ids = list(session_ids) if session_ids else await self._create_sessions()
        if len(ids) < REQUIRED_SESSIONS:
            await self.close_sessions()
            if self._owns_bus:
                self.bus.detach()
            self.log.add("error", f"Race needs {REQUIRED_SESSIONS} terminals, got {len(ids)}")
            raise InsufficientSessionsError(REQUIRED_SESSIONS, len(ids))

        timing = self.config.timing
        for order, (provider, sid) in enumerate(zip(providers, ids)):
            cli = get_cli_def(provider)
            metrics = RaceMetrics(session_id=sid, provider=cli.key, order=order)
            metrics.activity.session_id = f"{cli.key}:{sid}"
            self.metrics[sid] = metrics
            launch_command = None
            if launch and not session_ids:
                launch_command = self.config.cli.command_for(cli.key) or cli.resolve_command()
            supervisor = self.supervisors[sid] = SessionSupervisor(
                self.host,
                sid,
                cli,
                task,
                config=self.config,
                decision_client=self.decision_client,
                bus=self.bus,
                delivery=TaskDelivery.ON_READY,
                label=f"{cli.key}:{sid}",
                mode="race",
                launch_command=launch_command,
                readiness_timeout_s=timing.readiness_timeout_s,
                time_limit_s=timing.race_ceiling_s,
                activity=metrics.activity,
                on_state_change=self._on_state_change,
            )
            tracker = MetricsTracker(metrics, sent_texts=lambda s=supervisor: s.sent_texts)
            self._unregister.append(self.bus.register(sid, tracker.feed))

        self.started_at = time.time()
        self.log.add("start", f"Race started: {' vs '.join(m.provider for m in self.metrics.values())}", detail=task[:120])
        logger.info(f"[race] started with {len(self.supervisors)} competitors")
        loop = asyncio.get_running_loop()
        self._ceiling_handle = loop.call_later(timing.race_ceiling_s, self._on_ceiling)
        await asyncio.gather(*(supervisor.start() for supervisor in self.supervisors.values()))

    def stop(self, reason: str = "stopped") -> None:
        self._end(reason)

    async def wait(self, timeout: float | None = None) -> RaceResult | None:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.result

    async def close_sessions(self) -> None:
        for sid in self._created:
            try:
                await self.host.stop_session(sid)
            except Exception:
                logger.exception(f"[race] failed to stop session {sid}")
        self._created.clear()

    @property
    def is_finished(self) -> bool:
        return self.result is not None

    def leader(self) -> RaceMetrics | None:
        if not self.metrics:
            return None
        return min(self.metrics.values(), key=RaceMetrics.rank_key)

    def scoreboard(self) -> list[RaceMetrics]:
        return sorted(self.metrics.values(), key=RaceMetrics.rank_key)

    # ------------------------------------------------------------------

    async def _create_sessions(self) -> list[str]:
        cli = self.config.cli
        cwd = str(self.config.working_dir) if cli.working_dir else None
        for _ in range(REQUIRED_SESSIONS):
            try:
                self._created.append(await self.host.create_session(cli.cols, cli.rows, cwd))
            except Exception as e:
                logger.warning(f"[race] could not create a terminal: {e}")
                self.log.add("error", "Could not create a terminal", detail=str(e))
                break
        return list(self._created)

    def _on_state_change(self, supervisor: SessionSupervisor, old: SessionState, new: SessionState) -> None:
        metrics = self.metrics.get(supervisor.session_id)
        if metrics is None:
            return
        if new == SessionState.DISPATCHING and metrics.task_sent_at is None and supervisor.task_delivered:
            metrics.task_sent_at = supervisor.task_sent_at or time.time()
            metrics.status = RaceStatus.RUNNING
            self.log.add("input", f"Task sent to {metrics.provider}", detail=_delivery_detail(supervisor))
            return
        if new == SessionState.COMPLETED:
            metrics.status = RaceStatus.DONE
            metrics.completed_at = supervisor.completed_at or time.time()
            if not self.is_finished:
                self._end(f"{metrics.provider} completed")
        elif new == SessionState.ERRORED:
            metrics.status = RaceStatus.ERROR
            self.log.add("error", f"{metrics.provider} errored", detail=str(supervisor.error))
            if all(m.status == RaceStatus.ERROR for m in self.metrics.values()):
                self._end("all competitors errored")

    def _on_ceiling(self) -> None:
        self._ceiling_handle = None
        self._end(f"ceiling of {self.config.timing.race_ceiling_s:.0f}s reached")

    def _end(self, reason: str) -> None:
        if self.result is not None or self.started_at is None:
            return
        if self._ceiling_handle is not None:
            self._ceiling_handle.cancel()
            self._ceiling_handle = None
        # Freeze results before stopping, so stop transitions do not count as completions.
        self.result = RaceResult(
            reason=reason,
            winner=self.leader(),
            metrics=tuple(self.scoreboard()),
            duration_s=time.time() - self.started_at,
        )
        for supervisor in self.supervisors.values():
            supervisor.stop(f"race ended: {reason}")
        for unregister in self._unregister:
            unregister()
        self._unregister.clear()
        if self._owns_bus:
            self.bus.detach()
        winner = self.result.winner
        if winner is not None:
            self.log.add("complete", f"Race over ({reason}); winner {winner.provider} with {winner.score:.1f}")
        else:
            self.log.add("complete", f"Race over ({reason}); no winner")
        logger.info(f"[race] ended: {reason}")
        self._done.set()


def _delivery_detail(supervisor: SessionSupervisor) -> str:
    return "fallback" if supervisor.readiness_timeout is not None else "ready"
