"""Multi-session orchestration: split one task across terminals or run several in parallel."""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from agent_autopilot.bus.queue import OutputBus
from agent_autopilot.config.schema import Config
from agent_autopilot.engine.context import SessionDigest, digest_recent_output, format_digest
from agent_autopilot.engine.decision import DecisionClient
from agent_autopilot.engine.errors import AutopilotError, InsufficientSessionsError
from agent_autopilot.engine.host import TerminalHost
from agent_autopilot.engine.models import ActivityLog, SessionState, TaskDelivery
from agent_autopilot.engine.supervisor import SessionSupervisor
from agent_autopilot.providers.base import DecisionRequest
from agent_autopilot.providers.registry import get_cli_def


class OrchestratorMode(str, Enum):
    SPLIT = "split"  # one master task decomposed across terminals
    PARALLEL = "parallel"  # independent tasks, one per terminal


class OrchestratorOutcome(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class TerminalSpec:
    """One participant requested by the caller."""

    provider: str
    task: str | None = None  # parallel mode; defaults to the master task
    session_id: str | None = None  # attach to a running session instead of creating one
    launch: bool = True  # type the CLI command into a freshly created session


@dataclass(frozen=True)
class Assignment:
    terminal_id: str
    provider: str
    subtask: str


@dataclass(frozen=True)
class OrchestratorPlan:
    """Created once per run; never modified afterwards."""

    mode: OrchestratorMode
    master_task: str
    assignments: tuple[Assignment, ...]
    created_at: float = field(default_factory=time.time)

    def subtask_for(self, terminal_id: str) -> str | None:
        for assignment in self.assignments:
            if assignment.terminal_id == terminal_id:
                return assignment.subtask
        return None


# ── Task decomposition ────────────────────────────────────────────────────────

DECOMPOSE_PROMPT = """You are a task decomposition assistant. Break down a master task into {count} independent sub-tasks that can be worked on in parallel by separate CLI coding agents.

Each sub-task should be:
- Self-contained enough to work on independently
- Specific and actionable
- Roughly equal in scope

Respond ONLY with a JSON object holding one string per terminal:
{{"subtasks": ["sub-task 1", "sub-task 2", ...]}}"""

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def parse_subtasks(raw: str) -> list[str] | None:
    """Accept a JSON array, `{"subtasks": [...]}`, or an array embedded in prose."""
    text = (raw or "").strip()
    candidates = [text]
    embedded = _ARRAY_RE.search(text)
    if embedded:
        candidates.append(embedded.group(0))
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            data = data.get("subtasks") or data.get("tasks")
        if isinstance(data, list):
            items = [str(item).strip() for item in data if str(item).strip()]
            if items:
                return items
    return None


class TaskDecomposer:
    """Asks the decision provider to split a master task into N subtasks."""

    def __init__(self, client: DecisionClient | None):
        self.client = client

    async def decompose(self, master_task: str, count: int) -> list[str] | None:
        if self.client is None or count < 1:
            return None
        request = DecisionRequest(
            system_prompt=DECOMPOSE_PROMPT.format(count=count),
            task_description=master_task,
            output_summary=master_task,
            safety_level=self.client.safety_level.value,
            output_label="=== MASTER TASK ===",
            user_prompt=f"Break this task into {count} parallel sub-tasks.",
        )
        try:
            raw = await self.client.complete_raw(request)
        except AutopilotError as e:
            logger.warning(f"[orchestrator] decomposition failed: {e}")
            return None
        subtasks = parse_subtasks(raw)
        if subtasks is None:
            logger.warning(f"[orchestrator] decomposition answer not usable: {raw[:200]!r}")
            return None
        # Missing entries fall back to the master task; extras are dropped.
        return [subtasks[i] if i < len(subtasks) else master_task for i in range(count)]


# ── Orchestrator ──────────────────────────────────────────────────────────────


_STATE_KINDS = {
    SessionState.COMPLETED: "complete",
    SessionState.STOPPED: "stop",
    SessionState.ERRORED: "error",
}

_OUTCOME_KINDS = {
    OrchestratorOutcome.COMPLETED: "complete",
    OrchestratorOutcome.FAILED: "error",
    OrchestratorOutcome.STOPPED: "stop",
}


def is_globally_complete(states: list[SessionState]) -> bool:
    """True iff at least one session is not errored and every non-errored session completed."""
    remaining = [state for state in states if state != SessionState.ERRORED]
    return bool(remaining) and all(state == SessionState.COMPLETED for state in remaining)


class MultiSessionOrchestrator:
    """
    Owns a set of supervisors working on one orchestration run.

    A single ticker refreshes the sibling digests, records failures and
    evaluates global completion. Supervisors never see each other's buffers,
    only the copied digests.
    """

    def __init__(
        self,
        host: TerminalHost,
        config: Config | None = None,
        decision_client: DecisionClient | None = None,
        bus: OutputBus | None = None,
        decomposer: TaskDecomposer | None = None,
        coordinator_log: ActivityLog | None = None,
    ):
        self.config = config or Config()
        self.host = host
        self.decision_client = decision_client
        self.bus = bus or OutputBus()
        self._owns_bus = bus is None
        self.decomposer = decomposer or TaskDecomposer(decision_client)
        self.log = coordinator_log or ActivityLog(self.config.buffer.activity_log_size, session_id="orchestrator")

        self.plan: OrchestratorPlan | None = None
        self.supervisors: dict[str, SessionSupervisor] = {}
        self.outcome = OrchestratorOutcome.PENDING
        self.started_at: float | None = None
        self.finished_at: float | None = None

        self._created: list[str] = []
        self._digests: dict[str, SessionDigest] = {}
        self._failed: set[str] = set()
        self._task: asyncio.Task | None = None
        self._running = False
        self._ticking = False
        self._done = asyncio.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(
        self,
        mode: OrchestratorMode | str,
        master_task: str,
        terminals: list[TerminalSpec],
        min_sessions: int = 1,
    ) -> OrchestratorPlan:
        """Create sessions, build the plan, start supervisors and the ticker."""
        if self.outcome != OrchestratorOutcome.PENDING:
            raise RuntimeError("Orchestrator already started")
        mode = OrchestratorMode(mode)
        if self._owns_bus:
            self.bus.attach(self.host)

        session_ids = await self._ensure_sessions(terminals, min_sessions)
        participants = [(spec, sid) for spec, sid in zip(terminals, session_ids) if sid is not None]

        self.plan = await self._build_plan(mode, master_task, participants)
        self.log.add("start", f"{mode.value} run with {len(participants)} terminals", detail=master_task[:120])

        for index, (spec, sid) in enumerate(participants):
            subtask = self.plan.subtask_for(sid) or master_task
            cli = get_cli_def(spec.provider)
            launch = None
            if spec.session_id is None and spec.launch:
                launch = self.config.cli.command_for(cli.key) or cli.resolve_command()
            supervisor = SessionSupervisor(
                self.host,
                sid,
                cli,
                subtask,
                config=self.config,
                decision_client=self.decision_client,
                bus=self.bus,
                delivery=TaskDelivery.ON_READY,
                label=f"T{index + 1}:{cli.key}",
                mode=f"{mode.value} orchestration",
                launch_command=launch,
                readiness_timeout_s=self.config.timing.orchestrator_readiness_timeout_s,
                digest_provider=self.digest_for,
                on_state_change=self._on_state_change,
            )
            self.supervisors[sid] = supervisor

        self.started_at = time.time()
        self.outcome = OrchestratorOutcome.RUNNING
        self._refresh_digests()
        await asyncio.gather(*(supervisor.start() for supervisor in self.supervisors.values()))

        self._running = True
        self._task = asyncio.create_task(self._loop(), name="orchestrator-tick")
        logger.info(f"[orchestrator] started {mode.value} run, {len(self.supervisors)} sessions")
        return self.plan

    def stop(self, reason: str = "stop requested") -> None:
        self._finish(OrchestratorOutcome.STOPPED, reason)

    def nudge_all(self) -> None:
        self.log.add("decision", "Nudging all terminals")
        for supervisor in self.supervisors.values():
            supervisor.nudge()

    async def wait(self, timeout: float | None = None) -> OrchestratorOutcome:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.outcome

    async def close_sessions(self) -> None:
        """Stop the terminals this orchestrator created."""
        for sid in self._created:
            try:
                await self.host.stop_session(sid)
            except Exception:
                logger.exception(f"[orchestrator] failed to stop session {sid}")
        self._created.clear()

    def is_complete(self) -> bool:
        return is_globally_complete([s.state for s in self.supervisors.values()])

    def digest_for(self, session_id: str) -> str | None:
        """Sibling digest handed to one session's decision context."""
        digest = format_digest(list(self._digests.values()), exclude=session_id)
        return digest or None

    def status(self) -> list[dict]:
        return [supervisor.status() for supervisor in self.supervisors.values()]

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.timing.tick_interval_s)
                if self._running:
                    self.tick()
            except asyncio.CancelledError:
                break

    def tick(self) -> None:
        """One serialized pass: digests, failures, global completion."""
        if self._ticking or self.outcome != OrchestratorOutcome.RUNNING:
            return
        self._ticking = True
        try:
            self._refresh_digests()
            self._record_failures()
            self._check_completion()
        except Exception:
            logger.exception("[orchestrator] tick failed")
        finally:
            self._ticking = False

    def _refresh_digests(self) -> None:
        split = self.plan is not None and self.plan.mode == OrchestratorMode.SPLIT
        digests: dict[str, SessionDigest] = {}
        for sid, supervisor in self.supervisors.items():
            subtask = self.plan.subtask_for(sid) if self.plan else ""
            recent = digest_recent_output(supervisor.snapshot()) if split else ""
            digests[sid] = SessionDigest(
                session_id=sid,
                label=supervisor.label,
                state=supervisor.state.value,
                subtask=subtask or "",
                recent=recent,
            )
        self._digests = digests

    def _record_failures(self) -> None:
        for sid, supervisor in self.supervisors.items():
            if supervisor.state != SessionState.ERRORED or sid in self._failed:
                continue
            self._failed.add(sid)
            self.log.add("error", f"{supervisor.label} failed; excluded from completion", detail=str(supervisor.error))
            if self.config.orchestrator.reassign_on_error:
                self._reassign(sid)

    def _reassign(self, failed_id: str) -> None:
        subtask = self.plan.subtask_for(failed_id) if self.plan else None
        if not subtask:
            return
        for sid, supervisor in self.supervisors.items():
            if sid != failed_id and not supervisor.is_finished:
                failed_label = self.supervisors[failed_id].label
                supervisor.add_note(
                    f"Terminal {failed_label} failed. When your own work is done, also handle its sub-task: {subtask}"
                )
                self.log.add("decision", f"Reassigned subtask of {failed_label} to {supervisor.label}")
                return
        self.log.add("error", "No running terminal left to take over a failed subtask")

    def _check_completion(self) -> None:
        states = [supervisor.state for supervisor in self.supervisors.values()]
        if is_globally_complete(states):
            self._finish(OrchestratorOutcome.COMPLETED, "all terminals completed")
        elif states and all(state == SessionState.ERRORED for state in states):
            self._finish(OrchestratorOutcome.FAILED, "every terminal errored")

    def _finish(self, outcome: OrchestratorOutcome, reason: str) -> None:
        if self.outcome in (OrchestratorOutcome.COMPLETED, OrchestratorOutcome.FAILED, OrchestratorOutcome.STOPPED):
            return
        self._running = False
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        for supervisor in self.supervisors.values():
            supervisor.stop(f"orchestrator {outcome.value}")
        self.outcome = outcome
        self.finished_at = time.time()
        self.log.add(_OUTCOME_KINDS[outcome], f"Run {outcome.value}: {reason}")
        logger.info(f"[orchestrator] {outcome.value}: {reason}")
        if self._owns_bus:
            self.bus.detach()
        self._done.set()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def _ensure_sessions(self, terminals: list[TerminalSpec], min_sessions: int) -> list[str | None]:
        cli = self.config.cli
        cwd = str(self.config.working_dir) if cli.working_dir else None
        session_ids: list[str | None] = []
        for spec in terminals:
            if spec.session_id is not None:
                session_ids.append(spec.session_id)
                continue
            try:
                sid = await self.host.create_session(cli.cols, cli.rows, cwd)
            except Exception as e:
                logger.warning(f"[orchestrator] could not create a {spec.provider} session: {e}")
                self.log.add("error", f"Could not create a {spec.provider} terminal", detail=str(e))
                session_ids.append(None)
                continue
            self._created.append(sid)
            session_ids.append(sid)

        available = sum(1 for sid in session_ids if sid is not None)
        if available < max(1, min_sessions):
            await self.close_sessions()
            if self._owns_bus:
                self.bus.detach()
            self.outcome = OrchestratorOutcome.FAILED
            self.log.add("error", f"Need {min_sessions} terminals, only {available} available")
            self._done.set()
            raise InsufficientSessionsError(max(1, min_sessions), available)
        return session_ids

    async def _build_plan(
        self,
        mode: OrchestratorMode,
        master_task: str,
        participants: list[tuple[TerminalSpec, str]],
    ) -> OrchestratorPlan:
        if mode == OrchestratorMode.SPLIT:
            subtasks = await self.decomposer.decompose(master_task, len(participants))
            if subtasks is None:
                self.log.add("error", "Failed to decompose task. Using master task for all terminals.")
                subtasks = [master_task] * len(participants)
            else:
                self.log.add("decision", f"Decomposed into {len(subtasks)} sub-tasks")
        else:
            subtasks = [spec.task or master_task for spec, _ in participants]

        assignments = tuple(
            Assignment(terminal_id=sid, provider=spec.provider, subtask=subtask)
            for (spec, sid), subtask in zip(participants, subtasks)
        )
        return OrchestratorPlan(mode=mode, master_task=master_task, assignments=assignments)

    def _on_state_change(self, supervisor: SessionSupervisor, old: SessionState, new: SessionState) -> None:
        if new.is_terminal:
            self.log.add(_STATE_KINDS[new], f"{supervisor.label}: {old.value} -> {new.value}")
