"""Per-session supervision: watch output, answer prompts, stop when done."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Callable, Coroutine

from loguru import logger

from agent_autopilot.bus.queue import OutputBus
from agent_autopilot.config.schema import Config
from agent_autopilot.engine.buffer import SessionBuffer
from agent_autopilot.engine.classifier import (
    classify_text,
    drop_sent_markers,
    is_ready,
    last_lines,
    make_sent_marker,
    parse_stats,
)
from agent_autopilot.engine.context import DecisionContext, is_semantically_duplicate
from agent_autopilot.engine.decision import DecisionClient
from agent_autopilot.engine.errors import (
    ClassificationAmbiguous,
    MaxRetriesExceeded,
    ReadinessTimeout,
    SessionProcessExited,
)
from agent_autopilot.engine.fast_path import FastPathRouter, is_dangerous
from agent_autopilot.engine.host import TerminalHost
from agent_autopilot.engine.models import (
    BUSY_STATES,
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
from agent_autopilot.engine.retry import BackoffPolicy, RetryController, RetryState
from agent_autopilot.engine.signal_filter import filter_noise_lines
from agent_autopilot.providers.registry import CLIDef, get_cli_def

NUDGE_TEXT = "Please continue with the task."

# Cleaned chars considered when classifying.
TAIL_CHARS = 8000

StateListener = Callable[["SessionSupervisor", SessionState, SessionState], None]
DigestProvider = Callable[[str], "str | None"]

_FINISH_KINDS = {
    SessionState.COMPLETED: "complete",
    SessionState.STOPPED: "stop",
    SessionState.ERRORED: "error",
}

_CATEGORY_KINDS = {
    Category.WORKING_INDICATOR: ("working", "Assistant is working"),
    Category.WAITING_FOR_INPUT: ("waiting", "Assistant is waiting for input"),
    Category.READINESS_PROMPT: ("ready", "Assistant is at its prompt"),
}


class SessionSupervisor:
    """
    State machine supervising one terminal session.

    Output arrives through `feed()` (registered on the output bus), is
    appended to the session buffer and re-classified after an idle timer.
    Confirmation prompts are answered from the fast-path table; everything
    else that waits for input goes to the decision client, one call at a
    time. The supervisor only ever writes to its own session.
    """

    def __init__(
        self,
        host: TerminalHost,
        session_id: str,
        cli: CLIDef | str,
        task: str,
        *,
        config: Config | None = None,
        decision_client: DecisionClient | None = None,
        router: FastPathRouter | None = None,
        retry: RetryController | None = None,
        bus: OutputBus | None = None,
        delivery: TaskDelivery | str = TaskDelivery.ON_READY,
        label: str | None = None,
        mode: str = "single session",
        launch_command: str | None = None,
        readiness_timeout_s: float | None = None,
        time_limit_s: float | None = None,
        activity: ActivityLog | None = None,
        digest_provider: DigestProvider | None = None,
        on_state_change: StateListener | None = None,
    ):
        self.config = config or Config()
        timing = self.config.timing
        self.host = host
        self.session_id = session_id
        self.cli = get_cli_def(cli) if isinstance(cli, str) else cli
        self.task = task
        self.label = label or f"{self.cli.key}:{session_id}"
        self.mode = mode
        self.delivery = TaskDelivery(delivery)
        self.launch_command = launch_command
        self.safety_level = SafetyLevel(self.config.safety_level)
        self.decision_client = decision_client
        self.router = router or FastPathRouter()
        self.retry = retry or RetryController(
            BackoffPolicy(
                base_delay_s=self.config.retry.base_delay_s,
                max_delay_s=self.config.retry.max_delay_s,
                max_attempts=self.config.retry.max_attempts,
            )
        )
        self.readiness_timeout_s = readiness_timeout_s if readiness_timeout_s is not None else timing.readiness_timeout_s
        self.time_limit_s = time_limit_s if time_limit_s is not None else timing.time_limit_s
        self.digest_provider = digest_provider

        self.buffer = SessionBuffer(self.config.buffer.capacity_chars)
        self.activity = activity or ActivityLog(self.config.buffer.activity_log_size, session_id=self.label)
        self.stats = SessionStats()
        self.notes: list[str] = []

        self.state = SessionState.IDLE
        self.error: BaseException | None = None
        self.readiness_timeout: ReadinessTimeout | None = None
        self.started_at: float | None = None
        self.task_sent_at: float | None = None
        self.completed_at: float | None = None
        self.last_activity_at = time.monotonic()

        self._listeners: list[StateListener] = [on_state_change] if on_state_change else []
        self._bus = bus
        self._owns_bus = bus is None
        self._unregister: Callable[[], None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._finished = asyncio.Event()

        self._version = 0
        self._delivered = self.delivery == TaskDelivery.TAKEOVER
        self._deliver_pending: str | None = None
        self._readiness_fired = False
        self._awaiting_fresh = False
        self._dispatch_offset = 0
        self._dispatch_seq = 0
        self._sent_texts: deque[str] = deque(maxlen=10)
        self._recent_suggestions: deque[str] = deque(maxlen=5)
        self._last_sent: str | None = None
        self._consecutive_waits = 0
        self._waiting_since: float | None = None
        self._decision_count = 0
        self._last_category: Category | None = None

        self._idle_handle: asyncio.TimerHandle | None = None
        self._readiness_handle: asyncio.TimerHandle | None = None
        self._time_limit_handle: asyncio.TimerHandle | None = None
        self._decision_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Begin observing; deliver the task according to `delivery`."""
        if self.state != SessionState.IDLE:
            raise RuntimeError(f"Supervisor for {self.session_id} already started")
        self._loop = asyncio.get_running_loop()
        self.started_at = time.time()
        if self._bus is None:
            self._bus = OutputBus()
            self._bus.attach(self.host)
        self._unregister = self._bus.register(self.session_id, self.feed, self.process_exited)
        self._transition(SessionState.OBSERVING)
        self.activity.add("start", f"Supervising {self.cli.name}", detail=self.delivery.value)
        logger.info(f"[supervisor] {self.label}: started ({self.delivery.value})")
        self._time_limit_handle = self._loop.call_later(self.time_limit_s, self._on_time_limit)

        if self.launch_command:
            self._sent_texts.append(self.launch_command)
            self.activity.add("input", f"Launching: {self.launch_command}")
            try:
                await self.host.write_text(self.launch_command, self.session_id)
            except SessionProcessExited as e:
                self._fail(e)
                return
            if self.state.is_terminal:
                return

        if self.delivery == TaskDelivery.TAKEOVER:
            self._seed_from_snapshot()
            self._schedule_evaluation(self.config.timing.idle_waiting_s)
        elif self.delivery == TaskDelivery.IMMEDIATE:
            self._deliver_task("immediate")
        else:
            self._readiness_handle = self._loop.call_later(self.readiness_timeout_s, self._on_readiness_timeout)
            if is_ready(self._fresh_text(), self.cli):
                self._deliver_task("ready")

    def stop(self, reason: str = "stop requested") -> None:
        """Cancel every timer and pending call; nothing is written after this returns."""
        self._finish(SessionState.STOPPED, reason)

    async def wait(self, timeout: float | None = None) -> SessionState:
        """Wait until the session reaches a terminal state."""
        await asyncio.wait_for(self._finished.wait(), timeout)
        return self.state

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def add_note(self, note: str) -> None:
        """Extra context for every later decision call."""
        self.notes.append(note)
        self.activity.add("decision", "Context note added", detail=note[:120])

    def nudge(self) -> None:
        """Deliver a pending task now, clear wait counters and re-check immediately."""
        if self.state.is_terminal or self.state == SessionState.IDLE:
            return
        self.activity.add("decision", "Nudged")
        self._consecutive_waits = 0
        self._waiting_since = None
        if not self._delivered:
            self._deliver_task("nudge")
            return
        if self.state == SessionState.OBSERVING:
            self._awaiting_fresh = False
            self._schedule_evaluation(0)

    def process_exited(self, exit_code: int | None = None) -> None:
        if self.state.is_terminal:
            return
        self._fail(SessionProcessExited(self.session_id, exit_code))

    # ── Read side ─────────────────────────────────────────────────────────

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal

    @property
    def task_delivered(self) -> bool:
        return self._delivered

    @property
    def sent_texts(self) -> tuple[str, ...]:
        """Recent non-empty texts this supervisor typed, oldest first."""
        return tuple(self._sent_texts)

    @property
    def decision_in_flight(self) -> bool:
        return self._decision_task is not None and not self._decision_task.done()

    def snapshot(self, tail_chars: int = 4000) -> str:
        return self.buffer.snapshot(tail_chars)

    def refresh_stats(self) -> SessionStats:
        self.stats.update(parse_stats(self.buffer.text))
        return self.stats

    def status(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "label": self.label,
            "provider": self.cli.key,
            "state": self.state.value,
            "task_sent": self._delivered,
            "stats": vars(self.stats).copy(),
        }

    # ── Output ────────────────────────────────────────────────────────────

    def feed(self, chunk: str) -> None:
        """Output handler. Appends and schedules; never blocks."""
        if self.state.is_terminal or self.state == SessionState.IDLE:
            return
        if not self.buffer.append(chunk):
            return
        self.last_activity_at = time.monotonic()
        if self.state in BUSY_STATES:
            # Coalesced: whatever resolves the busy state re-classifies.
            return
        if (
            not self._delivered
            and self.delivery == TaskDelivery.ON_READY
            and is_ready(self._fresh_text(), self.cli)
        ):
            self._deliver_task("ready")
            return
        self._schedule_evaluation(self._delay_for_output())

    def _fresh_text(self) -> str:
        """Cleaned output since the last dispatch."""
        return self.buffer.since(self._dispatch_offset)[-TAIL_CHARS:]

    def _has_fresh_output(self) -> bool:
        return bool(last_lines(drop_sent_markers(self._fresh_text(), self._sent_texts), 1))

    def _classify(self, idle_for_s: float | None) -> ClassificationResult:
        return classify_text(
            self._fresh_text(),
            self.cli,
            sent_texts=self._sent_texts,
            tail_lines=self.config.classifier.tail_lines,
            idle_for_s=idle_for_s,
            idle_gap_s=self.config.timing.idle_waiting_s,
            completion_window_chars=self.config.classifier.completion_window_chars,
        )

    def _delay_for_output(self) -> float:
        timing = self.config.timing
        result = self._classify(idle_for_s=None)
        if result.matched_rule == "confirmation":
            return timing.fast_path_settle_s
        if _is_working(result):
            return timing.idle_working_s
        return timing.idle_waiting_s

    def _seed_from_snapshot(self) -> None:
        try:
            snapshot = self.host.snapshot(self.session_id)
        except SessionProcessExited as e:
            self._fail(e)
            return
        if snapshot:
            self.buffer.append(snapshot)
        self.activity.add("start", "Taking over running session", detail=f"{len(snapshot)} chars seeded")

    # ── Evaluation ────────────────────────────────────────────────────────

    def _schedule_evaluation(self, delay: float) -> None:
        if self._loop is None or self.state.is_terminal:
            return
        self._cancel_idle()
        self._idle_handle = self._loop.call_later(max(0.0, delay), self._evaluate)

    def _evaluate(self) -> None:
        self._idle_handle = None
        if self.state != SessionState.OBSERVING:
            return
        if self._awaiting_fresh:
            if not self._has_fresh_output():
                return
            self._awaiting_fresh = False

        timing = self.config.timing
        idle_for = time.monotonic() - self.last_activity_at
        result = self._classify(idle_for)
        self.refresh_stats()
        self._note_category(result)

        if not self._delivered:
            # Readiness phase: only startup dialogs are answered.
            if result.matched_rule == "confirmation":
                self._try_fast_path(result)
            return

        if _is_working(result):
            if result.matched_rule == "output_arriving":
                delay = max(timing.idle_waiting_s - idle_for, timing.fast_path_settle_s)
            else:
                delay = timing.idle_working_s
            self._schedule_evaluation(delay)
            return

        if result.has(Category.COMPLETION_SIGNAL) and result.category != Category.WAITING_FOR_INPUT:
            self._complete(f"completion signal ({result.matched_rule})")
            return

        if result.matched_rule == "confirmation" and self._try_fast_path(result):
            return

        if result.category in (Category.WAITING_FOR_INPUT, Category.READINESS_PROMPT):
            if result.matched_rule == "idle_gap":
                logger.debug(f"[supervisor] {self.label}: {ClassificationAmbiguous('no rule matched after idle gap')}")
            self._request_decision(result)
            return

        self._schedule_evaluation(timing.idle_waiting_s)

    def _note_category(self, result: ClassificationResult) -> None:
        category = Category.WORKING_INDICATOR if _is_working(result) else result.category
        if category == self._last_category:
            return
        self._last_category = category
        entry = _CATEGORY_KINDS.get(category)
        if entry is not None:
            self.activity.add(entry[0], entry[1], detail=result.matched_rule)

    # ── Fast path ─────────────────────────────────────────────────────────

    def _try_fast_path(self, result: ClassificationResult) -> bool:
        cleaned = drop_sent_markers(self._fresh_text(), self._sent_texts)
        match = self.router.route(cleaned, self.cli.key, result, self.safety_level)
        if match is None:
            return False
        self._transition(SessionState.FAST_PATH_DISPATCH)
        self.stats.fast_path_decisions += 1
        decision = Decision(DecisionAction.SEND, text=match.response, source=DecisionSource.FAST_PATH)
        self.activity.add(
            "fast-path",
            f"{match.rule}: answering {decision.text or '<Enter>'!r}",
            detail=match.question[:120] or None,
        )
        logger.info(f"[fast-path] {self.label}: {match.rule} -> {decision.text!r}")
        self._dispatch(decision.text or "")
        return True

    # ── Decision path ─────────────────────────────────────────────────────

    def _request_decision(self, result: ClassificationResult) -> None:
        if self.decision_client is None:
            return
        if self.decision_in_flight:
            return
        max_waits = self.config.decision.max_consecutive_waits
        if self._consecutive_waits >= max_waits:
            self.activity.add("decision", f"Still idle after {max_waits} waits, nudging the assistant")
            self._consecutive_waits = 0
            self._waiting_since = None
            self._dispatch(NUDGE_TEXT)
            return
        if self._waiting_since is None:
            self._waiting_since = time.monotonic()

        self._transition(SessionState.AWAITING_DECISION)
        context = self._build_context()
        version = self._version
        issued_at = self.buffer.written
        self.activity.add("decision", "Consulting decision provider", detail=result.matched_rule)
        self._decision_task = self._spawn(self._run_decision(context, version, issued_at))

    def _build_context(self) -> DecisionContext:
        digest = self.digest_provider(self.session_id) if self.digest_provider else None
        waiting_for = time.monotonic() - self._waiting_since if self._waiting_since else 0.0
        return DecisionContext(
            task=self.task,
            output=drop_sent_markers(self.buffer.text),
            mode=self.mode,
            task_sent=self._delivered,
            takeover=self.delivery == TaskDelivery.TAKEOVER,
            last_sent=self._last_sent,
            consecutive_waits=self._consecutive_waits,
            waiting_for_s=waiting_for,
            decision_count=self._decision_count,
            digest=digest,
            notes=list(self.notes),
        )

    async def _run_decision(self, context: DecisionContext, version: int, issued_at: int) -> None:
        key = f"{self.session_id}:decision"
        try:
            decision = await self.retry.run(key, lambda: self.decision_client.decide(context), on_retry=self._on_retry)
        except MaxRetriesExceeded as e:
            self._fail(e)
            return
        except Exception as e:
            logger.exception(f"[supervisor] {self.label}: decision call failed")
            self._fail(e)
            return

        if self.state != SessionState.AWAITING_DECISION or self._version != version:
            logger.debug(f"[supervisor] {self.label}: discarding decision issued at version {version}")
            return

        self.stats.llm_decisions += 1
        self._decision_count += 1
        summary = decision.action.value + (f": {decision.text}" if decision.text else "")
        self.activity.add("decision", summary, detail=f"{decision.latency_ms:.0f}ms")

        if self.buffer.written != issued_at and self._drop_stale(decision, issued_at):
            return
        self._apply_decision(decision)

    def _on_retry(self, state: RetryState, error: Exception) -> None:
        self.stats.retries += 1
        self.activity.add(
            "retry",
            f"Attempt {state.attempt + 1}/{state.max_attempts} failed: {error}",
            detail=f"retrying in {state.next_delay_s:.1f}s",
        )

    def _drop_stale(self, decision: Decision, issued_at: int) -> bool:
        """Re-classify output that arrived while the call was pending."""
        timing = self.config.timing
        result = self._classify(idle_for_s=None)
        if _is_working(result):
            self.activity.add("decision", "Dropped stale decision: assistant is working again")
            self._transition(SessionState.OBSERVING)
            self._schedule_evaluation(timing.idle_working_s)
            return True
        if result.category == Category.COMPLETION_SIGNAL:
            self._transition(SessionState.OBSERVING)
            self._complete(f"completion signal ({result.matched_rule})")
            return True
        arrived = drop_sent_markers(self.buffer.since(issued_at), self._sent_texts)
        if decision.action != DecisionAction.DONE and filter_noise_lines(arrived).strip():
            self.activity.add("decision", "Output changed while deciding, asking again")
            self._transition(SessionState.OBSERVING)
            self._schedule_evaluation(timing.idle_waiting_s)
            return True
        return False

    def _apply_decision(self, decision: Decision) -> None:
        timing = self.config.timing
        if decision.action == DecisionAction.DONE:
            self._complete("decision provider reported the task done")
            return

        if decision.action == DecisionAction.WAIT:
            self._consecutive_waits += 1
            self._transition(SessionState.OBSERVING)
            self._schedule_evaluation(timing.idle_waiting_s)
            return

        text = decision.text or ""
        if is_dangerous(text, self.safety_level):
            self.activity.add("error", f"Blocked dangerous command: {text}")
            logger.warning(f"[supervisor] {self.label}: blocked dangerous text at safety={self.safety_level.value}")
            self._transition(SessionState.OBSERVING)
            self._schedule_evaluation(timing.idle_waiting_s)
            return

        repeated = text == self._last_sent and len(text) > 3
        if repeated or is_semantically_duplicate(text, list(self._recent_suggestions)):
            self.activity.add("decision", f"Skipping repeated response: {text}")
            self._transition(SessionState.OBSERVING)
            self._schedule_evaluation(timing.idle_waiting_s)
            return

        self._consecutive_waits = 0
        self._waiting_since = None
        self._recent_suggestions.append(text)
        self._dispatch(text)

    # ── Dispatch ──────────────────────────────────────────────────────────

    def _deliver_task(self, reason: str) -> bool:
        """Send the task. Runs at most once per session, whatever the trigger."""
        if self._delivered or self.state.is_terminal:
            return False
        if self.state in BUSY_STATES:
            self._deliver_pending = reason
            return False
        self._delivered = True
        self._deliver_pending = None
        self._cancel_readiness()
        self.task_sent_at = time.time()
        if reason == "ready":
            self.activity.add("ready", "Readiness prompt detected, sending task")
        elif reason == "fallback":
            self.activity.add(
                "ready",
                f"Readiness prompt not seen after {self.readiness_timeout_s:.1f}s, sending task anyway",
                detail="fallback",
            )
        else:
            self.activity.add("start", "Sending task", detail=reason)
        logger.info(f"[supervisor] {self.label}: task delivered ({reason})")
        self._dispatch(self.task)
        return True

    def _dispatch(self, text: str) -> None:
        self._transition(SessionState.DISPATCHING)
        self._dispatch_seq += 1
        self.buffer.append_marker(make_sent_marker(self._dispatch_seq, text))
        self._dispatch_offset = self.buffer.written
        self._awaiting_fresh = True
        if text.strip():
            self._sent_texts.append(text)
            self._last_sent = text
        self.stats.dispatches += 1
        self.activity.add("input", f"Sending: {text or '<Enter>'}")
        self._spawn(self._write(text))

    async def _write(self, text: str) -> None:
        if self.state.is_terminal:
            return
        try:
            await self.host.write_text(text, self.session_id)
        except SessionProcessExited as e:
            self._fail(e)
            return
        except Exception as e:
            logger.exception(f"[supervisor] {self.label}: write failed")
            self._fail(e)
            return

        if self.state != SessionState.DISPATCHING:
            return
        self._transition(SessionState.OBSERVING)
        if self._deliver_pending is not None:
            self._deliver_task(self._deliver_pending)
            return
        if (
            not self._delivered
            and self.delivery == TaskDelivery.ON_READY
            and is_ready(self._fresh_text(), self.cli)
        ):
            self._deliver_task("ready")
            return
        if self._has_fresh_output():
            self._schedule_evaluation(self._delay_for_output())
        else:
            self._schedule_evaluation(self.config.timing.idle_default_s)

    # ── Timers ────────────────────────────────────────────────────────────

    def _on_readiness_timeout(self) -> None:
        self._readiness_handle = None
        if self._delivered or self._readiness_fired or self.state.is_terminal:
            return
        self._readiness_fired = True
        self.readiness_timeout = ReadinessTimeout(self.session_id, self.readiness_timeout_s)
        logger.warning(f"[supervisor] {self.label}: {self.readiness_timeout}, sending task anyway")
        self._deliver_task("fallback")

    def _on_time_limit(self) -> None:
        self._time_limit_handle = None
        self._complete(f"time limit of {self.time_limit_s / 60:.0f} min reached")

    def _cancel_idle(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _cancel_readiness(self) -> None:
        if self._readiness_handle is not None:
            self._readiness_handle.cancel()
            self._readiness_handle = None

    # ── State ─────────────────────────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _transition(self, new_state: SessionState) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        self._version += 1
        logger.debug(f"[supervisor] {self.label}: {old_state.value} -> {new_state.value}")
        self.activity.add("state", f"{old_state.value} -> {new_state.value}")
        for listener in list(self._listeners):
            try:
                listener(self, old_state, new_state)
            except Exception:
                logger.exception("[supervisor] state listener failed")

    def _complete(self, reason: str) -> None:
        self._finish(SessionState.COMPLETED, reason)

    def _fail(self, error: BaseException) -> None:
        if self.state.is_terminal:
            return
        self.error = error
        self._finish(SessionState.ERRORED, str(error))

    def _finish(self, state: SessionState, message: str) -> None:
        if self.state.is_terminal:
            return
        self._teardown()
        self.completed_at = time.time()
        self._transition(state)
        self.activity.add(_FINISH_KINDS[state], message)
        if state == SessionState.ERRORED:
            logger.error(f"[supervisor] {self.label}: {message}")
        else:
            logger.info(f"[supervisor] {self.label}: {state.value} ({message})")
        self._finished.set()

    def _teardown(self) -> None:
        self._cancel_idle()
        self._cancel_readiness()
        if self._time_limit_handle is not None:
            self._time_limit_handle.cancel()
            self._time_limit_handle = None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self._unregister is not None:
            self._unregister()
            self._unregister = None
        if self._owns_bus and self._bus is not None:
            self._bus.detach()


def _is_working(result: ClassificationResult) -> bool:
    """Working wins over a prompt or completion line that is still being drawn."""
    if result.category == Category.WORKING_INDICATOR:
        return True
    if result.matched_rule == "confirmation":
        return False
    return result.category in (Category.READINESS_PROMPT, Category.COMPLETION_SIGNAL) and result.has(
        Category.WORKING_INDICATOR
    )
