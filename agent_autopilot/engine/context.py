"""Prompt context for decision calls."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from agent_autopilot.engine.signal_filter import filter_noise_lines

SYSTEM_PROMPT = """You are an autonomous agent supervising a CLI coding assistant running in a terminal.
Your job is to keep it working on the task until the task is finished.

MODE: {mode}
TASK: {task}

{takeover}
=== DECISION RULES (in priority order) ===

1. The assistant is working (spinners, "..." at end of line, tool banners such as
   Read( Write( Edit( Bash( ) -> wait.
2. A yes/no or permission prompt ("(y/n)", "[Y/n]", "Allow?") -> send "y".
3. A question -> send a specific answer that advances the task.
4. Numbered options [1] [2] [3] -> send the best number for the task.
5. The assistant finished and asks "anything else?" -> send a specific next
   improvement, or done when the task is fully complete and verified.
6. An idle prompt -> guide the next step of the task.

=== OUTPUT CONTRACT ===
Respond with ONE JSON object and nothing else:
  {{"action": "wait"}}
  {{"action": "send", "text": "<exact text to type into the terminal>"}}
  {{"action": "done"}}
"text" is typed verbatim: never write "You should type:" or explanations.
Never repeat a previous message or a near-identical suggestion.
"""

TAKEOVER_NOTE = (
    "TAKEOVER: you are taking over a session that is already running this task. "
    "Do not resend the task; continue from the current state of the terminal."
)

_KEY_LINE_RE = re.compile(
    r"error|warning|created|wrote|updated|failed|success|test|passed|TODO|FIXME",
    re.IGNORECASE,
)

HEAD_LINES = 10
TAIL_LINES = 30
KEY_LINES = 20
REMINDER_EVERY = 10
URGENT_AFTER_WAITS = 2


def summarize_output(cleaned: str, max_chars: int = 4000) -> str:
    """Bound the output sent to the decision provider.

    Keeps the head of the session, up to 20 key-transition lines from the
    middle (errors, writes, test results) and the most recent lines.
    """
    text = filter_noise_lines(cleaned)
    if len(text) <= max_chars:
        return text

    lines = text.split("\n")
    if len(lines) <= HEAD_LINES + TAIL_LINES:
        return text[-max_chars:]

    head = "\n".join(lines[:HEAD_LINES])
    tail = "\n".join(lines[-TAIL_LINES:])
    middle = lines[HEAD_LINES:-TAIL_LINES]
    key_lines = "\n".join([line for line in middle if _KEY_LINE_RE.search(line)][-KEY_LINES:])

    budget = max(0, max_chars - len(head) - len(tail) - 100)
    summary = (
        f"{head}\n\n--- [{len(middle)} lines summarized, showing errors/key events] ---\n"
        f"{key_lines[:budget]}\n\n--- [Recent output] ---\n{tail}"
    )
    # Very long tail lines can still blow the bound.
    return summary[-max_chars:] if len(summary) > max_chars else summary


def is_semantically_duplicate(text: str, recent: list[str], threshold: float = 0.7) -> bool:
    """True when `text` shares more than `threshold` of its words with a recent suggestion."""
    if len(text) <= 5:
        return False
    words = _words(text)
    if not words:
        return False
    for previous in recent:
        previous_words = _words(previous)
        if not previous_words:
            continue
        overlap = len(words & previous_words)
        if overlap / max(len(words), len(previous_words)) > threshold:
            return True
    return False


def _words(text: str) -> set[str]:
    return {word for word in text.lower().split() if len(word) > 2}


@dataclass
class DecisionContext:
    """Everything one decision call needs to know about a session."""

    task: str
    output: str
    mode: str = "single session"
    task_sent: bool = False
    takeover: bool = False
    last_sent: str | None = None
    consecutive_waits: int = 0
    waiting_for_s: float = 0.0
    decision_count: int = 0
    digest: str | None = None
    notes: list[str] = field(default_factory=list)

    def build_system_prompt(self) -> str:
        prompt = SYSTEM_PROMPT.format(
            mode=self.mode,
            task=self.task,
            takeover=f"{TAKEOVER_NOTE}\n" if self.takeover else "",
        )
        return prompt + self._state_notes()

    def _state_notes(self) -> str:
        parts: list[str] = []
        if self.task_sent:
            parts.append(
                "IMPORTANT: The task has ALREADY been sent. Do not send it again. "
                "Wait, answer a question, approve a prompt, or suggest the next step."
            )
        if self.last_sent:
            parts.append(f'Your last message was: "{self.last_sent}". Do not repeat it.')
        if self.consecutive_waits >= URGENT_AFTER_WAITS:
            parts.append(
                f"URGENT: the assistant has been waiting for input for {int(self.waiting_for_s)}s and "
                f"you answered wait {self.consecutive_waits} times. Do not answer wait again; "
                "give it something to do."
            )
        if self.decision_count and self.decision_count % REMINDER_EVERY == 0:
            parts.append(f"REMINDER: the original task is: {self.task}")
        if self.digest:
            parts.append(f"=== OTHER TERMINALS (do not duplicate their work) ===\n{self.digest}")
        parts.extend(self.notes)
        if not parts:
            return ""
        return "\n\n" + "\n\n".join(parts)


@dataclass(frozen=True)
class SessionDigest:
    """Copied, read-only status of one session for its siblings."""

    session_id: str
    label: str
    state: str
    subtask: str
    recent: str

    def format(self) -> str:
        return f"[{self.label}] ({self.state}) {self.subtask[:80]}\n{self.recent}"


def digest_recent_output(cleaned: str, max_lines: int = 5, max_chars: int = 400) -> str:
    """Last few meaningful lines of a snapshot, noise removed."""
    lines = [line.strip() for line in filter_noise_lines(cleaned).split("\n") if line.strip()]
    text = "\n".join(f"  {line}" for line in lines[-max_lines:])
    return text[-max_chars:]


def format_digest(digests: list[SessionDigest], exclude: str | None = None) -> str:
    return "\n".join(d.format() for d in digests if d.session_id != exclude)
