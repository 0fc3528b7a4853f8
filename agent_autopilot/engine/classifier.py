"""Classify raw terminal output from a CLI assistant.

Everything here is a pure function of its inputs. The supervisor owns the
buffer, the timers and the state; it feeds the classifier a cleaned tail and
acts on the returned `ClassificationResult`.
"""

from __future__ import annotations

import re
from typing import Iterable

from agent_autopilot.engine.models import Category, ClassificationResult
from agent_autopilot.providers.registry import CLIDef

# ── ANSI / control sequences ─────────────────────────────────────────────────

ANSI_FULL_RE = re.compile(
    r"(?:\x9b|\x1b\[)[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[PX^_][^\x1b]*\x1b\\"  # DCS / SOS / PM / APC
    r"|\x1b[()][0-9A-Za-z]"  # charset select
    r"|\x1b[@-Z\\-_]"  # two-byte escapes
)
CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")

# A sequence longer than this without a terminator is garbage, not a partial escape.
_MAX_PARTIAL_ESCAPE = 256


def strip_ansi(text: str) -> str:
    """Strip all ANSI escape sequences from text."""
    return ANSI_FULL_RE.sub("", text)


def strip_control(text: str) -> str:
    """Strip non-printable control characters (keep \\n and \\t)."""
    return CONTROL_CHAR_RE.sub("", text)


def split_incomplete_escape(raw: str) -> tuple[str, str]:
    """Split off a trailing escape sequence cut by a chunk boundary.

    Returns `(complete, carry)`; `carry` must be prepended to the next chunk.
    """
    index = max(raw.rfind("\x1b"), raw.rfind("\x9b"))
    if index < 0 or len(raw) - index > _MAX_PARTIAL_ESCAPE:
        return raw, ""
    tail = raw[index:]
    if ANSI_FULL_RE.match(tail) is not None or "\n" in tail:
        return raw, ""
    return raw[:index], tail


def clean_output(raw: str) -> str:
    """Strip escapes, carriage returns and control characters from a chunk."""
    text = strip_ansi(raw)
    text = text.replace("\r\n", "\n").replace("\r", "")
    return strip_control(text)


# ── Engine-sent markers ──────────────────────────────────────────────────────

SENT_MARKER_PREFIX = "⟦autopilot-sent"
_SENT_MARKER_RE = re.compile(rf"^{re.escape(SENT_MARKER_PREFIX)}[^⟧]*⟧.*$", re.MULTILINE)
_ECHO_PREFIX_RE = re.compile(r"^[\s❯>›$]*")


def make_sent_marker(sequence: int, text: str) -> str:
    """Build the synthetic buffer line recording text the engine typed."""
    preview = " ".join(text.split())[:120]
    return f"\n{SENT_MARKER_PREFIX}#{sequence}⟧ {preview}\n"


_WHITESPACE_RE = re.compile(r"\s+")

# Shortest trailing fragment accepted as an echo that is still arriving.
MIN_PARTIAL_ECHO = 16


def _echo_key(text: str) -> str:
    # Terminals wrap long input at any column, even mid-word.
    return _WHITESPACE_RE.sub("", text)


def _echo_runs(lines: list[str], echoes: set[str]) -> list[tuple[int, int, bool]]:
    """`(start, end, complete)` spans of consecutive lines that spell a sent text.

    A span that reaches the last line and is only a prefix of a sent text is
    reported with `complete=False`: the rest of the echo has not arrived yet.
    """
    runs: list[tuple[int, int, bool]] = []
    start = 0
    while start < len(lines):
        joined = _echo_key(_ECHO_PREFIX_RE.sub("", lines[start]))
        end = start + 1
        found: tuple[int, int, bool] | None = None
        while joined:
            candidates = [echo for echo in echoes if echo.startswith(joined)]
            if not candidates:
                break
            if joined in candidates:
                found = (start, end, True)
                break
            if end == len(lines):
                if len(joined) >= MIN_PARTIAL_ECHO:
                    found = (start, end, False)
                break
            joined += _echo_key(lines[end])
            end += 1
        if found is None:
            start += 1
            continue
        runs.append(found)
        start = found[1]
    return runs


def _echo_set(sent_texts: Iterable[str]) -> set[str]:
    return {_echo_key(sent) for sent in sent_texts if sent and sent.strip()}


def drop_sent_markers(text: str, sent_texts: Iterable[str] = ()) -> str:
    """Remove engine markers and terminal echoes of text the engine sent.

    Echoes are matched ignoring whitespace, so an input line the terminal
    wrapped over several rows is removed as a whole.
    """
    text = _SENT_MARKER_RE.sub("", text)
    echoes = _echo_set(sent_texts)
    if not echoes:
        return text
    lines = text.split("\n")
    dropped: set[int] = set()
    for start, end, _ in _echo_runs(lines, echoes):
        dropped.update(range(start, end))
    return "\n".join(line for index, line in enumerate(lines) if index not in dropped)


def split_pending_echo(text: str, sent_texts: Iterable[str] = ()) -> tuple[str, str]:
    """Split off a trailing, partially arrived echo: `(settled, pending)`."""
    echoes = _echo_set(sent_texts)
    if not echoes or not text:
        return text, ""
    lines = text.split("\n")
    runs = _echo_runs(lines, echoes)
    if not runs or runs[-1][2]:
        return text, ""
    start = runs[-1][0]
    return "\n".join(lines[:start]), "\n".join(lines[start:])


def last_lines(text: str, count: int) -> list[str]:
    """Return the last `count` non-empty lines of `text`."""
    lines = [line.rstrip() for line in text.split("\n") if line.strip()]
    return lines[-count:] if count > 0 else lines


# ── Rule table ───────────────────────────────────────────────────────────────

CONFIRMATION_RE = re.compile(
    r"\(y/n\)|\[y/n\]|\(y\)|Allow\?|Proceed\?|Continue\?|"
    r"trust this (?:project|folder)|trust settings|Press Enter to continue|update available",
    re.IGNORECASE,
)

COMPLETION_RES = (
    re.compile(r"\btask (?:is )?(?:complete|completed|done|finished)\b", re.IGNORECASE),
    re.compile(r"\bimplementation (?:is )?(?:complete|done|finished)\b", re.IGNORECASE),
    re.compile(r"\ball (?:done|complete|finished)\b", re.IGNORECASE),
    re.compile(r"\bfeature (?:is )?(?:complete|done|implemented)\b", re.IGNORECASE),
    re.compile(r"\[TASK_COMPLETE\]"),
)
OFFER_RE = re.compile(r"anything else|is there anything|how can i help|what.*would you like", re.IGNORECASE)
WORK_EVIDENCE_RE = re.compile(r"\b(?:created|wrote|updated|fixed|implemented|added|built|completed)\b", re.IGNORECASE)
QUESTION_END_RE = re.compile(r"\?\s*$")

CONFIRMATION_WINDOW = 3
WORKING_WINDOW = 5


def classify(
    chunk: str,
    buffer_tail: str,
    cli: CLIDef,
    *,
    sent_texts: Iterable[str] = (),
    tail_lines: int = 12,
    idle_for_s: float | None = None,
    idle_gap_s: float = 1.5,
    completion_window_chars: int = 3000,
) -> ClassificationResult:
    """Classify a raw chunk in the context of the (already cleaned) buffer tail."""
    text = buffer_tail + clean_output(chunk)
    return classify_text(
        text,
        cli,
        sent_texts=sent_texts,
        tail_lines=tail_lines,
        idle_for_s=idle_for_s,
        idle_gap_s=idle_gap_s,
        completion_window_chars=completion_window_chars,
    )


def classify_text(
    cleaned: str,
    cli: CLIDef,
    *,
    sent_texts: Iterable[str] = (),
    tail_lines: int = 12,
    idle_for_s: float | None = None,
    idle_gap_s: float = 1.5,
    completion_window_chars: int = 3000,
) -> ClassificationResult:
    """Classify cleaned output against the ordered rule table.

    The first matching rule decides the category; every other category that
    also matched is reported in `also_matched`.
    """
    visible = drop_sent_markers(cleaned, sent_texts)
    lines = last_lines(visible, tail_lines)
    if not lines:
        return _fallback(idle_for_s, idle_gap_s)
    window = "\n".join(lines)

    matches: list[tuple[Category, str]] = []

    if any(CONFIRMATION_RE.search(line) for line in lines[-CONFIRMATION_WINDOW:]):
        matches.append((Category.WAITING_FOR_INPUT, "confirmation"))

    if cli.is_ready_line(lines[-1]):
        matches.append((Category.READINESS_PROMPT, "readiness"))

    if any(regex.search(window) for regex in COMPLETION_RES):
        matches.append((Category.COMPLETION_SIGNAL, "completion"))
    elif OFFER_RE.search(window) and WORK_EVIDENCE_RE.search(visible[-completion_window_chars:]):
        matches.append((Category.COMPLETION_SIGNAL, "offer_after_work"))

    recent = "\n".join(lines[-WORKING_WINDOW:])
    if any(regex.search(recent) for regex in cli.working_regexes):
        matches.append((Category.WORKING_INDICATOR, "working"))

    if any(regex.search(window) for regex in cli.waiting_regexes) or QUESTION_END_RE.search(lines[-1]):
        matches.append((Category.WAITING_FOR_INPUT, "question"))

    if not matches:
        return _fallback(idle_for_s, idle_gap_s)

    category, rule = matches[0]
    others = frozenset(other for other, _ in matches[1:] if other != category)
    return ClassificationResult(category=category, matched_rule=rule, confidence=1.0, also_matched=others)


def _fallback(idle_for_s: float | None, idle_gap_s: float) -> ClassificationResult:
    if idle_for_s is None:
        return ClassificationResult(category=Category.UNCLASSIFIED, confidence=0.0)
    if idle_for_s >= idle_gap_s:
        return ClassificationResult(category=Category.WAITING_FOR_INPUT, matched_rule="idle_gap", confidence=0.5)
    return ClassificationResult(category=Category.WORKING_INDICATOR, matched_rule="output_arriving", confidence=0.5)


def is_ready(cleaned: str, cli: CLIDef, tail_lines: int = 10) -> bool:
    """Return True when the readiness prompt is on screen and no dialog is pending."""
    lines = last_lines(drop_sent_markers(cleaned), tail_lines)
    if not lines or not cli.is_ready_line(lines[-1]):
        return False
    return not any(CONFIRMATION_RE.search(line) for line in lines[-CONFIRMATION_WINDOW:])


# ── Stats ────────────────────────────────────────────────────────────────────

_WRITES_RE = re.compile(r"(?:Write|Edit)\([^)]+\)", re.IGNORECASE)
_READS_RE = re.compile(r"Read\([^)]+\)", re.IGNORECASE)
_PASSED_RE = re.compile(r"(\d+)\s+(?:tests?\s+)?passed", re.IGNORECASE)
_FAILED_RE = re.compile(r"(\d+)\s+(?:tests?\s+)?failed", re.IGNORECASE)
_ERROR_RE = re.compile(r"(?:Error|error|ERROR):")


def parse_stats(cleaned: str) -> dict[str, int]:
    """Extract counters from cleaned output. Missing counters are omitted."""
    stats: dict[str, int] = {}
    writes = _WRITES_RE.findall(cleaned)
    if writes:
        stats["files_written"] = len(writes)
    reads = _READS_RE.findall(cleaned)
    if reads:
        stats["files_read"] = len(reads)
    passed = _PASSED_RE.search(cleaned)
    if passed:
        stats["tests_passed"] = int(passed.group(1))
    failed = _FAILED_RE.search(cleaned)
    if failed:
        stats["tests_failed"] = int(failed.group(1))
    errors = _ERROR_RE.findall(cleaned)
    if errors:
        stats["errors_encountered"] = len(errors)
    return stats
