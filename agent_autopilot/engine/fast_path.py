"""Canned answers for common confirmation prompts, no decision call needed."""

from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

from agent_autopilot.engine.classifier import CONFIRMATION_WINDOW, drop_sent_markers, last_lines
from agent_autopilot.engine.models import Category, ClassificationResult, SafetyLevel

# Blocked for dispatch below yolo; confirmations mentioning them are not auto-approved at safe.
DANGEROUS_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"rm\s+-rf",
        r"rm\s+--force",
        r"git\s+push\s+--force",
        r"git\s+push\s+-f\b",
        r"drop\s+database",
        r"truncate\s+table",
        r"delete\s+from.*where.*1\s*=\s*1",
        r"format\s+c:",
        r"mkfs",
        r"dd\s+if=",
    )
)


def is_dangerous(text: str, level: SafetyLevel | str) -> bool:
    """Return True when `text` must not be dispatched at this safety level."""
    if SafetyLevel(level) == SafetyLevel.YOLO:
        return False
    return any(pattern.search(text) for pattern in DANGEROUS_PATTERNS)


@dataclass(frozen=True)
class FastPathRule:
    """One entry of the routing table."""

    name: str
    pattern: re.Pattern[str]
    response: str
    providers: frozenset[str] | None = None  # None: every provider
    approval: bool = True  # gated by the safety level

    def applies_to(self, provider: str) -> bool:
        return self.providers is None or provider in self.providers


@dataclass(frozen=True)
class FastPathMatch:
    rule: str
    response: str
    question: str = ""


def _rule(name: str, pattern: str, response: str, providers: tuple[str, ...] | None = None, approval: bool = True) -> FastPathRule:
    return FastPathRule(
        name=name,
        pattern=re.compile(pattern, re.IGNORECASE),
        response=response,
        providers=frozenset(providers) if providers else None,
        approval=approval,
    )


DEFAULT_RULES: tuple[FastPathRule, ...] = (
    _rule("claude_trust_folder", r"yes,?\s+i\s+trust\s+this\s+folder", "1", ("claude",), approval=False),
    _rule("codex_update_menu", r"update available", "2", ("codex",), approval=False),
    _rule("trust_project", r"trust this (?:project|folder)|trust settings", "y", approval=False),
    _rule("yes_no", r"\(y/n\)|\[y/n\]|\(y\)|Allow\?|Proceed\?|Continue\?", "y"),
    _rule("press_enter", r"Press Enter to continue", "", approval=False),
)


class FastPathRouter:
    """Ordered `(provider, pattern) -> response` table.

    Only consulted for confirmation-style classifications. A hit is answered
    locally; a miss (or a safety veto) falls through to the decision client.
    """

    def __init__(self, rules: tuple[FastPathRule, ...] | list[FastPathRule] = DEFAULT_RULES) -> None:
        self.rules: tuple[FastPathRule, ...] = tuple(rules)

    def route(
        self,
        cleaned_tail: str,
        provider: str,
        result: ClassificationResult,
        safety_level: SafetyLevel | str = SafetyLevel.SAFE,
    ) -> FastPathMatch | None:
        """Return the canned answer for the prompt on screen, if any."""
        if not self._is_eligible(result):
            return None

        lines = last_lines(drop_sent_markers(cleaned_tail), CONFIRMATION_WINDOW + 1)
        prompt_lines = lines[-CONFIRMATION_WINDOW:]
        for rule in self.rules:
            if not rule.applies_to(provider):
                continue
            index = _find_line(prompt_lines, rule.pattern)
            if index is None:
                continue
            # Include the line above the prompt: the command usually sits there.
            offset = len(lines) - len(prompt_lines)
            question = " ".join(line.strip() for line in lines[max(0, offset + index - 1): offset + index + 1])
            if rule.approval and SafetyLevel(safety_level) == SafetyLevel.SAFE and is_dangerous(question, safety_level):
                logger.info(f"[fast-path] {rule.name} vetoed at safety=safe: {question[:80]!r}")
                return None
            return FastPathMatch(rule=rule.name, response=rule.response, question=question)
        return None

    @staticmethod
    def _is_eligible(result: ClassificationResult) -> bool:
        if result.category == Category.WAITING_FOR_INPUT and result.matched_rule == "confirmation":
            return True
        return result.category == Category.READINESS_PROMPT and result.matched_rule == "confirmation"


def _find_line(lines: list[str], pattern: re.Pattern[str]) -> int | None:
    for index in range(len(lines) - 1, -1, -1):
        if pattern.search(lines[index]):
            return index
    return None
