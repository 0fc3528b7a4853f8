"""Registry of supported CLI coding assistants."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

_WORKING_WORDS = (
    "thinking|analyzing|searching|reading|writing|running|executing|loading|processing|"
    "building|compiling|installing|fetching|creating|updating|downloading"
)

# Patterns shared by every provider.
COMMON_WORKING_PATTERNS: tuple[str, ...] = (
    r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]",
    r"\.\.\.\s*$",
    rf"^\s*(?:{_WORKING_WORDS})\b",
    rf"\[(?:{_WORKING_WORDS})\]",
    r"Running tool",
    r"\(esc to interrupt",
    r"Compiling|Bundling|Generating",
)

COMMON_WAITING_PATTERNS: tuple[str, ...] = (
    r"What would you like|How can I help|anything else|Do you want to",
    r"Press Enter to continue",
)


@dataclass(frozen=True)
class CLIDef:
    """CLI assistant metadata and the terminal patterns it prints."""

    key: str
    name: str
    command: str
    env_override: str
    readiness_patterns: tuple[str, ...]
    working_patterns: tuple[str, ...] = ()
    waiting_patterns: tuple[str, ...] = ()
    _compiled: dict[str, tuple[re.Pattern[str], ...]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def resolve_command(self) -> str:
        """Resolve command from env override or default command."""
        value = os.getenv(self.env_override, "").strip()
        return value or self.command

    @property
    def readiness_regexes(self) -> tuple[re.Pattern[str], ...]:
        return self._compile("readiness", self.readiness_patterns, re.MULTILINE)

    @property
    def working_regexes(self) -> tuple[re.Pattern[str], ...]:
        patterns = COMMON_WORKING_PATTERNS + self.working_patterns
        return self._compile("working", patterns, re.MULTILINE | re.IGNORECASE)

    @property
    def waiting_regexes(self) -> tuple[re.Pattern[str], ...]:
        patterns = COMMON_WAITING_PATTERNS + self.waiting_patterns
        return self._compile("waiting", patterns, re.MULTILINE | re.IGNORECASE)

    def is_ready_line(self, line: str) -> bool:
        """Return True when `line` is this CLI's idle input prompt."""
        return any(regex.search(line) for regex in self.readiness_regexes)

    def _compile(self, name: str, patterns: tuple[str, ...], flags: int) -> tuple[re.Pattern[str], ...]:
        cached = self._compiled.get(name)
        if cached is None:
            cached = tuple(re.compile(pattern, flags) for pattern in patterns)
            self._compiled[name] = cached
        return cached


CLI_DEFS: dict[str, CLIDef] = {
    "claude": CLIDef(
        key="claude",
        name="Claude Code",
        command="claude",
        env_override="AGENT_AUTOPILOT_CLAUDE_CMD",
        readiness_patterns=(r"❯\s*$",),
        working_patterns=(
            r"Tool:|Read\(|Write\(|Edit\(|Bash\(|Task\(|Glob\(|Grep\(|WebFetch\(|WebSearch\(",
            r"[✶✢✽✻✳].*…",
        ),
    ),
    "codex": CLIDef(
        key="codex",
        name="Codex CLI",
        command="codex",
        env_override="AGENT_AUTOPILOT_CODEX_CMD",
        readiness_patterns=(r"^\s*(?:>|›|codex>)\s*$",),
        working_patterns=(r"\b(?:thinking|working|executing)\b",),
    ),
    "gemini": CLIDef(
        key="gemini",
        name="Gemini CLI",
        command="gemini",
        env_override="AGENT_AUTOPILOT_GEMINI_CMD",
        readiness_patterns=(r"^\s*(?:❯|>)\s*$", r"Type your message"),
        working_patterns=(r"esc to cancel",),
    ),
}


def get_cli_def(cli_type: str) -> CLIDef:
    """Get a CLI definition by key."""
    key = (cli_type or "").strip().lower()
    if key not in CLI_DEFS:
        choices = ", ".join(sorted(CLI_DEFS))
        raise ValueError(f"Unknown CLI provider '{cli_type}'. Expected one of: {choices}")
    return CLI_DEFS[key]
