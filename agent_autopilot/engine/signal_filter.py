"""Noise filtering for cleaned terminal output.

Summaries for the decision provider and digests shared between sessions
should carry what the assistant said and did. Spinner frames, borders,
status bars and input-box chrome are dropped line by line; fenced code is
always kept.
"""

from __future__ import annotations

import re

_SPINNER_GLYPHS = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏⣾⣽⣻⢿⡿⣟⣯⣷|/\\\\◐◑◒◓✶✢✽✻✳"

# A line is noise when any full-line rule matches it.
FULL_LINE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("spinner", re.compile(rf"[{_SPINNER_GLYPHS}]\s+.{{0,60}}?\.{{0,3}}")),
    ("border", re.compile(r"[─-╿▀-▟⠀-⣿\s\-=_~*+]+")),
    ("blocks", re.compile(r"[░▒▓█▀▄▌▐\s]+")),
    ("ellipsis", re.compile(r"[.…⋯·•\s]+")),
    ("cursor", re.compile(r"[❯>$›»▸►→\-_|\s]*")),
    ("context_left", re.compile(r"\d{1,3}%\s+context\s+left", re.IGNORECASE)),
)

# Input-box hints of the three CLIs, matched anywhere in the line.
HINT_RE = re.compile(
    r"\?\s+for\s+shortcuts"
    r"|type\s+(?:a\s+)?(?:your\s+)?message"
    r"|@path/to/file"
    r"|esc\s+to\s+(?:cancel|undo|close)"
    r"|ctrl[+\-]c\s+to\s+(?:quit|exit|cancel)"
    r"|/help\s+for\s+commands"
    r"|⏎\s+send",
    re.IGNORECASE,
)

# Status bars mention a model or context size and a memory or rate figure.
STATUS_SUBJECT_RE = re.compile(
    r"/model\s+\S+|no\s+sandbox|auto-?compact|\bcontext\s*:\s*\d+|\bcost\s*:\s*\$[\d.]+",
    re.IGNORECASE,
)
STATUS_FIGURE_RE = re.compile(
    r"\b\d+(?:\.\d+)?\s*(?:kb|mb|gb|tok/s|tokens?/s|it/s|t/s)\b",
    re.IGNORECASE,
)


def is_noise_line(line: str) -> bool:
    """True for blank lines and terminal chrome."""
    text = line.strip()
    if not text:
        return True
    if any(pattern.fullmatch(text) for _, pattern in FULL_LINE_RULES):
        return True
    if HINT_RE.search(text):
        return True
    return bool(STATUS_SUBJECT_RE.search(text) and STATUS_FIGURE_RE.search(text))


def filter_noise_lines(text: str) -> str:
    """Drop noise lines, keeping anything between ``` fences verbatim."""
    kept: list[str] = []
    in_fence = False
    for line in text.splitlines():
        if line.strip().startswith("```"):
            in_fence = not in_fence
            kept.append(line)
        elif in_fence or not is_noise_line(line):
            kept.append(line)
    while kept and not kept[-1].strip():
        kept.pop()
    return "\n".join(kept)
