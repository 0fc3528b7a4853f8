"""Event types carried by the output bus."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class OutputChunk:
    """Raw output from one terminal session."""

    session_id: str
    data: str


@dataclass(frozen=True)
class SessionExit:
    """The process behind a session exited."""

    session_id: str
    exit_code: int | None = None
