"""Terminal-hosting contract consumed by the engine.

The engine never spawns or kills processes itself; it talks to whatever
implements `TerminalHost` (a PTY host in production, an in-memory fake in
tests).
"""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

DataCallback = Callable[[str, str], None]  # (chunk, session_id)
ExitCallback = Callable[[str, "int | None"], None]  # (session_id, exit_code)


@runtime_checkable
class TerminalHost(Protocol):
    async def create_session(self, cols: int = 120, rows: int = 40, cwd: str | None = None) -> str:
        """Spawn a terminal; returns its session id."""
        ...

    async def write_text(self, text: str, session_id: str) -> bool:
        """Type `text` followed by Enter. Raises SessionProcessExited if the process is gone."""
        ...

    def subscribe(self, on_data: DataCallback, on_exit: ExitCallback | None = None) -> Callable[[], None]:
        """Receive every chunk of every session on the event loop; returns an unsubscribe function."""
        ...

    async def stop_session(self, session_id: str) -> None:
        ...

    def snapshot(self, session_id: str) -> str:
        """Recent visible text of a session, for takeover."""
        ...
