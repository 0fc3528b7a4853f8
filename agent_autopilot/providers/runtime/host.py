"""Terminal host backed by real pseudo-terminals."""

from __future__ import annotations

import asyncio
import itertools
import os
import threading
from typing import Callable

import pyte
from loguru import logger

from agent_autopilot.engine.errors import SessionProcessExited
from agent_autopilot.engine.host import DataCallback, ExitCallback
from agent_autopilot.providers.runtime.backend import PTYBackend, ShellLaunch, build_backend


class _PTYSession:
    """One spawned shell plus its reader thread and rendered screen."""

    def __init__(self, session_id: str, backend: PTYBackend, cols: int, rows: int, history: int) -> None:
        self.session_id = session_id
        self.backend = backend
        self.running = True
        self.reader: threading.Thread | None = None
        self._render_lock = threading.Lock()
        self._screen = pyte.HistoryScreen(cols, rows, history=history)
        self._screen.set_mode(pyte.modes.LNM)
        self._stream = pyte.Stream(self._screen)

    def render(self, data: str) -> None:
        with self._render_lock:
            self._stream.feed(data)

    def snapshot_text(self) -> str:
        with self._render_lock:
            history_lines = [self._history_line_to_text(line) for line in self._screen.history.top]
            display_lines = [line.rstrip() for line in self._screen.display]
        lines = history_lines + display_lines
        while lines and not lines[-1]:
            lines.pop()
        return "\n".join(lines)

    def _history_line_to_text(self, line: object) -> str:
        if isinstance(line, dict):
            cols = self._screen.columns
            return "".join(line[x].data if x in line else " " for x in range(cols)).rstrip()
        return str(line).rstrip()


class PTYTerminalHost:
    """
    Spawns shells in pseudo-terminals and multiplexes their output.

    Each session has a reader thread; chunks are handed to subscribers on the
    asyncio loop that created the session, as `(chunk, session_id)`.
    """

    def __init__(self, shell: str | None = None, history: int = 5000) -> None:
        self.shell = shell or os.environ.get("SHELL") or "/bin/bash"
        self.history = history
        self._sessions: dict[str, _PTYSession] = {}
        self._subscribers: list[tuple[DataCallback, ExitCallback | None]] = []
        self._ids = itertools.count(1)
        self._loop: asyncio.AbstractEventLoop | None = None

    async def create_session(self, cols: int = 120, rows: int = 40, cwd: str | None = None) -> str:
        self._loop = asyncio.get_running_loop()
        session_id = f"pty-{next(self._ids)}"
        workdir = os.path.expanduser(cwd) if cwd else None
        launch = ShellLaunch(self.shell, cols=cols, rows=rows, cwd=workdir)
        backend = await asyncio.to_thread(build_backend, launch)
        session = _PTYSession(session_id, backend, cols, rows, self.history)
        self._sessions[session_id] = session
        session.reader = threading.Thread(
            target=self._read_loop,
            args=(session, self._loop),
            name=f"pty-reader-{session_id}",
            daemon=True,
        )
        session.reader.start()
        logger.info(f"[pty] created {session_id} ({cols}x{rows}) cwd={workdir or os.getcwd()}")
        return session_id

    async def write_text(self, text: str, session_id: str) -> bool:
        """Type text and press Enter."""
        session = self._require(session_id)
        payload = text if text.endswith(("\r", "\n")) else f"{text}\r"
        try:
            await asyncio.to_thread(session.backend.write, payload)
        except OSError as e:
            raise SessionProcessExited(session_id, session.backend.exit_code()) from e
        return True

    def subscribe(self, on_data: DataCallback, on_exit: ExitCallback | None = None) -> Callable[[], None]:
        entry = (on_data, on_exit)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    async def stop_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.running = False
        await asyncio.to_thread(session.backend.close)
        if session.reader is not None and session.reader.is_alive():
            await asyncio.to_thread(session.reader.join, 1.0)
        logger.info(f"[pty] stopped {session_id}")

    def snapshot(self, session_id: str) -> str:
        """Rendered screen text including scrollback (ANSI already interpreted)."""
        return self._require(session_id).snapshot_text()

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.stop_session(session_id)

    def _require(self, session_id: str) -> _PTYSession:
        session = self._sessions.get(session_id)
        if session is None or not session.backend.is_alive():
            exit_code = session.backend.exit_code() if session is not None else None
            raise SessionProcessExited(session_id, exit_code)
        return session

    # ── Reader thread ─────────────────────────────────────────────────────

    def _read_loop(self, session: _PTYSession, loop: asyncio.AbstractEventLoop) -> None:
        while session.running:
            data = session.backend.read()
            if data:
                session.render(data)
                loop.call_soon_threadsafe(self._emit, data, session.session_id)
                continue
            if not session.backend.is_alive():
                if session.running:
                    loop.call_soon_threadsafe(self._emit_exit, session.session_id, session.backend.exit_code())
                break

    def _emit(self, data: str, session_id: str) -> None:
        for on_data, _ in list(self._subscribers):
            try:
                on_data(data, session_id)
            except Exception:
                logger.exception(f"[pty] subscriber failed for {session_id}")

    def _emit_exit(self, session_id: str, exit_code: int | None) -> None:
        logger.warning(f"[pty] {session_id} exited (code {exit_code})")
        for _, on_exit in list(self._subscribers):
            if on_exit is None:
                continue
            try:
                on_exit(session_id, exit_code)
            except Exception:
                logger.exception(f"[pty] exit subscriber failed for {session_id}")
