"""Shell processes behind the terminal sessions of the PTY host."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from typing import Protocol

import pexpect
from loguru import logger

READ_SIZE = 4096


@dataclass
class ShellLaunch:
    """How to start the shell of one terminal session."""

    shell: str
    cols: int = 120
    rows: int = 40
    cwd: str | None = None
    extra_env: dict[str, str] = field(default_factory=dict)

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env.setdefault("TERM", "xterm-256color")
        env.update(self.extra_env)
        return env


class PTYBackend(Protocol):
    """What the host needs from a running shell."""

    def read(self, timeout: float = 0.1) -> str:
        """Next output chunk, or "" when nothing arrived within `timeout`."""

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def is_alive(self) -> bool: ...

    def exit_code(self) -> int | None:
        """Exit status once the shell is gone, None while it runs."""

    def close(self) -> None: ...


class PexpectShell:
    """A shell in a real pseudo-terminal (POSIX only)."""

    def __init__(self, launch: ShellLaunch) -> None:
        self._gone = False
        self._child = pexpect.spawn(
            launch.shell,
            encoding="utf-8",
            codec_errors="ignore",
            echo=False,
            dimensions=(launch.rows, launch.cols),
            cwd=launch.cwd,
            env=launch.environment(),
        )

    def read(self, timeout: float = 0.1) -> str:
        try:
            return self._child.read_nonblocking(size=READ_SIZE, timeout=timeout)
        except pexpect.TIMEOUT:
            return ""
        except pexpect.EOF:
            self._gone = True
            return ""

    def write(self, data: str) -> None:
        self._child.send(data)

    def resize(self, cols: int, rows: int) -> None:
        self._child.setwinsize(rows, cols)

    def is_alive(self) -> bool:
        return not self._gone and self._child.isalive()

    def exit_code(self) -> int | None:
        if self.is_alive():
            return None
        return self._child.exitstatus if self._child.exitstatus is not None else self._child.signalstatus

    def close(self) -> None:
        if self._child.isalive():
            self._child.close(force=True)


class PipeShell:
    """A shell on plain pipes, for platforms without a PTY.

    Output arrives unbuffered one character at a time; resize is a no-op and
    TUIs that require a terminal will not render.
    """

    def __init__(self, launch: ShellLaunch) -> None:
        self._proc = subprocess.Popen(
            launch.shell,
            shell=True,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="ignore",
            bufsize=1,
            cwd=launch.cwd,
            env=launch.environment(),
        )

    def read(self, timeout: float = 0.1) -> str:
        if self._proc.stdout is None:
            return ""
        return self._proc.stdout.read(1) or ""

    def write(self, data: str) -> None:
        if self._proc.stdin is None:
            return
        self._proc.stdin.write(data)
        self._proc.stdin.flush()

    def resize(self, cols: int, rows: int) -> None:
        return None

    def is_alive(self) -> bool:
        return self._proc.poll() is None

    def exit_code(self) -> int | None:
        return self._proc.poll()

    def close(self) -> None:
        if self._proc.poll() is not None:
            return
        self._proc.terminate()
        try:
            self._proc.wait(timeout=3)
        except subprocess.TimeoutExpired:
            self._proc.kill()


def build_backend(launch: ShellLaunch) -> PTYBackend:
    """Start `launch.shell` in a PTY where the platform has one."""
    if os.name == "nt":
        logger.warning(f"[pty] no PTY on this platform, running {launch.shell!r} on pipes")
        return PipeShell(launch)
    backend = PexpectShell(launch)
    logger.info(f"[pty] spawned {launch.shell!r} ({launch.cols}x{launch.rows})")
    return backend
