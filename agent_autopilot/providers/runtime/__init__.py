"""PTY-level runtime hosting the supervised terminals."""

from .backend import PTYBackend, ShellLaunch, build_backend
from .host import PTYTerminalHost

__all__ = [
    "PTYBackend",
    "PTYTerminalHost",
    "ShellLaunch",
    "build_backend",
]
