"""Small filesystem and logging helpers."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the agent-autopilot data directory (~/.agent-autopilot)."""
    return ensure_dir(Path.home() / ".agent-autopilot")


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Route loguru output to stderr at `level`, plus an optional rotating file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file is not None:
        ensure_dir(log_file.parent)
        logger.add(log_file, level="DEBUG", rotation="5 MB", retention=3, encoding="utf-8")
