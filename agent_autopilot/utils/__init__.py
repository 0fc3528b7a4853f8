"""Utility functions for agent-autopilot."""

from agent_autopilot.utils.helpers import configure_logging, ensure_dir, get_data_path

__all__ = ["configure_logging", "ensure_dir", "get_data_path"]
