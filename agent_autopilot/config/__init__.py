"""Configuration module for agent-autopilot."""

from agent_autopilot.config.loader import get_config_path, load_config, save_config
from agent_autopilot.config.schema import Config

__all__ = ["Config", "load_config", "save_config", "get_config_path"]
