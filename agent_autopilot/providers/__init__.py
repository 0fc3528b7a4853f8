"""Decision providers and the CLI assistant registry."""

from agent_autopilot.providers.base import DecisionProvider, DecisionRequest
from agent_autopilot.providers.registry import CLI_DEFS, CLIDef, get_cli_def
from agent_autopilot.providers.openai_compat import PRESETS, OpenAICompatibleProvider

__all__ = [
    "CLIDef",
    "CLI_DEFS",
    "DecisionProvider",
    "DecisionRequest",
    "OpenAICompatibleProvider",
    "PRESETS",
    "get_cli_def",
]
