"""Decision provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class DecisionRequest:
    """What a decision provider receives for one call."""

    system_prompt: str
    task_description: str
    output_summary: str
    safety_level: str = "safe"
    user_prompt: str = "Analyze the terminal output above and answer with the JSON object only."
    output_label: str = "=== TERMINAL OUTPUT ==="

    def to_messages(self) -> list[dict[str, str]]:
        """Render as chat-completion messages."""
        return [
            {"role": "system", "content": self.system_prompt},
            {
                "role": "user",
                "content": (
                    f"SAFETY LEVEL: {self.safety_level}\n\n"
                    f"{self.output_label}\n{self.output_summary}\n\n{self.user_prompt}"
                ),
            },
        ]


class DecisionProvider(ABC):
    """
    Abstract base class for decision providers.

    Implementations talk to one language-model API and return the raw text of
    its answer. Parsing and validation happen in the decision client.
    Transport failures must be raised as `DecisionNetworkError`.
    """

    name: str = "provider"

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def complete(self, request: DecisionRequest) -> str:
        """
        Ask the model for the next action.

        Args:
            request: System prompt, task, summarized output and safety level.

        Returns:
            The raw response content, expected to be one JSON object.
        """
        pass

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the default model for this provider."""
        pass

    async def close(self) -> None:
        """Release provider resources."""
        return None
