"""OpenAI-compatible chat-completions decision provider (Groq, OpenAI)."""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from dataclasses import dataclass

from loguru import logger

from agent_autopilot.engine.errors import DecisionNetworkError, DecisionParseError
from agent_autopilot.providers.base import DecisionProvider, DecisionRequest


@dataclass(frozen=True)
class ProviderPreset:
    name: str
    api_base: str
    default_model: str


PRESETS: dict[str, ProviderPreset] = {
    "groq": ProviderPreset("groq", "https://api.groq.com/openai/v1", "llama-3.3-70b-versatile"),
    "openai": ProviderPreset("openai", "https://api.openai.com/v1", "gpt-4o-mini"),
}

# Statuses worth retrying: rate limits and server-side trouble.
_RETRYABLE_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class OpenAICompatibleProvider(DecisionProvider):
    """Calls `/chat/completions` with JSON-object response format.

    Blocking urllib calls run in a worker thread so the event loop keeps
    delivering terminal output while a decision is pending.
    """

    def __init__(
        self,
        provider: str = "groq",
        api_key: str | None = None,
        api_base: str | None = None,
        model: str | None = None,
        request_timeout_s: float = 15.0,
        temperature: float = 0.2,
        max_tokens: int = 200,
    ):
        key = (provider or "").strip().lower()
        if key not in PRESETS:
            choices = ", ".join(sorted(PRESETS))
            raise ValueError(f"Unknown decision provider '{provider}'. Expected one of: {choices}")
        self.preset = PRESETS[key]
        super().__init__(api_key=api_key, api_base=(api_base or self.preset.api_base).rstrip("/"))
        self.name = key
        self.model = model or self.preset.default_model
        self.request_timeout_s = request_timeout_s
        self.temperature = temperature
        self.max_tokens = max_tokens

    def get_default_model(self) -> str:
        return self.preset.default_model

    async def complete(self, request: DecisionRequest) -> str:
        if not self.api_key:
            raise DecisionNetworkError(f"No API key configured for {self.name}", retryable=False)
        return await asyncio.to_thread(self._single_request, request.to_messages())

    def _single_request(self, messages: list[dict[str, str]]) -> str:
        """Send one HTTP request. Returns the message content."""
        url = f"{self.api_base}/chat/completions"
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        req = urllib.request.Request(url=url, data=body, headers=headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=self.request_timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="ignore")
        except urllib.error.HTTPError as exc:
            body_text = exc.read().decode("utf-8", errors="ignore")
            raise DecisionNetworkError(
                f"{self.name} API HTTP {exc.code}: {body_text[:300] or exc.reason}",
                status=exc.code,
                retryable=exc.code in _RETRYABLE_STATUSES,
            ) from exc
        except urllib.error.URLError as exc:
            raise DecisionNetworkError(f"{self.name} API connection error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise DecisionNetworkError(f"{self.name} API timed out after {self.request_timeout_s}s") from exc

        return self._extract_content(raw)

    def _extract_content(self, raw: str) -> str:
        try:
            data = json.loads(raw)
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.debug(f"[decision] unexpected {self.name} payload: {raw[:200]!r}")
            raise DecisionParseError(f"Malformed {self.name} completion payload", raw=raw) from exc
        if not isinstance(content, str):
            raise DecisionParseError(f"{self.name} completion has no text content", raw=raw)
        return content
