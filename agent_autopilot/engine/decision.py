"""Decision client: bounded context in, validated `Decision` out."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from agent_autopilot.engine.context import DecisionContext, summarize_output
from agent_autopilot.engine.errors import DecisionParseError
from agent_autopilot.engine.models import Decision, DecisionAction, DecisionSource, SafetyLevel
from agent_autopilot.providers.base import DecisionProvider, DecisionRequest


class DecisionPayload(BaseModel):
    """The only response shape a provider may return."""

    model_config = ConfigDict(extra="forbid")

    action: Literal["wait", "send", "done"]
    text: str | None = None

    @model_validator(mode="after")
    def _send_needs_text(self) -> "DecisionPayload":
        if self.action == "send" and not (self.text or "").strip():
            raise ValueError("action 'send' requires non-empty text")
        return self


def parse_decision(raw: str, latency_ms: float = 0.0) -> Decision:
    """Validate a raw provider answer against the `{action, text}` contract."""
    text = (raw or "").strip()
    if not text:
        raise DecisionParseError("Empty decision response", raw=raw)
    try:
        data = json.loads(text)
    except ValueError as e:
        raise DecisionParseError(f"Decision is not valid JSON: {e}", raw=raw) from e
    if not isinstance(data, dict):
        raise DecisionParseError("Decision must be a JSON object", raw=raw)
    try:
        payload = DecisionPayload.model_validate(data)
    except ValidationError as e:
        raise DecisionParseError(f"Decision does not match contract: {e.errors()[0]['msg']}", raw=raw) from e

    action = DecisionAction(payload.action)
    return Decision(
        action=action,
        text=payload.text.strip() if action == DecisionAction.SEND and payload.text else None,
        source=DecisionSource.LLM,
        latency_ms=latency_ms,
    )


class DecisionClient:
    """Formats a decision request and calls the provider once per `decide()`.

    Single-flight per session is the supervisor's job. The optional shared
    semaphore caps in-flight calls across sessions.
    """

    def __init__(
        self,
        provider: DecisionProvider,
        safety_level: SafetyLevel | str = SafetyLevel.SAFE,
        summary_max_chars: int = 4000,
        limiter: asyncio.Semaphore | None = None,
    ):
        self.provider = provider
        self.safety_level = SafetyLevel(safety_level)
        self.summary_max_chars = summary_max_chars
        self.limiter = limiter
        self.calls = 0

    def build_request(self, context: DecisionContext) -> DecisionRequest:
        return DecisionRequest(
            system_prompt=context.build_system_prompt(),
            task_description=context.task,
            output_summary=summarize_output(context.output, self.summary_max_chars),
            safety_level=self.safety_level.value,
        )

    async def decide(self, context: DecisionContext) -> Decision:
        """One provider call. Raises DecisionParseError / DecisionNetworkError."""
        request = self.build_request(context)
        self.calls += 1
        started = time.monotonic()
        if self.limiter is not None:
            async with self.limiter:
                raw = await self.provider.complete(request)
        else:
            raw = await self.provider.complete(request)
        latency_ms = (time.monotonic() - started) * 1000
        decision = parse_decision(raw, latency_ms=latency_ms)
        logger.debug(f"[decision] {decision.action.value} in {latency_ms:.0f}ms via {self.provider.name}")
        return decision

    async def complete_raw(self, request: DecisionRequest) -> str:
        """Unvalidated provider call, used for task decomposition."""
        if self.limiter is not None:
            async with self.limiter:
                return await self.provider.complete(request)
        return await self.provider.complete(request)
