"""Exponential backoff around decision calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from agent_autopilot.engine.errors import DecisionNetworkError, DecisionParseError, MaxRetriesExceeded

T = TypeVar("T")

# Only these are recoverable locally; anything else propagates to the caller.
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (DecisionParseError, DecisionNetworkError)

SleepFn = Callable[[float], Awaitable[None]]
RetryCallback = Callable[["RetryState", Exception], None]


@dataclass(frozen=True)
class BackoffPolicy:
    """`delay = min(max_delay_s, base_delay_s * 2 ** attempt)`."""

    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    max_attempts: int = 8

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("backoff delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the failure of 0-based `attempt`."""
        return min(self.max_delay_s, self.base_delay_s * (2 ** max(0, attempt)))


@dataclass
class RetryState:
    """Bookkeeping for one (session, call-kind) pair. Dropped on success or exhaustion."""

    key: str
    max_attempts: int
    attempt: int = 0
    next_delay_s: float = 0.0
    delays: list[float] = field(default_factory=list)


class RetryController:
    """Runs a call factory until it succeeds or `max_attempts` calls have failed.

    The sleep function is injectable so tests can observe delays without
    waiting for them. Cancellation during a backoff sleep propagates.
    """

    def __init__(self, policy: BackoffPolicy | None = None, sleep: SleepFn | None = None) -> None:
        self.policy = policy or BackoffPolicy()
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._states: dict[str, RetryState] = {}

    def state(self, key: str) -> RetryState | None:
        return self._states.get(key)

    async def run(
        self,
        key: str,
        call: Callable[[], Awaitable[T]],
        on_retry: RetryCallback | None = None,
    ) -> T:
        state = RetryState(key=key, max_attempts=self.policy.max_attempts)
        self._states[key] = state
        try:
            while True:
                try:
                    return await call()
                except RETRYABLE_ERRORS as e:
                    if not getattr(e, "retryable", True) and state.attempt == 0:
                        logger.warning(f"[retry] {key}: {e} looks permanent, retrying anyway")
                    if state.attempt + 1 >= state.max_attempts:
                        logger.warning(f"[retry] {key}: giving up after {state.max_attempts} attempts: {e}")
                        raise MaxRetriesExceeded(key, state.max_attempts, e) from e
                    state.next_delay_s = self.policy.delay_for(state.attempt)
                    state.delays.append(state.next_delay_s)
                    logger.info(
                        f"[retry] {key}: attempt {state.attempt + 1}/{state.max_attempts} failed "
                        f"({type(e).__name__}), retrying in {state.next_delay_s:.2f}s"
                    )
                    if on_retry is not None:
                        on_retry(state, e)
                    await self._sleep(state.next_delay_s)
                    state.attempt += 1
        finally:
            self._states.pop(key, None)
