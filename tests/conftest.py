"""Shared fixtures: an in-memory terminal host, a scripted decision provider, fast timings."""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from agent_autopilot.config.schema import Config, RetryConfig, TimingConfig
from agent_autopilot.engine.errors import SessionProcessExited
from agent_autopilot.providers.base import DecisionProvider, DecisionRequest


class FakeHost:
    """Terminal host that records writes and lets tests inject output."""

    def __init__(self, max_sessions: int | None = None) -> None:
        self.max_sessions = max_sessions
        self.sessions: list[str] = []
        self.writes: list[tuple[str, str]] = []
        self.stopped: list[str] = []
        self.snapshots: dict[str, str] = {}
        self.dead: set[str] = set()
        self._subscribers: list[tuple[Callable, Callable | None]] = []

    async def create_session(self, cols: int = 120, rows: int = 40, cwd: str | None = None) -> str:
        if self.max_sessions is not None and len(self.sessions) >= self.max_sessions:
            raise RuntimeError("no terminal available")
        session_id = f"s{len(self.sessions) + 1}"
        self.sessions.append(session_id)
        return session_id

    async def write_text(self, text: str, session_id: str) -> bool:
        if session_id in self.dead:
            raise SessionProcessExited(session_id, 1)
        self.writes.append((session_id, text))
        return True

    def subscribe(self, on_data, on_exit=None):
        entry = (on_data, on_exit)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    async def stop_session(self, session_id: str) -> None:
        self.stopped.append(session_id)

    def snapshot(self, session_id: str) -> str:
        return self.snapshots.get(session_id, "")

    # Test helpers

    def emit(self, session_id: str, chunk: str) -> None:
        for on_data, _ in list(self._subscribers):
            on_data(chunk, session_id)

    def exit(self, session_id: str, exit_code: int | None = 1) -> None:
        self.dead.add(session_id)
        for _, on_exit in list(self._subscribers):
            if on_exit is not None:
                on_exit(session_id, exit_code)

    def writes_for(self, session_id: str) -> list[str]:
        return [text for sid, text in self.writes if sid == session_id]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class FakeDecisionProvider(DecisionProvider):
    """Answers from a script; exceptions in the script are raised.

    When the script runs out, every further call answers `wait`.
    """

    name = "fake"

    def __init__(self, responses: list | None = None, delay: float = 0.0) -> None:
        super().__init__(api_key="test-key")
        self.responses = list(responses or [])
        self.delay = delay
        self.requests: list[DecisionRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def complete(self, request: DecisionRequest) -> str:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            item = self.responses.pop(0) if self.responses else '{"action": "wait"}'
            if isinstance(item, BaseException):
                raise item
            return item
        finally:
            self.in_flight -= 1

    def get_default_model(self) -> str:
        return "fake-model"


def make_config(**overrides) -> Config:
    """Config with millisecond timings."""
    timing = TimingConfig(
        idle_waiting_s=0.05,
        idle_working_s=0.2,
        idle_default_s=0.1,
        fast_path_settle_s=0.01,
        readiness_timeout_s=0.3,
        race_ceiling_s=5.0,
        tick_interval_s=0.02,
        orchestrator_readiness_timeout_s=0.3,
    )
    config = Config(timing=timing, retry=RetryConfig(max_attempts=8, base_delay_s=0.001, max_delay_s=0.004))
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def make_provider():
    return FakeDecisionProvider


@pytest.fixture
def make_host():
    return FakeHost
