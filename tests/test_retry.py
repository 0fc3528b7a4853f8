"""Tests for exponential backoff."""

import pytest

from agent_autopilot.engine.errors import DecisionNetworkError, DecisionParseError, MaxRetriesExceeded
from agent_autopilot.engine.retry import BackoffPolicy, RetryController


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FailingCall:
    def __init__(self, failures, error=None, result="ok"):
        self.failures = failures
        self.error = error or DecisionNetworkError("connection reset")
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            raise self.error
        return self.result


def test_delays_double_up_to_cap():
    policy = BackoffPolicy(base_delay_s=1.0, max_delay_s=30.0, max_attempts=8)
    delays = [policy.delay_for(attempt) for attempt in range(8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]
    assert delays == sorted(delays)


def test_policy_validation():
    with pytest.raises(ValueError):
        BackoffPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        BackoffPolicy(base_delay_s=-1)


@pytest.mark.asyncio
async def test_gives_up_after_exactly_max_attempts():
    sleep = SleepRecorder()
    controller = RetryController(BackoffPolicy(base_delay_s=0.5, max_delay_s=4.0, max_attempts=8), sleep=sleep)
    call = FailingCall(failures=None)

    with pytest.raises(MaxRetriesExceeded) as exc_info:
        await controller.run("s1:decision", call)

    assert call.calls == 8
    assert sleep.delays == [0.5, 1.0, 2.0, 4.0, 4.0, 4.0, 4.0]
    assert exc_info.value.attempts == 8
    assert isinstance(exc_info.value.last_error, DecisionNetworkError)
    assert controller.state("s1:decision") is None


@pytest.mark.asyncio
async def test_recovers_after_transient_failures():
    sleep = SleepRecorder()
    retried = []
    controller = RetryController(BackoffPolicy(base_delay_s=1.0, max_delay_s=30.0), sleep=sleep)
    call = FailingCall(failures=3, error=DecisionParseError("bad json"))

    result = await controller.run("s1:decision", call, on_retry=lambda state, e: retried.append(state.attempt))

    assert result == "ok"
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert retried == [0, 1, 2]


@pytest.mark.asyncio
async def test_permanent_looking_errors_still_use_every_attempt():
    sleep = SleepRecorder()
    controller = RetryController(BackoffPolicy(base_delay_s=1.0, max_delay_s=4.0, max_attempts=8), sleep=sleep)
    call = FailingCall(failures=None, error=DecisionNetworkError("unauthorized", status=401, retryable=False))

    with pytest.raises(MaxRetriesExceeded) as exc_info:
        await controller.run("s1:decision", call)

    assert call.calls == 8
    assert sleep.delays == [1.0, 2.0, 4.0, 4.0, 4.0, 4.0, 4.0]
    assert exc_info.value.attempts == 8


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    controller = RetryController(sleep=SleepRecorder())
    call = FailingCall(failures=None, error=RuntimeError("bug"))
    with pytest.raises(RuntimeError):
        await controller.run("s1:decision", call)
    assert call.calls == 1
