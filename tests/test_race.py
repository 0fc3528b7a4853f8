"""Tests for competitive mode: scoring, delivery, and the race lifecycle."""

import asyncio

import pytest

from agent_autopilot.coordination.race import (
    CompetitionCoordinator,
    MetricsTracker,
    RaceMetrics,
    RaceStatus,
    compute_score,
)
from agent_autopilot.engine.errors import InsufficientSessionsError

TASK = "Implement a rate limiter with tests"


class TestScore:
    def test_reference_values(self):
        assert compute_score(tests_passed=2, files_created=3, lines_of_code=150, errors_hit=1) == pytest.approx(100.0)

    def test_is_deterministic(self):
        assert compute_score(1, 1, 7, 0) == compute_score(1, 1, 7, 0)

    def test_lines_are_not_floored(self):
        assert compute_score(0, 0, 15, 0) == pytest.approx(1.5)

    def test_higher_score_ranks_first(self):
        low = RaceMetrics("s1", "claude", order=0, tests_passed=1)
        high = RaceMetrics("s2", "codex", order=1, tests_passed=2)
        assert sorted([low, high], key=RaceMetrics.rank_key)[0] is high

    def test_tie_broken_by_earliest_completion(self):
        late = RaceMetrics("s1", "claude", order=0, files_created=1, completed_at=20.0)
        early = RaceMetrics("s2", "codex", order=1, files_created=1, completed_at=10.0)
        assert sorted([late, early], key=RaceMetrics.rank_key)[0] is early

    def test_tie_without_completion_broken_by_delivery_then_order(self):
        first = RaceMetrics("s1", "claude", order=0, task_sent_at=5.0)
        second = RaceMetrics("s2", "codex", order=1, task_sent_at=3.0)
        assert sorted([first, second], key=RaceMetrics.rank_key)[0] is second
        a = RaceMetrics("s1", "claude", order=0)
        b = RaceMetrics("s2", "codex", order=1)
        assert sorted([b, a], key=RaceMetrics.rank_key)[0] is a


class TestMetricsTracker:
    def test_extracts_metrics_from_output(self):
        metrics = RaceMetrics("s1", "claude", order=0, task_sent_at=1.0)
        tracker = MetricsTracker(metrics)
        tracker.feed("Created src/limiter.py\n")
        tracker.feed("\x1b[32m12 passed\x1b[0m in 0.4s\n")
        tracker.feed("def allow(self, key):\nclass RateLimiter:\n")
        tracker.feed("Error: boom\n")
        assert metrics.files_created == 1
        assert metrics.tests_passed == 12
        assert metrics.lines_of_code == 2
        assert metrics.errors_hit == 1
        assert metrics.status == RaceStatus.RUNNING

    def test_test_count_never_decreases(self):
        metrics = RaceMetrics("s1", "claude", order=0)
        tracker = MetricsTracker(metrics)
        tracker.feed("8 passed\n")
        tracker.feed("3 passed\n")
        assert metrics.tests_passed == 8

    def test_partial_line_scored_once_complete(self):
        metrics = RaceMetrics("s1", "claude", order=0)
        tracker = MetricsTracker(metrics)
        tracker.feed("12 pas")
        assert metrics.tests_passed == 0
        tracker.feed("sed\n")
        assert metrics.tests_passed == 12

    def test_echo_of_sent_text_is_not_scored(self):
        metrics = RaceMetrics("s1", "claude", order=0)
        sent = ["Create hello.py and fix the error: in main.py"]
        tracker = MetricsTracker(metrics, sent_texts=lambda: sent)
        tracker.feed("> Create hello.py and fix the error: in main.py\r\n")
        assert (metrics.files_created, metrics.errors_hit, metrics.score) == (0, 0, 0)

        tracker.feed("Created hello.py\n")
        assert metrics.files_created == 1
        assert metrics.errors_hit == 0

    def test_wrapped_echo_split_across_chunks_is_not_scored(self):
        metrics = RaceMetrics("s1", "claude", order=0)
        sent = ["Create the parser module and make sure every error: path has a test"]
        tracker = MetricsTracker(metrics, sent_texts=lambda: sent)
        tracker.feed("> Create the parser module and make sure every\r\n")
        tracker.feed("  error: path has a test\r\n")
        assert metrics.files_created == 0
        assert metrics.errors_hit == 0


class TestRace:
    @pytest.mark.asyncio
    async def test_ready_and_fallback_delivery_then_winner(self, host, config, eventually):
        config.timing.readiness_timeout_s = 0.2
        coordinator = CompetitionCoordinator(host, config=config)
        await coordinator.start(TASK, ["claude", "codex"], launch=False)
        claude_id, codex_id = host.sessions

        host.emit(claude_id, "Welcome\n❯ ")
        await eventually(lambda: host.writes_for(claude_id) == [TASK])
        assert host.writes_for(codex_id) == []

        await eventually(lambda: host.writes_for(codex_id) == [TASK])
        await asyncio.sleep(0.1)
        assert host.writes_for(codex_id) == [TASK]

        claude, codex = coordinator.metrics[claude_id], coordinator.metrics[codex_id]
        assert claude.task_sent_at < codex.task_sent_at
        assert coordinator.supervisors[codex_id].readiness_timeout is not None
        assert coordinator.supervisors[claude_id].readiness_timeout is None
        sent = [e for e in coordinator.log.entries if e.message.startswith("Task sent")]
        assert [e.detail for e in sent] == ["ready", "fallback"]

        host.emit(claude_id, "\nError: module not found\n")
        host.emit(codex_id, "\n5 tests passed\nCreated limiter.py\n")
        host.emit(codex_id, "\nTask complete.\n")

        result = await coordinator.wait(timeout=2.0)
        assert result.reason == "codex completed"
        assert result.winner.provider == "codex"
        assert result.winner.score == pytest.approx(160.0)
        assert [m.provider for m in result.metrics] == ["codex", "claude"]
        assert coordinator.supervisors[claude_id].is_finished

    @pytest.mark.asyncio
    async def test_needs_two_sessions(self, make_host, config):
        host = make_host(max_sessions=1)
        coordinator = CompetitionCoordinator(host, config=config)
        with pytest.raises(InsufficientSessionsError):
            await coordinator.start(TASK, ["claude", "codex"], launch=False)
        assert host.writes == []
        assert host.stopped == ["s1"]
        assert not coordinator.is_finished

    @pytest.mark.asyncio
    async def test_needs_exactly_two_providers(self, host, config):
        coordinator = CompetitionCoordinator(host, config=config)
        with pytest.raises(ValueError):
            await coordinator.start(TASK, ["claude"])

    @pytest.mark.asyncio
    async def test_ceiling_ends_race(self, host, config):
        config.timing.race_ceiling_s = 0.15
        coordinator = CompetitionCoordinator(host, config=config)
        await coordinator.start(TASK, ["claude", "gemini"], launch=False)
        result = await coordinator.wait(timeout=2.0)
        assert result.reason.startswith("ceiling")
        assert all(s.is_finished for s in coordinator.supervisors.values())

    @pytest.mark.asyncio
    async def test_stop(self, host, config):
        coordinator = CompetitionCoordinator(host, config=config)
        await coordinator.start(TASK, ["claude", "codex"], launch=False)
        coordinator.stop()
        result = await coordinator.wait(timeout=1.0)
        assert result.reason == "stopped"
        assert all(m.completed_at is None for m in result.metrics)

    @pytest.mark.asyncio
    async def test_all_errored_ends_race(self, host, config):
        coordinator = CompetitionCoordinator(host, config=config)
        await coordinator.start(TASK, ["claude", "codex"], launch=False)
        for sid in host.sessions:
            host.exit(sid)
        result = await coordinator.wait(timeout=1.0)
        assert result.reason == "all competitors errored"
        assert all(m.status == RaceStatus.ERROR for m in result.metrics)

    @pytest.mark.asyncio
    async def test_launch_commands(self, host, config, eventually):
        config.cli.claude = "claude --model sonnet"
        coordinator = CompetitionCoordinator(host, config=config)
        await coordinator.start(TASK, ["claude", "codex"])
        await eventually(lambda: host.writes_for("s1") == ["claude --model sonnet"])
        assert host.writes_for("s2") == ["codex"]
        coordinator.stop()
