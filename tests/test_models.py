"""Tests for the shared engine types."""

import pytest

from agent_autopilot.engine.models import (
    ActivityLog,
    Category,
    ClassificationResult,
    Decision,
    DecisionAction,
    DecisionSource,
    SessionState,
    SessionStats,
)


def test_terminal_states():
    assert SessionState.COMPLETED.is_terminal
    assert SessionState.STOPPED.is_terminal
    assert SessionState.ERRORED.is_terminal
    assert not SessionState.OBSERVING.is_terminal


def test_classification_result_has():
    result = ClassificationResult(
        Category.WORKING_INDICATOR,
        matched_rule="working",
        also_matched=frozenset({Category.COMPLETION_SIGNAL}),
    )
    assert result.has(Category.WORKING_INDICATOR)
    assert result.has(Category.COMPLETION_SIGNAL)
    assert not result.has(Category.WAITING_FOR_INPUT)


class TestDecision:
    def test_llm_send_needs_text(self):
        with pytest.raises(ValueError):
            Decision(DecisionAction.SEND)
        with pytest.raises(ValueError):
            Decision(DecisionAction.SEND, text="   ")

    def test_fast_path_may_send_bare_enter(self):
        decision = Decision(DecisionAction.SEND, text="", source=DecisionSource.FAST_PATH)
        assert decision.text == ""

    def test_text_dropped_for_non_send(self):
        assert Decision(DecisionAction.WAIT, text="ignored").text is None
        assert Decision(DecisionAction.DONE, text="ignored").text is None


class TestActivityLog:
    def test_bounded(self):
        log = ActivityLog(max_entries=3)
        for i in range(5):
            log.add("info", f"entry {i}")
        assert len(log) == 3
        assert [e.message for e in log.entries] == ["entry 2", "entry 3", "entry 4"]
        assert log.last.message == "entry 4"

    def test_listeners(self):
        log = ActivityLog(session_id="s1")
        seen = []

        def broken(_entry):
            raise RuntimeError("boom")

        log.add_listener(broken)
        remove = log.add_listener(seen.append)
        log.add("input", "Sending: y")
        remove()
        log.add("input", "Sending: n")

        assert [e.message for e in seen] == ["Sending: y"]
        assert len(log) == 2

    def test_format(self):
        log = ActivityLog(session_id="T1:claude")
        entry = log.add("fast-path", "trust: answering '1'", detail="Trust this folder?")
        text = entry.format()
        assert "T1:claude [fast-path] trust: answering '1' (Trust this folder?)" in text
        assert log.kinds() == ["fast-path"]


def test_session_stats_update_ignores_unknown_keys():
    stats = SessionStats()
    stats.update({"files_written": 2, "tests_passed": 7, "bogus": 1})
    assert stats.files_written == 2
    assert stats.tests_passed == 7
    assert not hasattr(stats, "bogus")
