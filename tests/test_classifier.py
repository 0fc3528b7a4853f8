"""Tests for output cleaning and classification."""

from agent_autopilot.engine.classifier import (
    classify,
    classify_text,
    clean_output,
    drop_sent_markers,
    is_ready,
    make_sent_marker,
    parse_stats,
    split_incomplete_escape,
    split_pending_echo,
)
from agent_autopilot.engine.models import Category
from agent_autopilot.providers.registry import get_cli_def

CLAUDE = get_cli_def("claude")
CODEX = get_cli_def("codex")


class TestCleaning:
    def test_strips_ansi_and_carriage_returns(self):
        assert clean_output("\x1b[32mhello\x1b[0m\r\nworld\r") == "hello\nworld"

    def test_strips_osc_title(self):
        assert clean_output("\x1b]0;claude\x07ready") == "ready"

    def test_split_incomplete_escape(self):
        assert split_incomplete_escape("abc\x1b[3") == ("abc", "\x1b[3")
        assert split_incomplete_escape("abc\x1b[31m") == ("abc\x1b[31m", "")

    def test_drop_sent_markers_and_echo(self):
        text = "before" + make_sent_marker(1, "fix the bug") + "❯ fix the bug\nafter\n"
        cleaned = drop_sent_markers(text, ["fix the bug"])
        assert "autopilot-sent" not in cleaned
        assert "fix the bug" not in cleaned
        assert "before" in cleaned and "after" in cleaned

    def test_wrapped_echo_is_dropped_as_a_whole(self):
        task = "Implement the CSV parser in parser.py. When the task is complete, run the whole test suite again"
        text = (
            "> Implement the CSV parser in parser.py. When the task is complete,\n"
            "  run the whole test suite again\n"
            "Reading parser.py"
        )
        assert drop_sent_markers(text, [task]).strip() == "Reading parser.py"
        result = classify_text(text, CLAUDE, sent_texts=[task])
        assert result.category != Category.COMPLETION_SIGNAL

    def test_echo_wrapped_mid_word(self):
        sent = "refactor the authentication middleware"
        text = "❯ refactor the authenti\ncation middleware\nok"
        assert drop_sent_markers(text, [sent]) == "ok"

    def test_unrelated_lines_sharing_a_prefix_are_kept(self):
        sent = "run the whole test suite again please"
        text = "run the whole test\nsuite failed: 3 errors\ndone"
        assert drop_sent_markers(text, [sent]) == text

    def test_echo_still_arriving(self):
        sent = "Implement the CSV parser in parser.py"
        assert drop_sent_markers("ok\n> Implement the CSV pars", [sent]) == "ok"
        assert split_pending_echo("ok\n> Implement the CSV pars", [sent]) == ("ok", "> Implement the CSV pars")
        assert split_pending_echo("ok\n> Impl", [sent]) == ("ok\n> Impl", "")


class TestClassify:
    def test_confirmation_prompt(self):
        result = classify_text("Write config.py\nProceed? (y/n)", CLAUDE)
        assert result.category == Category.WAITING_FOR_INPUT
        assert result.matched_rule == "confirmation"

    def test_readiness_prompt(self):
        result = classify_text("Welcome to Claude Code\n❯ ", CLAUDE)
        assert result.category == Category.READINESS_PROMPT
        assert result.matched_rule == "readiness"

    def test_codex_readiness_prompt(self):
        assert classify_text("OpenAI Codex\n› ", CODEX).category == Category.READINESS_PROMPT

    def test_completion_phrase(self):
        result = classify_text("Created app.py\nTask complete.", CLAUDE)
        assert result.category == Category.COMPLETION_SIGNAL
        assert result.matched_rule == "completion"

    def test_completion_above_prompt_is_also_matched(self):
        result = classify_text("All done!\n❯ ", CLAUDE)
        assert result.category == Category.READINESS_PROMPT
        assert result.has(Category.COMPLETION_SIGNAL)

    def test_offer_after_work(self):
        result = classify_text("Updated config.py\nIs there anything else?", CLAUDE)
        assert result.category == Category.COMPLETION_SIGNAL
        assert result.matched_rule == "offer_after_work"

    def test_offer_without_work_is_a_question(self):
        result = classify_text("Hello!\nIs there anything else?", CLAUDE)
        assert result.category == Category.WAITING_FOR_INPUT

    def test_spinner_is_working(self):
        result = classify_text("⠋ Reading files", CLAUDE)
        assert result.category == Category.WORKING_INDICATOR
        assert result.matched_rule == "working"

    def test_tool_banner_is_working(self):
        result = classify_text("Bash(npm install)", CLAUDE)
        assert result.category == Category.WORKING_INDICATOR

    def test_question(self):
        result = classify_text("Which database should I use?", CLAUDE)
        assert result.category == Category.WAITING_FOR_INPUT
        assert result.matched_rule == "question"

    def test_no_rule_without_idle_info(self):
        result = classify_text("compiled 3 modules", CLAUDE)
        assert result.category == Category.UNCLASSIFIED
        assert result.matched_rule is None

    def test_no_rule_after_idle_gap(self):
        result = classify_text("compiled 3 modules", CLAUDE, idle_for_s=2.0, idle_gap_s=1.5)
        assert result.category == Category.WAITING_FOR_INPUT
        assert result.matched_rule == "idle_gap"

    def test_no_rule_while_output_arrives(self):
        result = classify_text("compiled 3 modules", CLAUDE, idle_for_s=0.1, idle_gap_s=1.5)
        assert result.category == Category.WORKING_INDICATOR
        assert result.matched_rule == "output_arriving"

    def test_own_echo_is_ignored(self):
        result = classify_text("❯ fix the bug\n", CLAUDE, sent_texts=["fix the bug"])
        assert result.category == Category.UNCLASSIFIED

    def test_is_pure(self):
        text = "Created app.py\nProceed? (y/n)"
        assert classify_text(text, CLAUDE) == classify_text(text, CLAUDE)

    def test_classify_joins_chunk_and_tail(self):
        result = classify("\x1b[1mProceed? (y/n)\x1b[0m", "Edit(main.py)\n", CLAUDE)
        assert result.matched_rule == "confirmation"


class TestReadiness:
    def test_ready_at_prompt(self):
        assert is_ready("Welcome\n❯ ", CLAUDE)

    def test_not_ready_while_dialog_pending(self):
        assert not is_ready("Do you trust this folder? (y/n)\n❯ ", CLAUDE)

    def test_not_ready_mid_output(self):
        assert not is_ready("❯ \nReading files", CLAUDE)


def test_parse_stats():
    stats = parse_stats("Write(app.py)\nRead(setup.py)\n3 passed\n1 failed\nError: boom")
    assert stats == {
        "files_written": 1,
        "files_read": 1,
        "tests_passed": 3,
        "tests_failed": 1,
        "errors_encountered": 1,
    }
