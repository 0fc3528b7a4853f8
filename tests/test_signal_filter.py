"""Tests for terminal noise filtering."""

import pytest

from agent_autopilot.engine.signal_filter import filter_noise_lines, is_noise_line


@pytest.mark.parametrize(
    "line",
    [
        "",
        "   ",
        "────────────────",
        "⠋ Thinking...",
        "...",
        "❯ ",
        "? for shortcuts",
        "esc to cancel",
        "42% context left",
        "/model gpt-4o  12.4 MB  31 tok/s",
    ],
)
def test_noise_lines(line):
    assert is_noise_line(line)


@pytest.mark.parametrize("line", ["Created src/app.py", "Do you want to proceed? (y/n)", "3 tests passed"])
def test_content_lines(line):
    assert not is_noise_line(line)


def test_filter_keeps_content_and_code_blocks():
    text = "⠙ Working...\nWrote server.py\n```\n────\n```\n───────\n\n"
    assert filter_noise_lines(text) == "Wrote server.py\n```\n────\n```"
