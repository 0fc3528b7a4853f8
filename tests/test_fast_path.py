"""Tests for the fast-path router and safety gating."""

import pytest

from agent_autopilot.engine.fast_path import FastPathRouter, is_dangerous
from agent_autopilot.engine.models import Category, ClassificationResult, SafetyLevel

CONFIRMATION = ClassificationResult(Category.WAITING_FOR_INPUT, matched_rule="confirmation")


@pytest.fixture
def router():
    return FastPathRouter()


def test_yes_no_prompt_answered_with_y(router):
    match = router.route("Write config.py\nProceed? (y/n)", "claude", CONFIRMATION)
    assert match is not None
    assert match.rule == "yes_no"
    assert match.response == "y"
    assert "Write config.py" in match.question


def test_claude_trust_dialog_picks_menu_entry(router):
    screen = "Do you trust the files in this folder?\n❯ 1. Yes, I trust this folder\n  2. No, exit"
    match = router.route(screen, "claude", CONFIRMATION)
    assert match.rule == "claude_trust_folder"
    assert match.response == "1"


def test_provider_specific_rule_skipped_for_other_providers(router):
    screen = "Do you trust the files in this folder?\n❯ 1. Yes, I trust this folder\n  2. No, exit"
    match = router.route(screen, "gemini", CONFIRMATION)
    assert match.rule == "trust_project"
    assert match.response == "y"


def test_press_enter_sends_bare_enter(router):
    match = router.route("Setup finished\nPress Enter to continue", "codex", CONFIRMATION)
    assert match.response == ""


def test_only_confirmations_are_routed(router):
    question = ClassificationResult(Category.WAITING_FOR_INPUT, matched_rule="question")
    assert router.route("Proceed? (y/n)", "claude", question) is None


def test_no_rule_no_match(router):
    assert router.route("Allow access to the network", "claude", CONFIRMATION) is None


def test_dangerous_confirmation_vetoed_at_safe(router):
    screen = "Bash(rm -rf build/)\nProceed? (y/n)"
    assert router.route(screen, "claude", CONFIRMATION, SafetyLevel.SAFE) is None


@pytest.mark.parametrize("level", [SafetyLevel.MODERATE, SafetyLevel.YOLO])
def test_dangerous_confirmation_approved_above_safe(router, level):
    screen = "Bash(rm -rf build/)\nProceed? (y/n)"
    assert router.route(screen, "claude", CONFIRMATION, level).response == "y"


def test_is_dangerous():
    assert is_dangerous("git push --force origin main", "safe")
    assert is_dangerous("DROP DATABASE prod;", SafetyLevel.MODERATE)
    assert not is_dangerous("rm -rf /tmp/x", SafetyLevel.YOLO)
    assert not is_dangerous("npm test", SafetyLevel.SAFE)
