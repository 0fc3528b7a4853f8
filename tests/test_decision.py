"""Tests for the decision contract, client, prompt context and HTTP provider."""

import asyncio
import io
import json
import urllib.error

import pytest

from agent_autopilot.engine.context import (
    DecisionContext,
    SessionDigest,
    format_digest,
    is_semantically_duplicate,
    summarize_output,
)
from agent_autopilot.engine.decision import DecisionClient, parse_decision
from agent_autopilot.engine.errors import DecisionNetworkError, DecisionParseError
from agent_autopilot.engine.models import Decision, DecisionAction, DecisionSource
from agent_autopilot.providers.base import DecisionRequest
from agent_autopilot.providers.openai_compat import OpenAICompatibleProvider


class TestParseDecision:
    def test_send(self):
        decision = parse_decision('{"action": "send", "text": "  npm test  "}', latency_ms=12.0)
        assert decision.action == DecisionAction.SEND
        assert decision.text == "npm test"
        assert decision.source == DecisionSource.LLM
        assert decision.latency_ms == 12.0

    def test_wait_drops_text(self):
        decision = parse_decision('{"action": "wait", "text": "ignored"}')
        assert decision.action == DecisionAction.WAIT
        assert decision.text is None

    def test_done(self):
        assert parse_decision('{"action": "done"}').action == DecisionAction.DONE

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "not json",
            '["send", "y"]',
            '{"action": "maybe"}',
            '{"action": "send"}',
            '{"action": "send", "text": "   "}',
            '{"action": "wait", "reason": "extra keys are not allowed"}',
            'Sure! {"action": "wait"}',
        ],
    )
    def test_rejects_anything_else(self, raw):
        with pytest.raises(DecisionParseError) as exc_info:
            parse_decision(raw)
        assert exc_info.value.raw == raw


class TestDecisionModel:
    def test_llm_send_requires_text(self):
        with pytest.raises(ValueError):
            Decision(DecisionAction.SEND, text="", source=DecisionSource.LLM)

    def test_fast_path_may_send_bare_enter(self):
        assert Decision(DecisionAction.SEND, text="", source=DecisionSource.FAST_PATH).text == ""


class TestDecisionClient:
    @pytest.mark.asyncio
    async def test_decide_builds_bounded_request(self, make_provider):
        provider = make_provider(['{"action": "send", "text": "y"}'])
        client = DecisionClient(provider, safety_level="moderate", summary_max_chars=500)
        context = DecisionContext(task="Add a login page", output="line\n" * 2000, task_sent=True)

        decision = await client.decide(context)

        assert decision.text == "y"
        assert client.calls == 1
        request = provider.requests[0]
        assert request.safety_level == "moderate"
        assert request.task_description == "Add a login page"
        assert len(request.output_summary) <= 500
        assert "Add a login page" in request.system_prompt
        assert "ALREADY been sent" in request.system_prompt

    @pytest.mark.asyncio
    async def test_parse_error_propagates(self, make_provider):
        client = DecisionClient(make_provider(["nope"]))
        with pytest.raises(DecisionParseError):
            await client.decide(DecisionContext(task="t", output=""))

    @pytest.mark.asyncio
    async def test_limiter_caps_concurrent_calls(self, make_provider):
        provider = make_provider(delay=0.02)
        client = DecisionClient(provider, limiter=asyncio.Semaphore(1))
        context = DecisionContext(task="t", output="x")
        await asyncio.gather(*(client.decide(context) for _ in range(3)))
        assert provider.max_in_flight == 1
        assert len(provider.requests) == 3


class TestContext:
    def test_takeover_note(self):
        prompt = DecisionContext(task="t", output="", takeover=True).build_system_prompt()
        assert "TAKEOVER" in prompt

    def test_urgency_after_repeated_waits(self):
        calm = DecisionContext(task="t", output="", consecutive_waits=1).build_system_prompt()
        urgent = DecisionContext(task="t", output="", consecutive_waits=2, waiting_for_s=40).build_system_prompt()
        assert "URGENT" not in calm
        assert "URGENT" in urgent

    def test_periodic_task_reminder(self):
        assert "REMINDER" in DecisionContext(task="t", output="", decision_count=10).build_system_prompt()
        assert "REMINDER" not in DecisionContext(task="t", output="", decision_count=9).build_system_prompt()

    def test_last_sent_and_notes(self):
        prompt = DecisionContext(task="t", output="", last_sent="npm test", notes=["extra note"]).build_system_prompt()
        assert '"npm test"' in prompt
        assert "extra note" in prompt

    def test_digest_excludes_own_session(self):
        digests = [
            SessionDigest("s1", "T1:claude", "observing", "backend", "  wrote api.py"),
            SessionDigest("s2", "T2:codex", "observing", "frontend", "  wrote app.tsx"),
        ]
        text = format_digest(digests, exclude="s1")
        assert "T2:codex" in text
        assert "T1:claude" not in text

    def test_summary_keeps_head_key_lines_and_tail(self):
        lines = [f"head {i}" for i in range(10)]
        lines += [f"noise filler {i}" for i in range(300)]
        lines[150] = "Error: database connection refused"
        lines += [f"tail {i}" for i in range(30)]
        summary = summarize_output("\n".join(lines), max_chars=2000)
        assert len(summary) <= 2000
        assert "head 0" in summary
        assert "Error: database connection refused" in summary
        assert "tail 29" in summary

    def test_short_output_unchanged(self):
        assert summarize_output("one\ntwo", max_chars=100) == "one\ntwo"

    def test_semantic_duplicate(self):
        recent = ["please run the unit tests now"]
        assert is_semantically_duplicate("please run the unit tests", recent)
        assert not is_semantically_duplicate("deploy the staging build", recent)
        assert not is_semantically_duplicate("y", recent)


class _FakeResponse:
    def __init__(self, payload: dict):
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TestOpenAICompatibleProvider:
    def _request(self) -> DecisionRequest:
        return DecisionRequest(system_prompt="sys", task_description="task", output_summary="out")

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            OpenAICompatibleProvider(provider="nope")

    @pytest.mark.asyncio
    async def test_missing_key_is_not_retryable(self):
        provider = OpenAICompatibleProvider(provider="groq", api_key="")
        with pytest.raises(DecisionNetworkError) as exc_info:
            await provider.complete(self._request())
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_returns_message_content(self, monkeypatch):
        sent = {}

        def fake_urlopen(req, timeout):
            sent["url"] = req.full_url
            sent["body"] = json.loads(req.data.decode("utf-8"))
            return _FakeResponse({"choices": [{"message": {"content": '{"action": "wait"}'}}]})

        monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
        provider = OpenAICompatibleProvider(provider="openai", api_key="sk-test", model="gpt-test")

        content = await provider.complete(self._request())

        assert content == '{"action": "wait"}'
        assert sent["url"] == "https://api.openai.com/v1/chat/completions"
        assert sent["body"]["model"] == "gpt-test"
        assert sent["body"]["response_format"] == {"type": "json_object"}
        assert sent["body"]["messages"][0] == {"role": "system", "content": "sys"}

    @pytest.mark.parametrize("status,retryable", [(429, True), (503, True), (401, False)])
    def test_http_errors(self, monkeypatch, status, retryable):
        def fake_urlopen(req, timeout):
            raise urllib.error.HTTPError(req.full_url, status, "err", {}, io.BytesIO(b"problem"))

        monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
        provider = OpenAICompatibleProvider(provider="groq", api_key="gsk-test")
        with pytest.raises(DecisionNetworkError) as exc_info:
            provider._single_request(self._request().to_messages())
        assert exc_info.value.status == status
        assert exc_info.value.retryable is retryable

    def test_malformed_payload(self, monkeypatch):
        monkeypatch.setattr("urllib.request.urlopen", lambda req, timeout: _FakeResponse({"choices": []}))
        provider = OpenAICompatibleProvider(provider="groq", api_key="gsk-test")
        with pytest.raises(DecisionParseError):
            provider._single_request(self._request().to_messages())
