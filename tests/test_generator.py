from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, List

import pytest

from companion_relay.clients import openai_client
from companion_relay.clients.openai_client import (
    FALLBACK_FEEDBACK,
    ResponseGenerator,
    normalize_api_base,
    parse_score_payload,
)
from companion_relay.core.errors import GeneratorError
from companion_relay.memory.models import Message


class _UpstreamError(Exception):
    def __init__(self, status_code: int, message: str = "upstream failure") -> None:
        super().__init__(message)
        self.status_code = status_code


class _FakeOpenAI:
    """Mimics the slice of AsyncOpenAI the generator touches."""

    def __init__(self, output_text: str = "hey there", chat_text: str = "chat reply",
                 failures: List[BaseException] = None) -> None:
        self.output_text = output_text
        self.chat_text = chat_text
        self.failures = list(failures or [])
        self.conversation_calls: List[dict] = []
        self.response_calls: List[dict] = []
        self.chat_calls: List[dict] = []

        self.conversations = SimpleNamespace(create=self._create_conversation)
        self.responses = SimpleNamespace(create=self._create_response)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create_chat))

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    async def _create_conversation(self, **kwargs: Any):
        self._maybe_fail()
        self.conversation_calls.append(kwargs)
        return SimpleNamespace(id=f"conv_{len(self.conversation_calls)}")

    async def _create_response(self, **kwargs: Any):
        self._maybe_fail()
        self.response_calls.append(kwargs)
        return SimpleNamespace(output_text=self.output_text)

    async def _create_chat(self, **kwargs: Any):
        self._maybe_fail()
        self.chat_calls.append(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.chat_text))])


def _msg(i: int, role: str, content: str) -> Message:
    return Message(id=i, conversation_id=1, role=role, content=content, timestamp="2026-01-01T00:00:00.000000Z")


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch):
    monkeypatch.setattr(openai_client, "_backoff_delay", lambda attempt: 0.0)


# ---------------------------------------------------------------------------
# Score parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('{"score": 7, "feedback": "Good opener."}', 7),
        ('{"connectionScore": 3, "feedback": "Too generic."}', 3),
        ('{"score": 0.8, "feedback": "Nice."}', 8),
        ('{"score": 42, "feedback": "Over the top."}', 10),
        ('{"score": -3, "feedback": "Rude."}', 1),
        ('{"score": 6.6, "feedback": "Close."}', 7),
    ],
)
def test_parse_score_payload_normalizes_onto_scale(raw, expected):
    assert parse_score_payload(raw).score == expected


def test_parse_score_payload_salvages_truncated_json():
    result = parse_score_payload('{"score": 6, "feedback": "Ask about their weekend and')

    assert result.score == 6
    assert result.feedback.startswith("Ask about their weekend")
    assert result.feedback.endswith("...")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('{"score": 1, "feedback": "That came across as dismissive and', 1),
        ('{"score": 0, "feedback": "Hostile opener that', 1),
        ('{"connectionScore": 0.3, "feedback": "Generic', 3),
    ],
)
def test_truncated_payload_keeps_integer_scores_on_scale(raw, expected):
    assert parse_score_payload(raw).score == expected


def test_parse_score_payload_without_feedback_uses_fallback_text():
    assert parse_score_payload('{"score": 4}').feedback == FALLBACK_FEEDBACK


@pytest.mark.parametrize("raw", ["", "not json at all", "[1, 2, 3]", '{"score": "high"}', '{"score": true}'])
def test_parse_score_payload_rejects_unusable_input(raw):
    with pytest.raises(GeneratorError):
        parse_score_payload(raw)


# ---------------------------------------------------------------------------
# Base URL
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, "https://api.openai.com/v1"),
        ("https://api.groq.com/openai", "https://api.groq.com/openai/v1"),
        ('"https://api.openai.com/v1/"', "https://api.openai.com/v1"),
        ("https://example.test/v1/chat/completions", "https://example.test/v1"),
    ],
)
def test_normalize_api_base(raw, expected):
    assert normalize_api_base(raw) == expected


def test_normalize_api_base_requires_scheme():
    with pytest.raises(GeneratorError):
        normalize_api_base("api.openai.com")


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def test_generation_without_api_key_raises(settings):
    generator = ResponseGenerator(settings)

    with pytest.raises(GeneratorError):
        asyncio.run(generator.generate_counterpart_message("hi", 1))


def test_first_turn_creates_upstream_conversation_seeded_with_history(settings):
    client = _FakeOpenAI(output_text="  hey there  ")
    generator = ResponseGenerator(settings, client=client)
    history = [_msg(1, "user", "earlier"), _msg(2, "companion", "earlier reply")]

    reply = asyncio.run(generator.generate_counterpart_message("hi", 1, history=history))

    assert reply.content == "hey there"
    assert reply.continuation_token == "conv_1"
    assert client.conversation_calls[0]["items"] == [
        {"role": "user", "content": "earlier"},
        {"role": "assistant", "content": "earlier reply"},
    ]
    assert client.response_calls[0]["conversation"] == "conv_1"
    assert client.response_calls[0]["input"] == [{"role": "user", "content": "hi"}]


def test_existing_token_is_reused(settings):
    client = _FakeOpenAI()
    generator = ResponseGenerator(settings, client=client)

    reply = asyncio.run(generator.generate_counterpart_message("again", 1, continuation_token="conv_old"))

    assert reply.continuation_token == "conv_old"
    assert client.conversation_calls == []
    assert client.response_calls[0]["conversation"] == "conv_old"


def test_chat_mode_sends_history_and_returns_no_token(settings):
    settings.generator_api = "chat"
    client = _FakeOpenAI(chat_text="chat reply")
    generator = ResponseGenerator(settings, client=client)

    reply = asyncio.run(
        generator.generate_counterpart_message("hi", 1, history=[_msg(1, "user", "before")])
    )

    assert reply.content == "chat reply"
    assert reply.continuation_token is None
    roles = [m["role"] for m in client.chat_calls[0]["messages"]]
    assert roles == ["system", "user", "user"]


def test_empty_model_output_raises(settings):
    generator = ResponseGenerator(settings, client=_FakeOpenAI(output_text="   "))

    with pytest.raises(GeneratorError):
        asyncio.run(generator.generate_counterpart_message("hi", 1, continuation_token="conv_1"))


def test_transient_upstream_error_is_retried(settings):
    settings.generator_max_attempts = 2
    client = _FakeOpenAI(failures=[_UpstreamError(503)])
    generator = ResponseGenerator(settings, client=client)

    reply = asyncio.run(generator.generate_counterpart_message("hi", 1, continuation_token="conv_1"))

    assert reply.content == "hey there"
    assert len(client.response_calls) == 1


def test_auth_error_is_not_retried(settings):
    settings.generator_max_attempts = 3
    client = _FakeOpenAI(failures=[_UpstreamError(401, "Incorrect API key"), _UpstreamError(401)])
    generator = ResponseGenerator(settings, client=client)

    with pytest.raises(GeneratorError):
        asyncio.run(generator.generate_counterpart_message("hi", 1, continuation_token="conv_1"))

    assert len(client.failures) == 1


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def test_score_without_api_key_returns_neutral(settings):
    result = asyncio.run(ResponseGenerator(settings).score_message("hello there"))

    assert result.score == 5
    assert result.feedback == FALLBACK_FEEDBACK


def test_score_uses_coach_model_and_parses_reply(settings):
    settings.coach_model = "coach-model"
    client = _FakeOpenAI(chat_text='{"score": 9, "feedback": "Specific and warm."}')
    generator = ResponseGenerator(settings, client=client)

    result = asyncio.run(
        generator.score_message(
            "I loved your hiking photos, which trail was that?",
            history=[_msg(1, "user", "hey")],
            subject_attributes={"age": 29, "interests": "hiking"},
        )
    )

    assert result.score == 9
    assert result.feedback == "Specific and warm."
    call = client.chat_calls[0]
    assert call["model"] == "coach-model"
    assert call["response_format"] == {"type": "json_object"}
    prompt = call["messages"][1]["content"]
    assert "interests: hiking" in prompt
    assert "Sender: hey" in prompt


def test_score_with_garbage_reply_returns_neutral(settings):
    client = _FakeOpenAI(chat_text="I think it is pretty good")
    result = asyncio.run(ResponseGenerator(settings, client=client).score_message("hi"))

    assert result.score == 5
    assert result.feedback == FALLBACK_FEEDBACK


def test_score_of_blank_message_is_neutral_without_upstream_call(settings):
    client = _FakeOpenAI()
    result = asyncio.run(ResponseGenerator(settings, client=client).score_message("   "))

    assert result.score == 5
    assert client.chat_calls == []
