"""
Tests for request parsing and the persona system prompt.
"""

import pytest

from errors import RequestValidationError
from models import ChatMessage, NativeStream, Persona, last_user_content, parse_chat_request, with_system_prompt


def _body(**overrides):
    body = {
        "messages": [{"role": "user", "content": "Hello, how are you?"}],
        "botPersonality": "You are a helpful assistant. You love puns.",
        "botName": "TestBot",
    }
    body.update(overrides)
    return body


class TestParseChatRequest:

    def test_valid_request(self):
        chat = parse_chat_request(_body(preferredService="Vapi"))
        assert chat.messages == [ChatMessage(role="user", content="Hello, how are you?")]
        assert chat.persona == Persona(display_name="TestBot", instructions="You are a helpful assistant. You love puns.")
        assert chat.preferred_service == "Vapi"

    def test_preferred_service_optional(self):
        assert parse_chat_request(_body()).preferred_service is None
        assert parse_chat_request(_body(preferredService="  ")).preferred_service is None

    @pytest.mark.parametrize(
        "messages",
        [None, "hello", {"role": "user"}, [], [{"role": "robot", "content": "x"}], [{"role": "user", "content": 5}], ["x"]],
    )
    def test_invalid_messages(self, messages):
        with pytest.raises(RequestValidationError, match="Invalid messages format") as ei:
            parse_chat_request(_body(messages=messages))
        assert ei.value.status_code == 400

    @pytest.mark.parametrize(
        "overrides",
        [{"botName": ""}, {"botName": None}, {"botPersonality": "   "}, {"botPersonality": 3}],
    )
    def test_persona_required(self, overrides):
        with pytest.raises(RequestValidationError, match="Bot personality and name are required"):
            parse_chat_request(_body(**overrides))

    def test_missing_persona_fields(self):
        body = _body()
        del body["botName"]
        with pytest.raises(RequestValidationError):
            parse_chat_request(body)

    def test_non_object_body(self):
        with pytest.raises(RequestValidationError, match="expected object"):
            parse_chat_request([1, 2, 3])

    def test_non_string_preferred_service(self):
        with pytest.raises(RequestValidationError, match="preferredService"):
            parse_chat_request(_body(preferredService=7))


class TestSystemPrompt:

    def test_prepends_exactly_one_system_message(self, persona):
        messages = [ChatMessage(role="user", content="hi")]

        out = with_system_prompt(messages, persona)

        assert len(out) == 2
        assert out[0].role == "system"
        assert out[1:] == messages
        assert messages == [ChatMessage(role="user", content="hi")]

    def test_prompt_mentions_name_and_instructions(self, persona):
        content = persona.system_message().content
        assert content.startswith(
            "You are TestBot, an AI assistant with the following personality and instructions: "
            "You are a helpful assistant. You love puns."
        )
        assert "refer to yourself as TestBot" in content

    def test_first_sentence(self, persona):
        assert persona.first_sentence == "You are a helpful assistant"


def test_last_user_content():
    msgs = [
        ChatMessage(role="user", content="first"),
        ChatMessage(role="assistant", content="reply"),
    ]
    assert last_user_content(msgs) == "first"
    assert last_user_content([ChatMessage(role="assistant", content="only")]) == "only"
    assert last_user_content([]) == ""


@pytest.mark.asyncio
async def test_native_stream_closes_once():
    calls = []

    async def chunks():
        yield b"x"

    async def closer():
        calls.append(1)

    stream = NativeStream(chunks=chunks(), closer=closer)
    await stream.aclose()
    await stream.aclose()
    assert calls == [1]
