"""Request, persona and back-end result types for the bot router."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from errors import RequestValidationError, UpstreamError

log = logging.getLogger("bot_router")

ROLES = ("user", "assistant", "system")

SYSTEM_PROMPT_TEMPLATE = """You are {name}, an AI assistant with the following personality and instructions: {instructions}

Key guidelines:
- Stay in character based on the personality description
- Be helpful, engaging, and conversational
- Keep responses concise but informative (under 150 words)
- Adapt your tone to match the personality given
- If asked about your identity, refer to yourself as {name}"""


@dataclass(frozen=True)
class ChatMessage:
    """One turn of the conversation."""

    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Persona:
    """Bot persona supplied with every request."""

    display_name: str
    instructions: str

    @property
    def first_sentence(self) -> str:
        """Text up to the first period, used by synthetic replies."""
        return self.instructions.split(".")[0].strip()

    def system_message(self) -> ChatMessage:
        return ChatMessage(
            role="system",
            content=SYSTEM_PROMPT_TEMPLATE.format(name=self.display_name, instructions=self.instructions),
        )


@dataclass(frozen=True)
class ChatRequest:
    messages: List[ChatMessage]
    persona: Persona
    preferred_service: Optional[str] = None


def with_system_prompt(messages: List[ChatMessage], persona: Persona) -> List[ChatMessage]:
    """Prepend exactly one persona-derived system message; caller messages stay untouched."""
    return [persona.system_message(), *messages]


def last_user_content(messages: List[ChatMessage]) -> str:
    """Content of the most recent user turn, else of the last turn, else ""."""
    for m in reversed(messages):
        if m.role == "user":
            return m.content
    if messages:
        return messages[-1].content
    return ""


def parse_chat_request(body: Any) -> ChatRequest:
    """
    Validate a raw JSON body and build a ChatRequest.

    Raises RequestValidationError for anything malformed; no back-end is
    touched before this succeeds.
    """
    if not isinstance(body, dict):
        raise RequestValidationError("Invalid JSON body: expected object")

    raw_messages = body.get("messages")
    if not isinstance(raw_messages, list):
        raise RequestValidationError("Invalid messages format")
    if not raw_messages:
        raise RequestValidationError("Invalid messages format: 'messages' array cannot be empty")

    messages: List[ChatMessage] = []
    for idx, m in enumerate(raw_messages):
        if not isinstance(m, dict):
            raise RequestValidationError(f"Invalid messages format: item {idx} must be an object")
        role = m.get("role")
        content = m.get("content")
        if role not in ROLES:
            raise RequestValidationError(f"Invalid messages format: item {idx} has unsupported role {role!r}")
        if not isinstance(content, str):
            raise RequestValidationError(f"Invalid messages format: item {idx} content must be a string")
        messages.append(ChatMessage(role=role, content=content))

    personality = body.get("botPersonality")
    name = body.get("botName")
    if not isinstance(personality, str) or not personality.strip() or not isinstance(name, str) or not name.strip():
        raise RequestValidationError("Bot personality and name are required")

    preferred = body.get("preferredService")
    if preferred is not None and not isinstance(preferred, str):
        raise RequestValidationError("Invalid preferredService: expected a string")

    return ChatRequest(
        messages=messages,
        persona=Persona(display_name=name.strip(), instructions=personality.strip()),
        preferred_service=(preferred or "").strip() or None,
    )


@dataclass
class NativeStream:
    """
    Live, already-framed byte stream from a streaming back-end.

    `closer` releases the upstream connection; it runs exactly once, whether
    the stream is fully consumed, abandoned by the client, or discarded after
    losing a timeout race without ever being iterated.
    """

    chunks: AsyncIterator[bytes]
    closer: Optional[Callable[[], Awaitable[None]]] = None
    _closed: bool = field(default=False, init=False, repr=False)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self.chunks, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()
        if self.closer is not None:
            try:
                await self.closer()
            except Exception as e:
                log.debug("Native stream closer failed: %r", e)


@dataclass(frozen=True)
class CompletePayload:
    """Whole reply text from a non-streaming back-end."""

    text: str


BackendResult = Union[NativeStream, CompletePayload]


@dataclass(frozen=True)
class Success:
    result: BackendResult
    source: str


@dataclass(frozen=True)
class Exhausted:
    last_error: UpstreamError
    tried: List[str]


FailoverOutcome = Union[Success, Exhausted]
