"""Synthetic back-ends: locally generated replies, one phrasing table per back-end.

All synthetic back-ends share `classify_message`; only their templates differ,
which is what makes each back-end's replies recognisable.
"""

from __future__ import annotations

import enum
import random
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from config import api_key_from_env
from models import BackendResult, ChatMessage, CompletePayload, Persona, last_user_content
from upstream import UpstreamAdapter

ECHO_LIMIT = 160

_WORD_RE = re.compile(r"[a-z']+")


class Intent(enum.Enum):
    GREETING = "greeting"
    FAREWELL = "farewell"
    QUESTION = "question"
    HELP = "help"
    GRATITUDE = "gratitude"
    PROBLEM = "problem"
    NEGATIVE = "negative"
    POSITIVE = "positive"
    EMOTION = "emotion"
    DEFAULT = "default"


# Checked in this order; the first bucket that matches wins.
_KEYWORDS: List[tuple[Intent, frozenset[str], tuple[str, ...]]] = [
    (Intent.GREETING, frozenset({"hello", "hi", "hey", "greetings"}), ("good morning", "good afternoon", "good evening")),
    (Intent.FAREWELL, frozenset({"bye", "goodbye", "farewell"}), ("see you", "good night")),
    (Intent.QUESTION, frozenset(), ()),
    (Intent.HELP, frozenset({"help", "assist", "assistance", "support"}), ()),
    (Intent.GRATITUDE, frozenset({"thank", "thanks", "appreciate", "grateful"}), ("thank you",)),
    (Intent.PROBLEM, frozenset({"problem", "problems", "issue", "issues", "trouble"}), ()),
    (Intent.NEGATIVE, frozenset({"bad", "terrible", "awful", "horrible", "sad", "disappointed"}), ()),
    (Intent.POSITIVE, frozenset({"good", "great", "awesome", "wonderful", "excellent", "amazing"}), ()),
    (Intent.EMOTION, frozenset({"feel", "feeling", "feelings", "emotion", "emotions", "happy"}), ()),
]

_QUESTION_WORDS = frozenset({"what", "how", "why", "when", "where", "who", "which"})


def classify_message(text: str) -> Intent:
    """Pick the keyword bucket for a user message."""
    low = (text or "").lower().strip()
    words = _WORD_RE.findall(low)
    word_set = set(words)
    for intent, keywords, phrases in _KEYWORDS:
        if intent is Intent.QUESTION:
            if "?" in low or (words and words[0] in _QUESTION_WORDS):
                return intent
            continue
        if word_set & keywords or any(p in low for p in phrases):
            return intent
    return Intent.DEFAULT


@dataclass(frozen=True)
class TemplateTable:
    """Phrasing for one synthetic back-end. Placeholders: {name}, {trait}, {message}."""

    by_intent: Mapping[Intent, str]
    defaults: Sequence[str] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.defaults:
            raise ValueError("TemplateTable needs at least one default template")

    def pick(self, intent: Intent, rng: random.Random) -> str:
        template = self.by_intent.get(intent)
        if template is not None:
            return template
        if len(self.defaults) == 1:
            return self.defaults[0]
        return rng.choice(list(self.defaults))


def _echo(message: str) -> str:
    message = " ".join((message or "").split())
    if len(message) <= ECHO_LIMIT:
        return message
    return message[: ECHO_LIMIT - 3] + "..."


def render_reply(
    table: TemplateTable,
    message: str,
    persona: Persona,
    rng: random.Random,
    intent: Optional[Intent] = None,
) -> str:
    template = table.pick(intent or classify_message(message), rng)
    return template.format(name=persona.display_name, trait=persona.first_sentence, message=_echo(message))


VAPI_TEMPLATES = TemplateTable(
    by_intent={
        Intent.GREETING: "Hello! I'm {name}. {trait}. It's great to meet you! What would you like to know?",
        Intent.QUESTION: (
            "That's a great question! As {name}, I'd say: {trait}. Based on your question about "
            "\"{message}\", I'm here to help provide insights and assistance."
        ),
        Intent.FAREWELL: (
            "It was wonderful chatting with you! I'm {name}, and I hope I was helpful. "
            "Feel free to come back anytime you need assistance!"
        ),
    },
    defaults=(
        "Thank you for sharing that with me! I'm {name}. {trait}. Regarding your message \"{message}\", "
        "I'm here to help and would love to discuss this further with you.",
    ),
)

RETELL_TEMPLATES = TemplateTable(
    by_intent={
        Intent.HELP: (
            "I'm {name}, and I'm here to help! {trait}. You mentioned \"{message}\" - "
            "I'd be happy to assist you with whatever you need."
        ),
        Intent.GRATITUDE: (
            "You're very welcome! I'm {name}. {trait}. It's my pleasure to help, "
            "and I appreciate your kind words about \"{message}\"."
        ),
        Intent.PROBLEM: (
            "I understand you're facing a challenge. As {name}, I want to help! {trait}. "
            "Let's work together to address \"{message}\"."
        ),
    },
    defaults=(
        "That's interesting! I'm {name}. {trait}. You mentioned \"{message}\" - I'd love to explore "
        "this topic further with you. What specific aspects would you like to discuss?",
    ),
)

BLAND_TEMPLATES = TemplateTable(
    by_intent={
        Intent.QUESTION: (
            "Great question! I'm {name}. {trait}. About your question \"{message}\" - "
            "I'm here to provide helpful insights and information."
        ),
        Intent.POSITIVE: (
            "That's wonderful to hear! I'm {name}. {trait}. I'm glad you shared \"{message}\" with me. "
            "Positive energy is contagious!"
        ),
        Intent.NEGATIVE: (
            "I understand, and I'm here to help. I'm {name}. {trait}. Regarding \"{message}\", "
            "let's see how we can make things better together."
        ),
    },
    defaults=(
        "Thank you for sharing that! I'm {name}. {trait}. You mentioned \"{message}\" - I find that "
        "quite interesting and would love to continue our conversation about it.",
    ),
)

FREE_FALLBACK_TEMPLATES = TemplateTable(
    by_intent={
        Intent.GREETING: (
            "Hello there! I'm {name}. {trait}. I'm running in free mode today, but I'm still here "
            "to chat and help however I can. What's on your mind?"
        ),
        Intent.QUESTION: (
            "That's a thoughtful question! As {name}, I'd say: {trait}. While I'm in free mode, "
            "I can still offer insights about \"{message}\". What specific aspects interest you most?"
        ),
        Intent.EMOTION: (
            "I appreciate you sharing your feelings with me. I'm {name}, and {trait}. Even in free mode, "
            "I want you to know that your emotions matter. Tell me more about \"{message}\"."
        ),
        Intent.NEGATIVE: (
            "I appreciate you sharing your feelings with me. I'm {name}, and {trait}. Even in free mode, "
            "I want you to know that your emotions matter. Tell me more about \"{message}\"."
        ),
        Intent.HELP: (
            "I'm here to help! I'm {name}. {trait}. Though I'm running in free mode, I'll do my best "
            "to assist with \"{message}\". Let's break this down together."
        ),
        Intent.PROBLEM: (
            "I'm here to help! I'm {name}. {trait}. Though I'm running in free mode, I'll do my best "
            "to assist with \"{message}\". Let's break this down together."
        ),
        Intent.GRATITUDE: (
            "Thank you so much! I'm {name}, and I really appreciate your kind words. {trait}. "
            "It means a lot, especially while running in free mode. How else can I help you today?"
        ),
        Intent.POSITIVE: (
            "Thank you so much! I'm {name}, and I really appreciate your kind words. {trait}. "
            "It means a lot, especially while running in free mode. How else can I help you today?"
        ),
    },
    defaults=(
        "That's really interesting! I'm {name}. {trait}. You mentioned \"{message}\" - "
        "I'd love to explore that topic further with you.",
        "I hear you! As {name}, I find your perspective fascinating. {trait}. Tell me more about \"{message}\".",
        "Thanks for sharing that with me! I'm {name}. {trait}. Your message about \"{message}\" "
        "has got me thinking. What's your take on it?",
    ),
)


class SyntheticAdapter(UpstreamAdapter):
    """
    Back-end that fabricates a reply from the last user message.

    Available when its credential is configured; `credential_env=None`
    means always available unless disabled. With `greet_first_turn` the
    opening user turn always gets the greeting template.
    """

    def __init__(
        self,
        name: str,
        templates: TemplateTable,
        *,
        credential_env: Optional[str] = None,
        enabled: bool = True,
        seed: Optional[int] = None,
        greet_first_turn: bool = False,
    ) -> None:
        self.name = name
        self.templates = templates
        self.credential_env = credential_env
        self.enabled = enabled
        self.seed = seed
        self.greet_first_turn = greet_first_turn

    def is_available(self) -> bool:
        if not self.enabled:
            return False
        if self.credential_env is None:
            return True
        return bool(api_key_from_env(self.credential_env))

    def reply_for(self, message: str, persona: Persona, intent: Optional[Intent] = None) -> str:
        # Fresh generator per reply: nothing mutable is shared between requests.
        rng = random.Random(self.seed) if self.seed is not None else random.Random()
        return render_reply(self.templates, message, persona, rng, intent=intent)

    async def invoke(self, conversation: List[ChatMessage], persona: Persona) -> BackendResult:
        intent = None
        if self.greet_first_turn and sum(1 for m in conversation if m.role != "system") <= 1:
            intent = Intent.GREETING
        return CompletePayload(self.reply_for(last_user_content(conversation), persona, intent=intent))


SYNTHETIC_TABLES: Dict[str, TemplateTable] = {
    "Vapi": VAPI_TEMPLATES,
    "Retell": RETELL_TEMPLATES,
    "Bland": BLAND_TEMPLATES,
    "Free Fallback": FREE_FALLBACK_TEMPLATES,
}
