"""
Title Service — short conversation titles generated from the first exchange.

The first user message and the model's reply are sent to the chat model with
a low temperature. The answer is cleaned of labels, quotes and final
punctuation. A failed call yields the fallback title, never an exception.
"""
import re
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import structlog

from chatdesk.config import get_config
from chatdesk.schemas import Message

log = structlog.get_logger()

GenerateFn = Callable[[str, Any, Dict[str, Any]], Awaitable[str]]

_LABEL_PREFIX = re.compile(r"^(título|title):?\s*", re.IGNORECASE)
_QUOTES = re.compile(r"^\"|\"$|^\s*['`]|['`]\s*$")
_TRAILING_PUNCT = re.compile(r"[.,!?;:]$")


def clean_title(raw: str, default: Optional[str] = None) -> str:
    """Strip label prefixes, quotes and one trailing punctuation mark."""
    if default is None:
        default = get_config().chat.default_title
    title = _LABEL_PREFIX.sub("", raw.strip())
    title = _TRAILING_PUNCT.sub("", _QUOTES.sub("", title)).strip()
    return title or default


def build_title_prompt(messages: Sequence[Message]) -> str:
    """Title request built from the first two messages; attachments are named."""
    lines = []
    for msg in messages[:2]:
        text = msg.content
        if msg.attachment:
            text = f"[ARQUIVO: {msg.attachment.name}] {text}".strip()
        speaker = "Usuário" if msg.role == "user" else "Assistente"
        lines.append(f"{speaker}: {text}")
    context = "\n\n".join(lines)

    return (
        "Analise a seguinte conversa e crie um título curto e descritivo em português, "
        "com no máximo 5 palavras. O título deve capturar a essência do assunto. "
        "Não adicione aspas nem pontuação final.\n\n"
        f"Conversa:\n---\n{context}\n---\n\nTítulo Sugerido:"
    )


class TitleService:
    """Asks a model for a title; never raises."""

    def __init__(self, generate: GenerateFn, model: Optional[str] = None):
        self._generate = generate
        self.cfg = get_config()
        self.model = model or self.cfg.gemini.chat_model

    async def generate_title(self, messages: Sequence[Message]) -> str:
        """
        Title for a conversation.

        Args:
            messages: the conversation so far; only the first exchange is used

        Returns:
            The cleaned title, `chat.default_title` for a blank answer, or
            `chat.fallback_title` when the model call failed
        """
        config = {
            "systemInstruction": self.cfg.chat.title_instruction,
            "temperature": 0.2,
        }
        try:
            raw = await self._generate(self.model, build_title_prompt(messages), config)
        except Exception as e:
            log.warning("title_generation_failed", error=str(e))
            return self.cfg.chat.fallback_title
        return clean_title(raw or "", self.cfg.chat.default_title)
