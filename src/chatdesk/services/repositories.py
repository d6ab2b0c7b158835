"""
Conversation Repositories — where a ChatSession keeps its conversations.

Backends:
- LocalConversationRepository: a JSON file on disk, one per browser in the web UI
- RemoteConversationRepository: the backend's /api/conversations for a signed-in user

Both store the camelCase wire shape and skip entries that fail validation.
"""
import json
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, List, Protocol

import httpx
import structlog
from pydantic import ValidationError

from chatdesk.errors import ChatdeskError
from chatdesk.schemas import Conversation

if TYPE_CHECKING:
    from chatdesk.client.api_client import ChatdeskClient

log = structlog.get_logger()

_OWNER_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


class ConversationRepository(Protocol):
    async def load(self) -> List[Conversation]:
        ...

    async def save(self, conversations: List[Conversation]) -> None:
        ...


def parse_conversations(raw: object) -> List[Conversation]:
    """Validate a stored list, dropping entries that are not conversations."""
    if not isinstance(raw, list):
        return []
    parsed = []
    for item in raw:
        try:
            parsed.append(Conversation.model_validate(item))
        except ValidationError as e:
            log.warning("conversation_skipped", error=str(e))
    return parsed


class LocalConversationRepository:
    """Single JSON file on disk; a missing or corrupt file reads as empty."""

    def __init__(self, path: str):
        self.path = Path(path)

    @classmethod
    def for_owner(cls, directory: str, owner_id: str) -> "LocalConversationRepository":
        """
        The history file of one owner (a browser id in the web UI).

        Owners never share a file, so one visitor can neither read nor
        overwrite another's conversations. Characters outside
        `[A-Za-z0-9_-]` are dropped from the id to keep the path inside
        `directory`.

        Raises:
            ValueError: the id has no usable characters
        """
        safe_id = _OWNER_UNSAFE.sub("", owner_id)
        if not safe_id:
            raise ValueError(f"unusable history owner id: {owner_id!r}")
        return cls(str(Path(directory) / f"{safe_id}.json"))

    async def load(self) -> List[Conversation]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.warning("local_history_unreadable", path=str(self.path), error=str(e))
            return []
        return parse_conversations(raw)

    async def save(self, conversations: List[Conversation]) -> None:
        """Write through a temp file so a crash never leaves half a document."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([c.to_wire() for c in conversations], f, ensure_ascii=False)
        os.replace(tmp, self.path)


class RemoteConversationRepository:
    """
    Backend-stored history for a signed-in user.

    Persistence never interrupts a chat: an API error (expired session,
    server error) or a transport failure (server down, timeout) is logged,
    `load` then returns an empty history and `save` gives up until the next
    change is saved.
    """

    def __init__(self, client: "ChatdeskClient"):
        self.client = client

    async def load(self) -> List[Conversation]:
        try:
            raw = await self.client.get_conversations()
        except ChatdeskError as e:
            log.error("remote_history_load_failed", error=e.message)
            return []
        except httpx.HTTPError as e:
            log.error("remote_history_load_failed", error=str(e) or type(e).__name__)
            return []
        return parse_conversations(raw)

    async def save(self, conversations: List[Conversation]) -> None:
        try:
            await self.client.save_conversations([c.to_wire() for c in conversations])
        except ChatdeskError as e:
            log.error("remote_history_save_failed", error=e.message)
        except httpx.HTTPError as e:
            log.error("remote_history_save_failed", error=str(e) or type(e).__name__)
