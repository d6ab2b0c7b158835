"""
Conversation Store — one JSON document per user holding the full
conversation list exactly as the client saved it.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete

from chatdesk.models import ConversationArchive
from chatdesk.services.database import get_session

log = structlog.get_logger()


class ConversationStore:
    """CRUD over the per-user conversation blob."""

    async def get(self, user_id: int) -> List[Dict[str, Any]]:
        """Stored conversations for the user, or [] when nothing was saved yet."""
        async with get_session() as session:
            row = await session.get(ConversationArchive, user_id)
            if row is None:
                return []
            return list(row.data or [])

    async def save(self, user_id: int, conversations: List[Dict[str, Any]]) -> None:
        """Insert or replace the user's conversation list."""
        async with get_session() as session:
            row = await session.get(ConversationArchive, user_id)
            now = datetime.now(timezone.utc)
            if row is None:
                session.add(ConversationArchive(user_id=user_id, data=conversations, updated_at=now))
            else:
                row.data = conversations
                row.updated_at = now
        log.info("conversations_saved", user_id=user_id, count=len(conversations))

    async def delete(self, user_id: int) -> None:
        """Drop the user's conversations; a user with none is not an error."""
        async with get_session() as session:
            await session.execute(delete(ConversationArchive).where(ConversationArchive.user_id == user_id))


_store: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    """Get singleton ConversationStore."""
    global _store
    if _store is None:
        _store = ConversationStore()
    return _store
