"""
Chat Session — the conversation list of one user plus the streaming reducer
that writes model output into it.

A generation is tied to the conversation it started in. Its text is written
into that conversation's pending model message by id, so switching to another
conversation while it streams does not redirect or lose the output; when the
stream ends the result is persisted like any other change.
"""
import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from typing import (
    Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence, Set,
)

import structlog

from chatdesk.config import ChatConfig, get_config
from chatdesk.schemas import Attachment, Conversation, GroundingChunk, Message
from chatdesk.services.prompt_builder import build_contents, generation_config, select_model
from chatdesk.services.providers.base import StreamChunk
from chatdesk.services.repositories import ConversationRepository
from chatdesk.services.title_service import TitleService

log = structlog.get_logger()


class ChatGenerator(Protocol):
    """Produces the model's reply to `prompt` given the prior messages."""

    def stream(
        self,
        history: Sequence[Message],
        prompt: str,
        attachment: Optional[Attachment] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[StreamChunk]:
        ...

    async def generate(self, model: str, contents: Any, config: Dict[str, Any]) -> str:
        ...


class ProviderGenerator:
    """ChatGenerator that calls the providers directly (server-side use)."""

    def __init__(self, router):
        self.router = router

    async def stream(
        self,
        history: Sequence[Message],
        prompt: str,
        attachment: Optional[Attachment] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[StreamChunk]:
        contents = build_contents(history, prompt, attachment)
        async for chunk in self.router.stream_generate(
            select_model(attachment, model), contents, generation_config(),
        ):
            yield chunk

    async def generate(self, model: str, contents: Any, config: Dict[str, Any]) -> str:
        return await self.router.generate(model, contents, config)


@dataclass
class _Generation:
    message_id: str
    stopped: bool = False


class ChatSession:
    """Conversation state and the send/stream/stop life cycle."""

    def __init__(
        self,
        generator: ChatGenerator,
        repository: Optional[ConversationRepository] = None,
        title_service: Optional[TitleService] = None,
        cfg: Optional[ChatConfig] = None,
    ):
        self.generator = generator
        self.repository = repository
        self.title_service = title_service or TitleService(generator.generate)
        self.cfg = cfg or get_config().chat

        self.conversations: List[Conversation] = []
        self.current_conversation_id: Optional[str] = None
        self._generations: Dict[str, _Generation] = {}
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[Callable[[], Any]] = []

    # ---- Observation ----

    def subscribe(self, listener: Callable[[], Any]) -> Callable[[], None]:
        """Register a change callback; returns the function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                log.exception("session_listener_failed")

    # ---- Queries ----

    def get(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    @property
    def current_conversation(self) -> Optional[Conversation]:
        return self.get(self.current_conversation_id)

    @property
    def is_typing(self) -> bool:
        """True while the open conversation has a generation in flight."""
        return self.current_conversation_id in self._generations

    def is_generating(self, conversation_id: Optional[str] = None) -> bool:
        if conversation_id is None:
            return bool(self._generations)
        return conversation_id in self._generations

    # ---- Persistence ----

    async def load(self):
        """Replace the in-memory list with the repository's and open a conversation."""
        if self.repository is not None:
            self.conversations = await self.repository.load()
        self.ensure_current()
        self._notify()

    async def save(self):
        if self.repository is not None:
            await self.repository.save(self.conversations)

    # ---- Navigation ----

    def start_new_conversation(self) -> Conversation:
        """Open an empty conversation at the top of the list (not saved until used)."""
        if self.cfg.cancel_on_navigate:
            self._stop_all()
        conversation = Conversation(title=self.cfg.default_title)
        self.conversations.insert(0, conversation)
        self.current_conversation_id = conversation.id
        self._notify()
        return conversation

    def select_conversation(self, conversation_id: str):
        if self.cfg.cancel_on_navigate:
            self._stop_all()
        self.current_conversation_id = conversation_id
        self._notify()

    def ensure_current(self):
        """Keep exactly one conversation open whenever possible."""
        if self.current_conversation is None and self.conversations:
            self.current_conversation_id = self.conversations[0].id
        elif not self.conversations:
            self.start_new_conversation()

    def clear_history(self):
        """Stop every generation and forget all conversations; the caller saves."""
        self._stop_all()
        self.conversations = []
        self.current_conversation_id = None
        self._notify()

    def delete_conversation(self, conversation_id: str):
        self.stop_generating(conversation_id)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if self.current_conversation_id == conversation_id:
            self.current_conversation_id = None
        self._notify()

    # ---- Generation ----

    def stop_generating(self, conversation_id: Optional[str] = None):
        """Flag the generation of `conversation_id` (default: the open one) to stop."""
        generation = self._generations.get(conversation_id or self.current_conversation_id)
        if generation:
            generation.stopped = True

    def _stop_all(self):
        for generation in self._generations.values():
            generation.stopped = True

    def _update_message(self, conversation_id: str, message_id: str, **changes):
        conversation = self.get(conversation_id)
        if conversation is None:
            return
        message = conversation.find_message(message_id)
        if message is None:
            return
        for key, value in changes.items():
            setattr(message, key, value)
        self._notify()

    def _append_message(self, conversation_id: str, message: Message):
        conversation = self.get(conversation_id)
        if conversation is not None:
            conversation.messages.append(message)
            self._notify()

    async def send_message(
        self,
        text: str,
        attachment: Optional[Attachment] = None,
        model: Optional[str] = None,
    ) -> Optional[Message]:
        """
        Send `text` in the open conversation and stream the reply into it.

        Returns the model message that received the reply, or None when the
        input was empty, nothing is open, or the open conversation is busy.
        """
        if not text.strip() and attachment is None:
            return None
        conversation = self.current_conversation
        if conversation is None or conversation.id in self._generations:
            return None

        conversation_id = conversation.id
        history = list(conversation.messages)
        user_message = Message(role="user", content=text, attachment=attachment)
        ai_message = Message(role="model", content="", grounding_chunks=[])
        conversation.messages.extend([user_message, ai_message])

        generation = _Generation(message_id=ai_message.id)
        self._generations[conversation_id] = generation
        self._notify()

        full_response = ""
        citations: Dict[str, GroundingChunk] = {}
        try:
            async with aclosing(self.generator.stream(history, text, attachment, model)) as stream:
                async for chunk in stream:
                    if generation.stopped:
                        break
                    full_response += chunk.text
                    # Later citations for the same uri replace earlier ones in place.
                    for citation in chunk.grounding_chunks():
                        citations[citation.web.uri] = citation
                    self._update_message(conversation_id, ai_message.id, content=full_response)

            if citations:
                self._update_message(conversation_id, ai_message.id, grounding_chunks=list(citations.values()))

            if generation.stopped:
                if not full_response:
                    self._update_message(conversation_id, ai_message.id, content=self.cfg.interrupted_text)
                else:
                    self._append_message(
                        conversation_id, Message(role="model", content=self.cfg.interrupted_text),
                    )
                log.info("generation_interrupted", conversation_id=conversation_id, chars=len(full_response))
            elif not history:
                title_context = [user_message, ai_message.model_copy(update={"content": full_response})]
                self._spawn(self._apply_title(conversation_id, title_context))

        except Exception as e:
            log.error("generation_failed", conversation_id=conversation_id, error=str(e))
            self._update_message(conversation_id, ai_message.id, content=self.cfg.error_text)

        finally:
            self._generations.pop(conversation_id, None)
            self._notify()

        if conversation_id != self.current_conversation_id:
            log.info("background_generation_finished", conversation_id=conversation_id)
        await self.save()
        return ai_message

    # ---- Background work ----

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _apply_title(self, conversation_id: str, messages: List[Message]):
        title = await self.title_service.generate_title(messages)
        conversation = self.get(conversation_id)
        if not title or conversation is None:
            return
        conversation.title = title
        self._notify()
        await self.save()

    async def wait_background(self):
        """Wait for pending title updates."""
        if self._background:
            await asyncio.gather(*list(self._background))


class SessionRegistry:
    """
    One ChatSession per owner, created and loaded on first use.

    The web UI keys it by browser id: every tab of a browser renders the same
    session, so a save from one tab always includes what the others added,
    and different browsers never see each other's history.
    """

    def __init__(self, factory: Callable[[str], ChatSession]):
        self.factory = factory
        self._sessions: Dict[str, ChatSession] = {}
        self._opening: Dict[str, "asyncio.Task[ChatSession]"] = {}

    async def get(self, owner_id: str) -> ChatSession:
        """
        The owner's session, loading it on first use.

        Args:
            owner_id: browser id in the web UI

        Returns:
            The same ChatSession for every call with this owner; a failed
            load is not cached, so the next call tries again
        """
        session = self._sessions.get(owner_id)
        if session is not None:
            return session
        # Tabs opened together wait on the same load.
        task = self._opening.get(owner_id)
        if task is None:
            task = asyncio.create_task(self._open(owner_id))
            self._opening[owner_id] = task
        return await task

    async def _open(self, owner_id: str) -> ChatSession:
        try:
            session = self.factory(owner_id)
            await session.load()
        finally:
            self._opening.pop(owner_id, None)
        self._sessions[owner_id] = session
        log.info("chat_session_opened", owner_id=owner_id, conversations=len(session.conversations))
        return session
