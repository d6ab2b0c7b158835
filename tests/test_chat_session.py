"""
Tests for ChatSession: conversation management and the streaming reducer.
"""
import asyncio
from typing import List

import pytest

from chatdesk.schemas import Attachment, Conversation
from chatdesk.services.chat_session import ChatSession, SessionRegistry
from chatdesk.services.providers.base import StreamChunk


def web(uri, title):
    return {"web": {"uri": uri, "title": title}}


def chunk(text="", grounding=None):
    candidates = []
    if grounding:
        candidates = [{"groundingMetadata": {"groundingChunks": grounding}}]
    return StreamChunk(text=text, candidates=candidates)


class ScriptedGenerator:
    """
    Streams a script of StreamChunks. A callable in the script is invoked
    instead of yielded, which lets a test act between two chunks; an
    asyncio.Event pauses the stream until it is set.
    """

    def __init__(self, script=(), error=None, title="Bolo de cenoura"):
        self.script = list(script)
        self.error = error
        self.title = title
        self.stream_calls = []
        self.generate_calls = []

    async def stream(self, history, prompt, attachment=None, model=None):
        self.stream_calls.append({
            "history": list(history), "prompt": prompt, "attachment": attachment, "model": model,
        })
        for item in self.script:
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif callable(item):
                item()
            else:
                yield item
        if self.error:
            raise self.error

    async def generate(self, model, contents, config):
        self.generate_calls.append(contents)
        if isinstance(self.title, Exception):
            raise self.title
        return self.title


class MemoryRepository:

    def __init__(self, conversations=None):
        self.stored: List[Conversation] = list(conversations or [])
        self.saves = 0

    async def load(self):
        return [c.model_copy(deep=True) for c in self.stored]

    async def save(self, conversations):
        self.saves += 1
        self.stored = [c.model_copy(deep=True) for c in conversations]


@pytest.fixture
def repository():
    return MemoryRepository()


@pytest.fixture
async def make_session(cfg, repository):
    sessions = []

    def factory(generator):
        session = ChatSession(generator, repository=repository, cfg=cfg.chat)
        session.start_new_conversation()
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        await session.wait_background()


class TestConversationManagement:

    async def test_new_conversation_is_prepended_and_selected(self, make_session, cfg):
        session = make_session(ScriptedGenerator())
        first = session.current_conversation
        second = session.start_new_conversation()

        assert session.conversations[0] is second
        assert session.current_conversation_id == second.id
        assert second.title == cfg.chat.default_title
        assert session.conversations[1] is first

    async def test_select_and_delete(self, make_session):
        session = make_session(ScriptedGenerator())
        first = session.current_conversation
        second = session.start_new_conversation()

        session.select_conversation(first.id)
        assert session.current_conversation is first

        session.delete_conversation(first.id)
        assert session.current_conversation_id is None
        assert session.conversations == [second]

        session.ensure_current()
        assert session.current_conversation is second

    async def test_clear_history(self, make_session):
        session = make_session(ScriptedGenerator())
        session.clear_history()
        assert session.conversations == []
        assert session.current_conversation is None

        session.ensure_current()
        assert len(session.conversations) == 1

    async def test_load_selects_first_stored(self, cfg):
        stored = [Conversation(title="A"), Conversation(title="B")]
        session = ChatSession(ScriptedGenerator(), repository=MemoryRepository(stored), cfg=cfg.chat)
        await session.load()
        assert [c.title for c in session.conversations] == ["A", "B"]
        assert session.current_conversation_id == stored[0].id

    async def test_load_empty_starts_conversation(self, cfg):
        session = ChatSession(ScriptedGenerator(), repository=MemoryRepository(), cfg=cfg.chat)
        await session.load()
        assert len(session.conversations) == 1
        assert session.current_conversation is not None

    async def test_subscribe_and_unsubscribe(self, make_session):
        session = make_session(ScriptedGenerator())
        events = []
        unsubscribe = session.subscribe(lambda: events.append(1))

        session.start_new_conversation()
        unsubscribe()
        session.start_new_conversation()

        assert events == [1]


class TestSendMessage:

    async def test_streams_reply_into_model_message(self, make_session, repository):
        generator = ScriptedGenerator([chunk("Olá"), chunk(", "), chunk("mundo")])
        session = make_session(generator)
        snapshots = []
        session.subscribe(lambda: snapshots.append(session.current_conversation.messages[-1].content))

        reply = await session.send_message("Oi")

        messages = session.current_conversation.messages
        assert [m.role for m in messages] == ["user", "model"]
        assert messages[0].content == "Oi"
        assert messages[1] is reply
        assert reply.content == "Olá, mundo"
        assert "Olá" in snapshots and "Olá, " in snapshots
        assert not session.is_typing
        assert repository.stored[0].messages[1].content == "Olá, mundo"

    async def test_is_typing_while_streaming(self, make_session):
        session = None
        observed = []
        generator = ScriptedGenerator([lambda: observed.append(session.is_typing), chunk("a")])
        session = make_session(generator)

        await session.send_message("Oi")

        assert observed == [True]
        assert session.is_typing is False

    async def test_blank_message_ignored(self, make_session):
        generator = ScriptedGenerator([chunk("x")])
        session = make_session(generator)

        assert await session.send_message("   ") is None
        assert session.current_conversation.messages == []
        assert generator.stream_calls == []

    async def test_attachment_without_text_is_sent(self, make_session):
        generator = ScriptedGenerator([chunk("um gato")])
        session = make_session(generator)
        image = Attachment(data="AAA", mime_type="image/png", name="gato.png")

        await session.send_message("", image)

        assert generator.stream_calls[0]["attachment"] == image
        assert session.current_conversation.messages[0].attachment == image

    async def test_ignored_without_current_conversation(self, make_session):
        generator = ScriptedGenerator([chunk("x")])
        session = make_session(generator)
        session.clear_history()

        assert await session.send_message("Oi") is None
        assert generator.stream_calls == []

    async def test_history_excludes_new_messages(self, make_session):
        generator = ScriptedGenerator([chunk("a")])
        session = make_session(generator)
        await session.send_message("primeira")
        await session.send_message("segunda", model="gpt-4o")

        second_call = generator.stream_calls[1]
        assert [m.content for m in second_call["history"]] == ["primeira", "a"]
        assert second_call["prompt"] == "segunda"
        assert second_call["model"] == "gpt-4o"

    async def test_error_sets_error_text(self, make_session, cfg, repository):
        generator = ScriptedGenerator([chunk("parcial")], error=RuntimeError("network down"))
        session = make_session(generator)

        reply = await session.send_message("Oi")

        assert reply.content == cfg.chat.error_text
        assert not session.is_typing
        assert repository.saves >= 1


class TestGrounding:

    async def test_sources_deduplicated_by_uri(self, make_session):
        generator = ScriptedGenerator([
            chunk("a", [web("https://a.example", "A"), web("https://b.example", "B")]),
            chunk("b", [web("https://a.example", "A (atualizado)")]),
            chunk("c", [web("https://c.example", "C")]),
        ])
        session = make_session(generator)

        reply = await session.send_message("pesquise")

        assert [(g.web.uri, g.web.title) for g in reply.grounding_chunks] == [
            ("https://a.example", "A (atualizado)"),
            ("https://b.example", "B"),
            ("https://c.example", "C"),
        ]

    async def test_no_sources_leaves_empty_list(self, make_session):
        session = make_session(ScriptedGenerator([chunk("a")]))
        reply = await session.send_message("oi")
        assert reply.grounding_chunks == []


class TestStopGenerating:

    async def test_stop_before_any_text(self, make_session, cfg):
        session = None
        generator = ScriptedGenerator([lambda: session.stop_generating(), chunk("nunca")])
        session = make_session(generator)

        reply = await session.send_message("Oi")

        messages = session.current_conversation.messages
        assert len(messages) == 2
        assert reply.content == cfg.chat.interrupted_text

    async def test_stop_after_partial_text(self, make_session, cfg):
        session = None
        generator = ScriptedGenerator([
            chunk("Era uma vez"),
            lambda: session.stop_generating(),
            chunk(" um rei"),
        ])
        session = make_session(generator)

        reply = await session.send_message("conte uma história")

        messages = session.current_conversation.messages
        assert reply.content == "Era uma vez"
        assert len(messages) == 3
        assert messages[2].role == "model"
        assert messages[2].content == cfg.chat.interrupted_text

    async def test_interrupted_exchange_gets_no_title(self, make_session, cfg):
        session = None
        generator = ScriptedGenerator([chunk("a"), lambda: session.stop_generating(), chunk("b")])
        session = make_session(generator)

        await session.send_message("Oi")
        await session.wait_background()

        assert generator.generate_calls == []
        assert session.current_conversation.title == cfg.chat.default_title


class TestTitles:

    async def test_first_exchange_generates_title(self, make_session, repository):
        generator = ScriptedGenerator([chunk("Misture farinha")], title='Título: "Bolo de cenoura".')
        session = make_session(generator)

        await session.send_message("Como fazer bolo?")
        await session.wait_background()

        assert session.current_conversation.title == "Bolo de cenoura"
        assert repository.stored[0].title == "Bolo de cenoura"
        assert "Misture farinha" in generator.generate_calls[0]

    async def test_only_first_exchange_is_titled(self, make_session):
        generator = ScriptedGenerator([chunk("a")])
        session = make_session(generator)

        await session.send_message("um")
        await session.wait_background()
        await session.send_message("dois")
        await session.wait_background()

        assert len(generator.generate_calls) == 1

    async def test_title_failure_uses_fallback(self, make_session, cfg):
        generator = ScriptedGenerator([chunk("a")], title=RuntimeError("quota"))
        session = make_session(generator)

        await session.send_message("um")
        await session.wait_background()

        assert session.current_conversation.title == cfg.chat.fallback_title


class TestNavigationDuringGeneration:

    async def test_generation_continues_in_original_conversation(self, make_session, repository):
        session = None
        generator = ScriptedGenerator([
            chunk("primeira parte"),
            lambda: session.start_new_conversation(),
            chunk(" e o resto"),
        ])
        session = make_session(generator)
        original = session.current_conversation

        await session.send_message("Oi")

        assert session.current_conversation_id != original.id
        assert original.messages[1].content == "primeira parte e o resto"
        assert session.current_conversation.messages == []
        stored = next(c for c in repository.stored if c.id == original.id)
        assert stored.messages[1].content == "primeira parte e o resto"

    async def test_other_conversation_not_typing(self, make_session):
        session = None
        observed = []
        generator = ScriptedGenerator([
            lambda: session.start_new_conversation(),
            lambda: observed.append((session.is_typing, session.is_generating())),
            chunk("x"),
        ])
        session = make_session(generator)

        await session.send_message("Oi")

        assert observed == [(False, True)]

    async def test_cancel_on_navigate(self, make_session, cfg):
        cfg.chat.cancel_on_navigate = True
        session = None
        generator = ScriptedGenerator([
            chunk("começo"),
            lambda: session.start_new_conversation(),
            chunk(" fim"),
        ])
        session = make_session(generator)
        original = session.current_conversation

        await session.send_message("Oi")

        assert original.messages[1].content == "começo"
        assert original.messages[2].content == cfg.chat.interrupted_text

    async def test_delete_during_generation(self, make_session, repository):
        session = None
        generator = ScriptedGenerator([
            chunk("a"),
            lambda: session.delete_conversation(session.current_conversation_id),
            chunk("b"),
        ])
        session = make_session(generator)

        await session.send_message("Oi")

        assert session.conversations == []
        assert not session.is_generating()
        assert repository.stored == []

    async def test_busy_conversation_rejects_second_send(self, make_session):
        release = asyncio.Event()
        generator = ScriptedGenerator([chunk("a"), release, chunk("b")])
        session = make_session(generator)

        first = asyncio.create_task(session.send_message("Oi"))
        while not session.is_typing:
            await asyncio.sleep(0)

        assert await session.send_message("de novo") is None
        release.set()
        reply = await first

        assert reply.content == "ab"
        assert len(generator.stream_calls) == 1
        assert len(session.current_conversation.messages) == 2


class TestSessionRegistry:

    async def test_tabs_of_one_browser_share_a_session(self, cfg):
        repositories = {}

        def factory(owner):
            repositories[owner] = MemoryRepository()
            return ChatSession(ScriptedGenerator([chunk("a")]), repository=repositories[owner], cfg=cfg.chat)

        registry = SessionRegistry(factory)
        first_tab, second_tab = await asyncio.gather(registry.get("browser-a"), registry.get("browser-a"))

        assert first_tab is second_tab
        assert list(repositories) == ["browser-a"]

        first_tab.start_new_conversation()
        second_tab.start_new_conversation()
        await second_tab.save()
        assert len(repositories["browser-a"].stored) == 3

    async def test_browsers_get_separate_sessions(self, cfg):
        registry = SessionRegistry(
            lambda owner: ChatSession(ScriptedGenerator(), repository=MemoryRepository(), cfg=cfg.chat)
        )

        browser_a = await registry.get("browser-a")
        browser_b = await registry.get("browser-b")

        assert browser_a is not browser_b
        assert browser_a.current_conversation_id != browser_b.current_conversation_id

    async def test_failed_load_is_retried(self, cfg):
        attempts = []

        class FlakyRepository(MemoryRepository):
            async def load(self):
                attempts.append(1)
                if len(attempts) == 1:
                    raise OSError("disk unavailable")
                return await super().load()

        registry = SessionRegistry(
            lambda owner: ChatSession(ScriptedGenerator(), repository=FlakyRepository(), cfg=cfg.chat)
        )

        with pytest.raises(OSError):
            await registry.get("browser-a")
        session = await registry.get("browser-a")

        assert session.current_conversation is not None
        assert len(attempts) == 2
