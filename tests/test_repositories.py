"""
Tests for local and remote conversation repositories.
"""
import json
from unittest.mock import Mock

import httpx
import pytest

from chatdesk.client import ChatdeskClient
from chatdesk.schemas import Conversation, GroundingChunk, Message
from chatdesk.services.chat_session import ChatSession
from chatdesk.services.providers.base import StreamChunk
from chatdesk.services.repositories import (
    LocalConversationRepository, RemoteConversationRepository, parse_conversations,
)


def sample_conversation() -> Conversation:
    return Conversation(
        title="Receitas",
        messages=[
            Message(role="user", content="Oi"),
            Message(
                role="model",
                content="Olá",
                grounding_chunks=[GroundingChunk.model_validate({"web": {"uri": "https://a", "title": "A"}})],
            ),
        ],
    )


class TestParseConversations:

    def test_non_list_is_empty(self):
        assert parse_conversations({"id": "x"}) == []
        assert parse_conversations(None) == []

    def test_invalid_entries_skipped(self):
        parsed = parse_conversations([
            {"id": "c1", "title": "ok", "messages": []},
            {"id": "c2", "messages": [{"role": "robot"}]},
        ])
        assert [c.id for c in parsed] == ["c1"]


class TestLocalRepository:

    async def test_missing_file_is_empty(self, tmp_path):
        assert await LocalConversationRepository(str(tmp_path / "none.json")).load() == []

    async def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("{not json", encoding="utf-8")
        assert await LocalConversationRepository(str(path)).load() == []

    async def test_roundtrip_keeps_wire_names(self, tmp_path):
        path = tmp_path / "nested" / "history.json"
        repo = LocalConversationRepository(str(path))
        conversation = sample_conversation()

        await repo.save([conversation])

        raw = json.loads(path.read_text(encoding="utf-8"))
        assert "createdAt" in raw[0]
        assert raw[0]["messages"][1]["groundingChunks"][0]["web"]["uri"] == "https://a"
        assert await repo.load() == [conversation]


class TestRemoteRepository:

    async def test_load_failure_is_empty(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(500, json={"message": "boom"}))
        async with ChatdeskClient("http://server.test", token="t", transport=transport) as client:
            assert await RemoteConversationRepository(client).load() == []

    async def test_save_failure_is_logged_not_raised(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(500, json={"message": "boom"}))
        async with ChatdeskClient("http://server.test", token="t", transport=transport) as client:
            await RemoteConversationRepository(client).save([sample_conversation()])

    async def test_save_posts_wire_format(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"message": "ok"})

        async with ChatdeskClient("http://server.test", token="t", transport=httpx.MockTransport(handler)) as client:
            await RemoteConversationRepository(client).save([sample_conversation()])

        saved = seen["body"]["conversations"][0]
        assert saved["title"] == "Receitas"
        assert saved["messages"][1]["groundingChunks"][0]["web"]["title"] == "A"

    async def test_transport_failure_on_load_is_empty(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        async with ChatdeskClient("http://server.test", token="t", transport=httpx.MockTransport(handler)) as client:
            assert await RemoteConversationRepository(client).load() == []

    async def test_transport_failure_on_save_is_logged_not_raised(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        async with ChatdeskClient("http://server.test", token="t", transport=httpx.MockTransport(handler)) as client:
            await RemoteConversationRepository(client).save([sample_conversation()])

    async def test_server_down_does_not_break_a_chat(self, cfg):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        class Reply:
            async def stream(self, history, prompt, attachment=None, model=None):
                yield StreamChunk(text="olá")

            async def generate(self, model, contents, config):
                return "Saudação"

        async with ChatdeskClient("http://server.test", token="t", transport=httpx.MockTransport(handler)) as client:
            session = ChatSession(Reply(), RemoteConversationRepository(client), cfg=cfg.chat)
            await session.load()
            reply = await session.send_message("oi")
            await session.wait_background()

        assert reply.content == "olá"
        assert session.current_conversation.title == "Saudação"


class TestHistoryPerOwner:

    def test_owner_files_are_separate(self, tmp_path):
        first = LocalConversationRepository.for_owner(str(tmp_path), "browser-a")
        second = LocalConversationRepository.for_owner(str(tmp_path), "browser-b")
        assert first.path != second.path
        assert first.path.parent == second.path.parent == tmp_path

    def test_owner_id_cannot_leave_directory(self, tmp_path):
        repo = LocalConversationRepository.for_owner(str(tmp_path), "../../etc/passwd")
        assert repo.path == tmp_path / "etcpasswd.json"

    def test_unusable_owner_id(self, tmp_path):
        with pytest.raises(ValueError):
            LocalConversationRepository.for_owner(str(tmp_path), "../")

    async def test_two_browsers_keep_their_own_history(self, tmp_path, cfg):
        def open_session(owner):
            repo = LocalConversationRepository.for_owner(str(tmp_path), owner)
            return ChatSession(Mock(), repo, cfg=cfg.chat)

        browser_a, browser_b = open_session("a"), open_session("b")
        await browser_a.load()
        await browser_b.load()

        browser_b.current_conversation.title = "Conversa de B"
        await browser_b.save()
        browser_a.current_conversation.title = "Conversa de A"
        await browser_a.save()

        reopened_a, reopened_b = open_session("a"), open_session("b")
        await reopened_a.load()
        await reopened_b.load()
        assert [c.title for c in reopened_a.conversations] == ["Conversa de A"]
        assert [c.title for c in reopened_b.conversations] == ["Conversa de B"]
