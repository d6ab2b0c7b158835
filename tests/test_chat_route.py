"""
Tests for the streaming chat proxy and its wire framing.
"""
import json

import pytest

from chatdesk.errors import ProviderError
from chatdesk.services.providers.base import StreamChunk
from chatdesk.services.stream_codec import (
    CHUNK_DELIMITER, ChunkDecoder, encode_chunk, encode_error,
)


def frames(body: str):
    return [json.loads(part) for part in body.split(CHUNK_DELIMITER) if part.strip()]


class TestStreamCodec:

    def test_frame_layout(self):
        wire = encode_chunk(StreamChunk(text="Olá"))
        assert wire.endswith("\n__GEMINI_CHUNK__\n")
        assert json.loads(wire[: -len(CHUNK_DELIMITER)]) == {
            "text": "Olá", "candidates": [], "usageMetadata": None,
        }

    def test_decoder_handles_split_frames(self):
        wire = encode_chunk(StreamChunk(text="um")) + encode_chunk(StreamChunk(text="dois"))
        decoder = ChunkDecoder()

        decoded = []
        for i in range(0, len(wire), 7):
            decoded.extend(decoder.feed(wire[i:i + 7]))
        decoded.extend(decoder.flush())

        assert [f["text"] for f in decoded] == ["um", "dois"]

    def test_decoder_split_inside_delimiter(self):
        wire = encode_chunk(StreamChunk(text="a"))
        cut = wire.index("__GEMINI") + 3
        decoder = ChunkDecoder()
        assert decoder.feed(wire[:cut]) == []
        assert [f["text"] for f in decoder.feed(wire[cut:])] == ["a"]

    def test_flush_parses_unterminated_tail(self):
        decoder = ChunkDecoder()
        decoder.feed('{"text": "fim"}')
        assert decoder.flush() == [{"text": "fim"}]
        assert decoder.flush() == []

    def test_error_frame_raises_when_converted(self):
        frame = ChunkDecoder().feed(encode_error("quota exceeded"))[0]
        with pytest.raises(ProviderError) as exc:
            StreamChunk.from_wire(frame)
        assert exc.value.message == "quota exceeded"


@pytest.mark.integration
class TestChatEndpoint:

    def test_streams_provider_chunks(self, client, provider_router, fake_provider):
        fake_provider.chunks = [
            StreamChunk(text="Olá, "),
            StreamChunk(text="mundo", usage_metadata={"totalTokenCount": 5}),
        ]
        response = client.post("/api/chat", json={
            "model": "gemini-2.5-flash",
            "contents": [{"role": "user", "parts": [{"text": "oi"}]}],
            "config": {"temperature": 0.5},
        })

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        body = frames(response.text)
        assert [f["text"] for f in body] == ["Olá, ", "mundo"]
        assert body[1]["usageMetadata"] == {"totalTokenCount": 5}
        assert fake_provider.calls[0]["config"] == {"temperature": 0.5}

    def test_string_contents_passed_through(self, client, provider_router, fake_provider):
        fake_provider.chunks = [StreamChunk(text="ok")]
        client.post("/api/chat", json={"model": "gemini-2.5-flash", "contents": "diga ok"})
        assert fake_provider.calls[0]["contents"] == "diga ok"

    def test_failure_mid_stream_becomes_error_frame(self, client, provider_router, fake_provider):
        fake_provider.chunks = [StreamChunk(text="parcial")]
        fake_provider.error = ProviderError("upstream exploded", upstream_status=500)

        response = client.post("/api/chat", json={"model": "gemini-2.5-flash", "contents": "x"})

        assert response.status_code == 200
        body = frames(response.text)
        assert body[0]["text"] == "parcial"
        assert body[-1] == {"error": "upstream exploded"}

    def test_missing_key_is_plain_500(self, client, provider_router, fake_provider):
        fake_provider.configured = False
        response = client.post("/api/chat", json={"model": "gemini-2.5-flash", "contents": "x"})
        assert response.status_code == 500
        assert response.json() == {"message": "API Key server configuration missing."}
        assert fake_provider.calls == []

    def test_unrouted_provider_is_500(self, client, provider_router):
        response = client.post("/api/chat", json={"model": "gpt-4o", "contents": "x"})
        assert response.status_code == 500
        assert "message" in response.json()

    def test_default_model_used_when_omitted(self, client, provider_router, fake_provider, cfg):
        fake_provider.chunks = [StreamChunk(text="ok")]
        client.post("/api/chat", json={"contents": "x"})
        assert fake_provider.calls[0]["model"] == cfg.gemini.chat_model
