"""
Framing for the /api/chat response body.

Each frame is one JSON object followed by CHUNK_DELIMITER. A failure after
the stream has started is sent as a final `{"error": "..."}` frame.
"""
import json
from typing import Any, Dict, List

from chatdesk.services.providers.base import StreamChunk

CHUNK_DELIMITER = "\n__GEMINI_CHUNK__\n"


def encode_frame(data: Dict[str, Any]) -> str:
    """One frame: compact JSON (non-ASCII kept) plus the delimiter."""
    return json.dumps(data, ensure_ascii=False) + CHUNK_DELIMITER


def encode_chunk(chunk: StreamChunk) -> str:
    return encode_frame(chunk.to_wire())


def encode_error(message: str) -> str:
    return encode_frame({"error": message})


class ChunkDecoder:
    """Incremental decoder; frames may be split across network reads."""

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> List[Dict[str, Any]]:
        """
        Add received text and return the frames it completed.

        Raises:
            json.JSONDecodeError: a complete frame is not valid JSON
        """
        self._buffer += text
        frames = []
        while CHUNK_DELIMITER in self._buffer:
            raw, self._buffer = self._buffer.split(CHUNK_DELIMITER, 1)
            if raw.strip():
                frames.append(json.loads(raw))
        return frames

    def flush(self) -> List[Dict[str, Any]]:
        """Parse whatever is left once the body has ended."""
        raw, self._buffer = self._buffer, ""
        if raw.strip():
            return [json.loads(raw)]
        return []
