"""
Provider-neutral streaming types.

Requests use the Gemini `contents` shape (a list of `{role, parts}` where a
part is `{"text": ...}` or `{"inlineData": {"mimeType", "data"}}`); every
provider client accepts it and translates as needed.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from chatdesk.errors import ProviderError
from chatdesk.schemas import GroundingChunk

Contents = Union[str, List[Dict[str, Any]]]


def normalize_contents(contents: Contents) -> List[Dict[str, Any]]:
    """A bare prompt string becomes a single user turn."""
    if isinstance(contents, str):
        return [{"role": "user", "parts": [{"text": contents}]}]
    return list(contents)


@dataclass
class StreamChunk:
    """One incremental piece of a model response."""
    text: str = ""
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    usage_metadata: Optional[Dict[str, Any]] = None

    def grounding_chunks(self) -> List[GroundingChunk]:
        """Web citations of the first candidate that carry both uri and title."""
        if not self.candidates:
            return []
        metadata = self.candidates[0].get("groundingMetadata") or {}
        found = []
        for raw in metadata.get("groundingChunks") or []:
            web = raw.get("web") or {}
            if web.get("uri") and web.get("title"):
                found.append(GroundingChunk.model_validate({"web": {"uri": web["uri"], "title": web["title"]}}))
        return found

    def to_wire(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "candidates": self.candidates,
            "usageMetadata": self.usage_metadata,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "StreamChunk":
        if data.get("error"):
            raise ProviderError(str(data["error"]))
        return cls(
            text=data.get("text") or "",
            candidates=data.get("candidates") or [],
            usage_metadata=data.get("usageMetadata"),
        )


def extract_error(body: Any, fallback: str) -> str:
    """Pull the human-readable message out of an API error body."""
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    return fallback


def error_message(response: httpx.Response, provider: str) -> str:
    """Best-effort extraction of the provider's own error text."""
    try:
        body = response.json()
    except ValueError:
        body = None
    return extract_error(body, f"{provider} API returned {response.status_code}")


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ProviderError):
        return exc.retryable
    return isinstance(exc, httpx.TransportError)


class ProviderClient(ABC):
    """Streaming and one-shot generation against one hosted LLM API."""

    name: str = "provider"

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    def stream_generate(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StreamChunk]:
        ...

    @abstractmethod
    async def generate(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> str:
        ...

    async def close(self):
        pass
