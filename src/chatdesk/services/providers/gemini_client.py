"""
Gemini API Client — streaming and one-shot content generation over the
public REST endpoint (`streamGenerateContent?alt=sse`).
"""
import json
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from chatdesk.config import GeminiConfig, get_config
from chatdesk.errors import ProviderError
from chatdesk.services.providers.base import (
    Contents, ProviderClient, StreamChunk, error_message, extract_error, is_retryable,
    normalize_contents,
)

log = structlog.get_logger()

# Request `config` keys that belong in generationConfig.
_GENERATION_KEYS = (
    "maxOutputTokens", "temperature", "topP", "topK", "thinkingConfig",
    "stopSequences", "responseMimeType",
)


def candidate_text(candidates: List[Dict[str, Any]]) -> str:
    """Concatenated answer text of the first candidate, thought parts excluded."""
    if not candidates:
        return ""
    content = candidates[0].get("content") or {}
    return "".join(
        part.get("text", "")
        for part in content.get("parts") or []
        if not part.get("thought")
    )


class GeminiClient(ProviderClient):
    """Async client for the Gemini generateContent API."""

    name = "gemini"

    def __init__(self, cfg: Optional[GeminiConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cfg = cfg or get_config().gemini
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.cfg.api_key:
            log.warning("gemini_client_no_key", message="GEMINI_API_KEY not set")

    @property
    def is_configured(self) -> bool:
        return bool(self.cfg.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.cfg.base_url,
                headers={
                    "x-goog-api-key": self.cfg.api_key,
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.cfg.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            log.info("gemini_client_closed")

    def build_payload(self, contents: Contents, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Translate the flat request config into the REST body."""
        config = config or {}
        payload: Dict[str, Any] = {"contents": normalize_contents(contents)}

        instruction = config.get("systemInstruction")
        if instruction:
            if isinstance(instruction, str):
                instruction = {"parts": [{"text": instruction}]}
            payload["systemInstruction"] = instruction

        generation = {k: config[k] for k in _GENERATION_KEYS if k in config}
        if generation:
            payload["generationConfig"] = generation

        if config.get("tools"):
            payload["tools"] = config["tools"]
        return payload

    async def stream_generate(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Streaming generation — yields one StreamChunk per SSE event."""
        payload = self.build_payload(contents, config)

        async with self.client.stream(
            "POST",
            f"/models/{model}:streamGenerateContent",
            params={"alt": "sse"},
            json=payload,
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                message = error_message(response, "Gemini")
                log.error("gemini_http_error", status=response.status_code, model=model, error=message)
                raise ProviderError(message, upstream_status=response.status_code)

            async for line in response.aiter_lines():
                if not line or not line.startswith("data: "):
                    continue
                try:
                    obj = json.loads(line[len("data: "):])
                except json.JSONDecodeError:
                    continue
                if obj.get("error"):
                    raise ProviderError(extract_error(obj, "Gemini stream error"))
                candidates = obj.get("candidates") or []
                yield StreamChunk(
                    text=candidate_text(candidates),
                    candidates=candidates,
                    usage_metadata=obj.get("usageMetadata"),
                )

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.5, max=8.0),
        reraise=True,
    )
    async def generate(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Non-streaming generation — returns the answer text."""
        payload = self.build_payload(contents, config)
        response = await self.client.post(f"/models/{model}:generateContent", json=payload)
        if response.status_code >= 400:
            message = error_message(response, "Gemini")
            log.error("gemini_http_error", status=response.status_code, model=model, error=message)
            raise ProviderError(message, upstream_status=response.status_code)

        data = response.json()
        return candidate_text(data.get("candidates") or [])
