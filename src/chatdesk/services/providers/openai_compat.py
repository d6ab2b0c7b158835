"""
OpenAI-compatible chat completions client (OpenAI, DeepSeek).

Gemini-style contents are translated to chat messages: `model` turns become
`assistant`, inline images become `image_url` data URLs, and the system
instruction leads as a `system` message. Streaming reads the SSE body up to
`data: [DONE]`.
"""
import json
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from chatdesk.errors import ProviderError
from chatdesk.services.providers.base import (
    Contents, ProviderClient, StreamChunk, error_message, extract_error, is_retryable,
    normalize_contents,
)

log = structlog.get_logger()


def to_chat_messages(contents: Contents, system_instruction: Any = None) -> List[Dict[str, Any]]:
    """Convert Gemini-style contents to chat-completions messages."""
    messages: List[Dict[str, Any]] = []

    if isinstance(system_instruction, dict):
        system_instruction = "".join(p.get("text", "") for p in system_instruction.get("parts", []))
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})

    for entry in normalize_contents(contents):
        role = "assistant" if entry.get("role") == "model" else "user"
        parts = entry.get("parts") or []

        if any("inlineData" in p for p in parts):
            content: Any = []
            for p in parts:
                if "text" in p:
                    content.append({"type": "text", "text": p["text"]})
                elif "inlineData" in p:
                    data = p["inlineData"]
                    content.append({
                        "type": "image_url",
                        "image_url": {"url": f"data:{data['mimeType']};base64,{data['data']}"},
                    })
        else:
            content = "\n\n".join(p["text"] for p in parts if "text" in p)

        messages.append({"role": role, "content": content})
    return messages


class OpenAICompatibleClient(ProviderClient):
    """Client for any `/chat/completions` endpoint with SSE streaming."""

    def __init__(
        self,
        name: str,
        api_key: str,
        base_url: str,
        timeout_seconds: int = 120,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.api_key:
            log.warning("provider_client_no_key", provider=name)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            log.info("provider_client_closed", provider=self.name)

    def build_payload(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]], stream: bool,
    ) -> Dict[str, Any]:
        config = config or {}
        payload: Dict[str, Any] = {
            "model": model,
            "messages": to_chat_messages(contents, config.get("systemInstruction")),
            "stream": stream,
        }
        if "maxOutputTokens" in config:
            payload["max_tokens"] = config["maxOutputTokens"]
        if "temperature" in config:
            payload["temperature"] = config["temperature"]
        if "topP" in config:
            payload["top_p"] = config["topP"]
        return payload

    async def stream_generate(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Streaming chat completion — yields content deltas as StreamChunks."""
        payload = self.build_payload(model, contents, config, stream=True)

        async with self.client.stream("POST", "/chat/completions", json=payload) as response:
            if response.status_code >= 400:
                await response.aread()
                message = error_message(response, self.name)
                log.error("provider_http_error", provider=self.name, status=response.status_code, error=message)
                raise ProviderError(message, upstream_status=response.status_code)

            async for line in response.aiter_lines():
                if not line or not line.startswith("data: "):
                    continue
                chunk = line[len("data: "):]
                if chunk == "[DONE]":
                    break
                try:
                    obj = json.loads(chunk)
                except json.JSONDecodeError:
                    continue
                if obj.get("error"):
                    raise ProviderError(extract_error(obj, f"{self.name} stream error"))

                delta = (obj.get("choices") or [{}])[0].get("delta") or {}
                content = delta.get("content") or ""
                usage = obj.get("usage")
                if content or usage:
                    yield StreamChunk(text=content, usage_metadata=usage)

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.5, max=8.0),
        reraise=True,
    )
    async def generate(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Non-streaming chat completion."""
        payload = self.build_payload(model, contents, config, stream=False)
        response = await self.client.post("/chat/completions", json=payload)
        if response.status_code >= 400:
            message = error_message(response, self.name)
            log.error("provider_http_error", provider=self.name, status=response.status_code, error=message)
            raise ProviderError(message, upstream_status=response.status_code)

        data = response.json()
        return data["choices"][0]["message"].get("content") or ""
