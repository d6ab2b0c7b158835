"""
Async HTTP client for the chatdesk backend.

Wraps the auth, conversation and chat endpoints. The token returned by
login/register is kept on the client and sent as a bearer header on every
later call.
"""
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

import httpx
import structlog

from chatdesk.errors import ApiError
from chatdesk.schemas import Attachment, Message
from chatdesk.services.prompt_builder import build_contents, generation_config, select_model
from chatdesk.services.providers.base import Contents, StreamChunk
from chatdesk.services.stream_codec import ChunkDecoder

log = structlog.get_logger()


class ChatdeskClient:
    """Talks to one chatdesk server on behalf of one user."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.user: Optional[Dict[str, Any]] = None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self) -> "ChatdeskClient":
        return self

    async def __aexit__(self, *exc):
        await self.close()

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    @staticmethod
    def _raise_for_status(response: httpx.Response):
        if response.status_code < 400:
            return
        try:
            message = response.json().get("message")
        except ValueError:
            message = None
        raise ApiError(message or f"HTTP {response.status_code}", status_code=response.status_code)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        self._raise_for_status(response)
        return response

    def _remember(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.token = body["token"]
        self.user = body["user"]
        return body

    # ---- Auth ----

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        response = await self._request("POST", "/api/login", json={"email": email, "password": password})
        return self._remember(response.json())

    async def register(self, name: str, email: str, password: str) -> Dict[str, Any]:
        response = await self._request(
            "POST", "/api/register", json={"name": name, "email": email, "password": password},
        )
        return self._remember(response.json())

    async def login_with_google(self, credential: str) -> Dict[str, Any]:
        """Exchange a Google ID token for a chatdesk session."""
        response = await self._request("POST", "/api/google-login", json={"credential": credential})
        return self._remember(response.json())

    def logout(self):
        self.token = None
        self.user = None

    async def me(self) -> Dict[str, Any]:
        response = await self._request("GET", "/api/me")
        return response.json()

    async def update_password(self, new_password: str, current_password: Optional[str] = None) -> str:
        body = {"newPassword": new_password}
        if current_password is not None:
            body["currentPassword"] = current_password
        response = await self._request("POST", "/api/password", json=body)
        return response.json()["message"]

    async def delete_account(self):
        await self._request("DELETE", "/api/delete-account")
        self.logout()

    # ---- Conversations ----

    async def get_conversations(self) -> List[Dict[str, Any]]:
        """Saved conversations; an expired session logs the client out."""
        try:
            response = await self._request("GET", "/api/conversations")
        except ApiError as e:
            if e.status_code == 401:
                log.info("session_expired")
                self.logout()
            raise
        return response.json()

    async def save_conversations(self, conversations: List[Dict[str, Any]]):
        await self._request("POST", "/api/conversations", json={"conversations": conversations})

    # ---- Chat ----

    async def stream_chat(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """
        POST /api/chat and yield the decoded chunks as they arrive.

        Raises:
            ApiError: the server refused the request before streaming
            ProviderError: the server reported a failure mid-stream
        """
        payload = {"model": model, "contents": contents, "config": config or {}}
        decoder = ChunkDecoder()

        async with self._client.stream("POST", "/api/chat", json=payload, headers=self._headers()) as response:
            if response.status_code >= 400:
                await response.aread()
                self._raise_for_status(response)

            async for text in response.aiter_text():
                for frame in decoder.feed(text):
                    yield StreamChunk.from_wire(frame)
            for frame in decoder.flush():
                yield StreamChunk.from_wire(frame)

    async def generate(self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None) -> str:
        """Non-streaming call built on the stream: the concatenated text."""
        parts = []
        async for chunk in self.stream_chat(model, contents, config):
            parts.append(chunk.text)
        return "".join(parts)

    async def stream_for(
        self,
        history: Sequence[Message],
        prompt: str,
        attachment: Optional[Attachment] = None,
        model: Optional[str] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        contents = build_contents(history, prompt, attachment)
        async for chunk in self.stream_chat(select_model(attachment, model), contents, generation_config()):
            yield chunk


class RemoteGenerator:
    """Lets a ChatSession generate through the backend instead of the providers."""

    def __init__(self, client: ChatdeskClient):
        self.client = client

    def stream(self, history, prompt, attachment=None, model=None):
        return self.client.stream_for(history, prompt, attachment, model)

    async def generate(self, model: str, contents: Any, config: Dict[str, Any]) -> str:
        return await self.client.generate(model, contents, config)
