"""
Provider Router — routes a model name to the provider client that serves it.

Routing is by model-name prefix from `routing.prefixes` (`gemini-`, `gpt-`,
`deepseek-`, ...), falling back to `routing.default_provider`. The router
is a process-wide singleton whose clients share pooled httpx connections.
"""
from typing import Any, AsyncGenerator, Dict, Optional

import structlog

from chatdesk.config import RoutingConfig, get_config
from chatdesk.errors import ProviderNotConfiguredError
from chatdesk.services.providers.base import Contents, ProviderClient, StreamChunk
from chatdesk.services.providers.gemini_client import GeminiClient
from chatdesk.services.providers.openai_compat import OpenAICompatibleClient

log = structlog.get_logger()


class ProviderRouter:
    """Prefix-based model routing across provider clients."""

    def __init__(self, providers: Dict[str, ProviderClient], routing: Optional[RoutingConfig] = None):
        self.providers = providers
        self.routing = routing or get_config().routing

    def provider_name_for(self, model: str) -> str:
        """First configured prefix that `model` starts with, else the default provider."""
        for prefix, provider in self.routing.prefixes.items():
            if model.startswith(prefix):
                return provider
        return self.routing.default_provider

    def resolve(self, model: str, require_key: bool = True) -> ProviderClient:
        """
        Provider client for `model`.

        Raises:
            ProviderNotConfiguredError: unknown provider, or no API key for it
        """
        name = self.provider_name_for(model)
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderNotConfiguredError(f"Provedor desconhecido para o modelo {model}: {name}")
        if require_key and not provider.is_configured:
            raise ProviderNotConfiguredError("API Key server configuration missing.")
        return provider

    async def stream_generate(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """
        Stream a response from the provider that serves `model`.

        Args:
            model: model name, also used for routing
            contents: Gemini-shaped contents or a bare prompt string
            config: generation config passed through to the provider

        Yields:
            StreamChunk for each incremental piece of the answer

        Raises:
            ProviderNotConfiguredError: no provider or no API key for `model`
            ProviderError: the provider rejected or broke off the request
        """
        provider = self.resolve(model)
        log.info("generation_started", provider=provider.name, model=model, stream=True)
        async for chunk in provider.stream_generate(model, contents, config):
            yield chunk

    async def generate(
        self, model: str, contents: Contents, config: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Non-streaming counterpart of `stream_generate`; returns the full text."""
        provider = self.resolve(model)
        log.info("generation_started", provider=provider.name, model=model, stream=False)
        return await provider.generate(model, contents, config)

    async def close(self):
        for provider in self.providers.values():
            await provider.close()


def build_router() -> ProviderRouter:
    cfg = get_config()
    return ProviderRouter(
        providers={
            "gemini": GeminiClient(cfg.gemini),
            "openai": OpenAICompatibleClient(
                "openai", cfg.openai.api_key, cfg.openai.base_url, cfg.openai.timeout_seconds,
            ),
            "deepseek": OpenAICompatibleClient(
                "deepseek", cfg.deepseek.api_key, cfg.deepseek.base_url, cfg.deepseek.timeout_seconds,
            ),
        },
        routing=cfg.routing,
    )


_router: Optional[ProviderRouter] = None


def get_provider_router() -> ProviderRouter:
    """Get singleton ProviderRouter (also the FastAPI dependency for /api/chat)."""
    global _router
    if _router is None:
        _router = build_router()
    return _router


async def close_provider_router() -> None:
    """Close pooled connections; called from the app lifespan on shutdown."""
    global _router
    if _router is not None:
        await _router.close()
        _router = None
