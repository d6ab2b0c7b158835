"""LLM provider clients and model routing."""
from chatdesk.services.providers.base import ProviderClient, StreamChunk
from chatdesk.services.providers.gemini_client import GeminiClient
from chatdesk.services.providers.openai_compat import OpenAICompatibleClient
from chatdesk.services.providers.router import ProviderRouter, get_provider_router
