"""
API routes — conversation sync, the streaming chat proxy and health.
"""
from typing import AsyncGenerator

import structlog
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import StreamingResponse

from chatdesk import __version__
from chatdesk.errors import BadRequestError
from chatdesk.middleware.auth_middleware import get_current_user_id
from chatdesk.middleware.rate_limiter import endpoint_limit, get_limiter
from chatdesk.schemas import ChatRequest, MessageResponse, SaveConversationsRequest
from chatdesk.services.conversation_store import ConversationStore, get_conversation_store
from chatdesk.services.prompt_builder import select_model
from chatdesk.services.providers import ProviderRouter, get_provider_router
from chatdesk.services.providers.base import Contents, ProviderClient
from chatdesk.services.stream_codec import encode_chunk, encode_error

log = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["api"])
limiter = get_limiter()


# ---- Conversations ----

@router.get("/conversations")
async def get_conversations(
    user_id: int = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    return await store.get(user_id)


@router.post("/conversations", response_model=MessageResponse)
async def save_conversations(
    req: SaveConversationsRequest,
    user_id: int = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    if req.conversations is None:
        raise BadRequestError("Dados de conversas ausentes.")
    await store.save(user_id, req.conversations)
    return {"message": "Conversas salvas com sucesso."}


# ---- Chat proxy ----

async def _relay(
    provider: ProviderClient, model: str, contents: Contents, config: dict,
) -> AsyncGenerator[str, None]:
    """Provider chunks as wire frames; a failure becomes the last frame."""
    chunks = 0
    try:
        async for chunk in provider.stream_generate(model, contents, config):
            chunks += 1
            yield encode_chunk(chunk)
    except Exception as e:
        log.error("chat_stream_failed", provider=provider.name, model=model, chunks=chunks, error=str(e))
        yield encode_error(str(e) or "Unknown error")
        return
    log.info("chat_stream_completed", provider=provider.name, model=model, chunks=chunks)


@router.post("/chat")
@limiter.limit(endpoint_limit("chat"))
async def chat(
    request: Request,
    response: Response,
    req: ChatRequest,
    providers: ProviderRouter = Depends(get_provider_router),
):
    """
    Stream a model response as delimiter-separated JSON frames.

    A missing provider key is reported as a plain 500 before any frame is sent.
    """
    model = req.model or select_model()
    provider = providers.resolve(model)
    log.info("chat_stream_started", provider=provider.name, model=model)

    return StreamingResponse(
        _relay(provider, model, req.contents, req.config),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache, no-transform"},
    )


# ---- Health ----

@router.get("/health")
async def health_check():
    return {"status": "healthy", "version": __version__, "service": "chatdesk"}
