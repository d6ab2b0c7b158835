"""
Prompt Builder — turns a conversation history plus the new prompt into
provider `contents`, and picks the model and generation config for the
request.

Attachment handling:
- Images travel as `inlineData` parts, ahead of the text
- Text files are inlined between markers with an instruction to use them
- Files that could not be read are named, so the model can say so
- Entries left without any text or image are dropped
"""
from typing import Any, Dict, List, Optional, Sequence

from chatdesk.config import get_config
from chatdesk.schemas import Attachment, Message

Part = Dict[str, Any]


def _inline(attachment: Attachment) -> Part:
    return {"inlineData": {"mimeType": attachment.mime_type, "data": attachment.data}}


def _history_parts(message: Message) -> List[Part]:
    parts: List[Part] = []
    attachment = message.attachment

    if attachment:
        if attachment.is_image:
            parts.append(_inline(attachment))
        elif message.role == "user":
            if attachment.data:
                parts.append({"text": (
                    f'Contexto de um arquivo anterior chamado "{attachment.name}":\n\n'
                    f"--- CONTEÚDO ---\n{attachment.data}\n--- FIM ---"
                )})
            else:
                parts.append({"text": (
                    f'[O usuário tinha anexado o arquivo "{attachment.name}" '
                    f"mas o conteúdo não foi lido.]"
                )})

    if message.content:
        parts.append({"text": message.content})
    return parts


def _prompt_parts(prompt: str, attachment: Optional[Attachment]) -> List[Part]:
    parts: List[Part] = []

    if attachment:
        if attachment.is_image:
            parts.append(_inline(attachment))
        elif attachment.data:
            parts.append({"text": (
                f'Use o conteúdo do arquivo "{attachment.name}" abaixo para responder à '
                f"pergunta do usuário.\n\n--- INÍCIO ---\n{attachment.data}\n--- FIM ---"
            )})
        else:
            parts.append({"text": (
                f'[O usuário anexou o arquivo "{attachment.name}" ({attachment.mime_type}), '
                f"mas não foi possível ler o seu conteúdo. Informe educadamente ao usuário "
                f"que você não pode acessar o conteúdo deste tipo de arquivo.]"
            )})

    # The prompt goes in as its own part, without any prefix.
    if prompt.strip():
        parts.append({"text": prompt})
    return parts


def _has_content(entry: Dict[str, Any]) -> bool:
    return any(
        ("text" in p and p["text"].strip()) or "inlineData" in p
        for p in entry["parts"]
    )


def build_contents(
    history: Sequence[Message], prompt: str, attachment: Optional[Attachment] = None,
) -> List[Dict[str, Any]]:
    """
    Gemini `contents` for a request.

    Args:
        history: messages already in the conversation, oldest first
        prompt: the new user text (may be blank when a file is attached)
        attachment: file or image sent with the prompt

    Returns:
        `[{"role", "parts"}, ...]` ending with the new user turn
    """
    contents = [{"role": m.role, "parts": _history_parts(m)} for m in history]

    user_parts = _prompt_parts(prompt, attachment)
    if user_parts:
        contents.append({"role": "user", "parts": user_parts})

    return [c for c in contents if c["parts"] and _has_content(c)]


def select_model(attachment: Optional[Attachment] = None, model: Optional[str] = None) -> str:
    """Explicit model wins; otherwise the vision model for images, else the chat model."""
    if model:
        return model
    cfg = get_config().gemini
    if attachment and attachment.is_image:
        return cfg.vision_model
    return cfg.chat_model


def generation_config(search: Optional[bool] = None) -> Dict[str, Any]:
    """
    Request config: system instruction, output cap and thinking budget.

    Args:
        search: add the Google Search tool; None follows `gemini.enable_search`
    """
    cfg = get_config()
    config: Dict[str, Any] = {
        "systemInstruction": cfg.chat.system_instruction,
        "maxOutputTokens": cfg.gemini.max_output_tokens,
        "thinkingConfig": {"thinkingBudget": cfg.gemini.thinking_budget},
    }
    use_search = cfg.gemini.enable_search if search is None else search
    if use_search:
        config["tools"] = [{"googleSearch": {}}]
    return config
