"""Conversions between browser input and chat messages."""
import base64
import mimetypes
from typing import Optional

from chatdesk.schemas import Attachment

TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-yaml",
    "application/x-sh",
}


def _is_text(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in TEXT_MIME_TYPES


def attachment_from_upload(name: str, content: bytes, mime_type: Optional[str] = None) -> Attachment:
    """
    Build an Attachment from an uploaded file.

    Images are kept as base64; text-like files as decoded text. Anything else
    keeps only its name and type, and the model is told it could not be read.
    """
    mime_type = mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"

    if mime_type.startswith("image/"):
        data = base64.b64encode(content).decode("ascii")
    elif _is_text(mime_type):
        try:
            data = content.decode("utf-8")
        except UnicodeDecodeError:
            data = ""
    else:
        data = ""
    return Attachment(data=data, mime_type=mime_type, name=name)


def code_block(code: str, language: str = "html") -> str:
    return f"```{language}\n{code}\n```"
