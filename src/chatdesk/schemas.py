"""
Domain and wire types.

Field aliases keep the camelCase names of the stored JSON blob and of the
HTTP API (`mimeType`, `groundingChunks`, `createdAt`), so conversations saved
by any client round-trip unchanged.
"""
import time
import uuid
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "model"]
Theme = Literal["light", "dark"]


def new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WebSource(WireModel):
    uri: str
    title: str = ""


class GroundingChunk(WireModel):
    web: WebSource


class Attachment(WireModel):
    data: str = ""
    mime_type: str = Field(alias="mimeType")
    name: str = ""

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class Message(WireModel):
    id: str = Field(default_factory=new_id)
    role: Role
    content: str = ""
    attachment: Optional[Attachment] = None
    grounding_chunks: Optional[List[GroundingChunk]] = Field(default=None, alias="groundingChunks")


class Conversation(WireModel):
    id: str = Field(default_factory=new_id)
    title: str = ""
    messages: List[Message] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms, alias="createdAt")

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


# ---- API bodies ----

class User(WireModel):
    id: int
    name: str
    email: str


class AuthResponse(WireModel):
    user: User
    token: str


class RegisterRequest(WireModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(WireModel):
    email: Optional[str] = None
    password: Optional[str] = None


class GoogleLoginRequest(WireModel):
    # Google ID token from Google Identity Services
    credential: Optional[str] = None


class PasswordUpdateRequest(WireModel):
    new_password: Optional[str] = Field(default=None, alias="newPassword")
    current_password: Optional[str] = Field(default=None, alias="currentPassword")


class SaveConversationsRequest(WireModel):
    # Kept as raw JSON: the blob is stored as the client sent it.
    conversations: Optional[List[Dict[str, Any]]] = None


class ChatRequest(WireModel):
    model: Optional[str] = None
    contents: Union[str, List[Dict[str, Any]]] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)


class MessageResponse(WireModel):
    message: str
