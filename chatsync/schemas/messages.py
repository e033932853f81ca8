import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class DeliveryState(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @staticmethod
    def max_of(a: "DeliveryState", b: Optional["DeliveryState"]) -> "DeliveryState":
        if b is None:
            return a
        return a if a.rank >= b.rank else b


_STATE_RANK = {
    DeliveryState.SENT: 0,
    DeliveryState.DELIVERED: 1,
    DeliveryState.SEEN: 2,
}

_MEDIA_PREVIEW = {
    MessageKind.IMAGE: "📷 Imagen",
    MessageKind.VIDEO: "🎥 Video",
    MessageKind.AUDIO: "🎤 Mensaje de voz",
}


def new_message_id() -> str:
    return str(uuid.uuid4())


class Message(BaseModel):
    """
    Mensaje tal como vive en la base remota.
    Los alias son las claves que ya usan los clientes móviles.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="messageId")
    sender_id: str = Field(alias="senderId")
    receiver_id: str = Field(alias="receiverId")
    kind: MessageKind = Field(default=MessageKind.TEXT, alias="type")
    body: str = Field(default="", alias="text")
    media_ref: str = Field(default="", alias="mediaUrl")
    sent_at: int = Field(alias="timestamp")  # epoch ms
    delivery_state: DeliveryState = Field(default=DeliveryState.SENT, alias="status")
    reply_to_id: Optional[str] = Field(default=None, alias="replyToMessageId")
    reply_preview: Optional[str] = Field(default=None, alias="replyPreviewText")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def preview_text(self) -> str:
        if self.kind == MessageKind.TEXT:
            return self.body
        return _MEDIA_PREVIEW.get(self.kind, "Nuevo mensaje")


# --------------------------------------------------------------------
# Schemas del shell HTTP
# --------------------------------------------------------------------
class InputChangeRequest(BaseModel):
    text: str = ""


class SendTextRequest(BaseModel):
    # Si no viene text se usa el buffer de entrada de la sesión
    text: Optional[str] = None
    message_id: Optional[str] = None
    reply_to_id: Optional[str] = None
    reply_preview: Optional[str] = None


class SendMediaRequest(BaseModel):
    path: str
    kind: MessageKind


class PresenceRequest(BaseModel):
    online: bool


class SendMessageResponse(BaseModel):
    success: bool = True
    message_id: Optional[str] = None


class LoadOlderResponse(BaseModel):
    added: int
    oldest_sent_at: Optional[int] = None


class ChatStateResponse(BaseModel):
    messages: List[Message]
    input_text: str
    remote_typing: bool
    remote_presence: str
    loading: bool
    error: Optional[str] = None
    upload_progress: int
    oldest_sent_at: Optional[int] = None
    paging: str
