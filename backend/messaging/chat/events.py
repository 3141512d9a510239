"""Event names and inbound payload schemas for the messaging socket protocol.

Client -> Server:
    - message:send: send a direct or room message
    - message:read: acknowledge messages as read
    - typing:start / typing:stop: typing indicator
    - user:get_online_status: presence query
    - user:sync_missed_messages: replay undelivered messages

Server -> Client:
    - connected, message:receive, message:delivered, message:read,
      conversation:update, typing:start, typing:stop, user:online,
      user:offline, user:online_status, user:sync_complete, error
"""
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, model_validator

from messaging.errors import ValidationFailed
from messaging.store.schemas import MessageType

# Client -> Server
MESSAGE_SEND = "message:send"
MESSAGE_READ = "message:read"
TYPING_START = "typing:start"
TYPING_STOP = "typing:stop"
GET_ONLINE_STATUS = "user:get_online_status"
SYNC_MISSED = "user:sync_missed_messages"

# Server -> Client
CONNECTED = "connected"
MESSAGE_RECEIVE = "message:receive"
MESSAGE_DELIVERED = "message:delivered"
MESSAGE_READ_RECEIPT = "message:read"
CONVERSATION_UPDATE = "conversation:update"
ONLINE_STATUS = "user:online_status"
SYNC_COMPLETE = "user:sync_complete"
ERROR = "error"

# ``event`` of an error raised while a new connection is being set up
CONNECT = "connect"

MAX_CLIENT_MESSAGE_ID_LENGTH = 64


class SendMessageInput(BaseModel):
    """Payload of ``message:send``. Exactly one of recipientId / roomId."""
    recipientId: Optional[str] = None
    roomId: Optional[str] = None
    content: str = ""
    messageType: MessageType = MessageType.TEXT
    mentions: List[str] = Field(default_factory=list)
    clientMessageId: Optional[str] = Field(
        default=None, max_length=MAX_CLIENT_MESSAGE_ID_LENGTH
    )

    @model_validator(mode="after")
    def _one_target(self) -> "SendMessageInput":
        if bool(self.recipientId) == bool(self.roomId):
            raise ValueError("Exactly one of recipientId or roomId is required")
        if self.messageType == MessageType.SYSTEM:
            raise ValueError("System messages cannot be sent by clients")
        return self


class ReadInput(BaseModel):
    """Payload of ``message:read``."""
    roomId: Optional[str] = None
    conversationId: Optional[str] = None
    messageIds: List[str] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _has_conversation(self) -> "ReadInput":
        if not (self.roomId or self.conversationId):
            raise ValueError("roomId or conversationId is required")
        return self

    @property
    def target_id(self) -> str:
        return self.roomId or self.conversationId


class TypingInput(BaseModel):
    """Payload of ``typing:start`` / ``typing:stop``."""
    roomId: Optional[str] = None
    conversationId: Optional[str] = None
    recipientId: Optional[str] = None

    @model_validator(mode="after")
    def _one_target(self) -> "TypingInput":
        targets = [t for t in (self.roomId, self.conversationId, self.recipientId) if t]
        if len(targets) != 1:
            raise ValueError("Exactly one of roomId, conversationId or recipientId is required")
        return self


class OnlineStatusInput(BaseModel):
    userIds: List[str] = Field(default_factory=list)


class SyncInput(BaseModel):
    since: Optional[float] = None


Payload = TypeVar("Payload", bound=BaseModel)


def parse_payload(model: Type[Payload], data: Optional[dict]) -> Payload:
    """Validate an inbound payload, mapping pydantic errors to ValidationFailed."""
    try:
        return model.model_validate(data or {})
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        detail = first.get("msg", "invalid payload")
        if detail.startswith("Value error, "):
            detail = detail[len("Value error, "):]
        message = f"{location}: {detail}" if location else detail
        raise ValidationFailed(f"Invalid payload: {message}") from exc
