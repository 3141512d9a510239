"""Pydantic models for conversations, messages and delivery state.

Field names are camelCase because these models are serialized straight onto
the wire (``model_dump()``) for WebSocket events and REST responses.
"""
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ConversationKind(str, Enum):
    """Direct conversations have two members; groups (rooms) have N."""
    DIRECT = "direct"
    GROUP = "group"


class MemberRole(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"


class MessageType(str, Enum):
    """Type of message.

    Attributes:
        TEXT: Regular text message.
        FILE: File attachment notification.
        SYSTEM: Server-generated notice (never accepted from clients).
    """
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"


class DeliveryState(str, Enum):
    """Per-recipient lifecycle of a message: sent -> delivered -> read."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


_STATE_RANK = {
    DeliveryState.SENT: 0,
    DeliveryState.DELIVERED: 1,
    DeliveryState.READ: 2,
}


class ConversationMember(BaseModel):
    userId: str
    role: MemberRole = MemberRole.MEMBER
    joinedAt: float = Field(default_factory=time.time)


class Conversation(BaseModel):
    """A direct conversation or a group room.

    The member list is the sole authority for who may receive or read the
    conversation's messages.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: ConversationKind
    name: Optional[str] = None
    description: Optional[str] = None
    createdBy: str
    createdAt: float = Field(default_factory=time.time)
    lastActivity: float = Field(default_factory=time.time)
    lastMessageId: Optional[str] = None
    members: List[ConversationMember] = Field(default_factory=list)

    @property
    def member_ids(self) -> List[str]:
        return [m.userId for m in self.members]

    def is_member(self, user_id: str) -> bool:
        return any(m.userId == user_id for m in self.members)

    def role_of(self, user_id: str) -> Optional[MemberRole]:
        for member in self.members:
            if member.userId == user_id:
                return member.role
        return None


class Message(BaseModel):
    """A persisted message.

    Attributes:
        id: Server-assigned identifier (UUID).
        seq: Store-wide monotonic sequence; orders messages within a conversation.
        conversationId: Owning conversation.
        roomId: Same as conversationId for group conversations, else None.
        senderId: Author.
        content: Message text.
        messageType: text, file or system.
        mentions: User ids mentioned in the message.
        clientMessageId: Optional client idempotency token.
        createdAt: Unix timestamp (seconds).
        delivery: recipientId -> delivery state.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    seq: int = 0
    conversationId: str
    roomId: Optional[str] = None
    senderId: str
    content: str
    messageType: MessageType = MessageType.TEXT
    mentions: List[str] = Field(default_factory=list)
    clientMessageId: Optional[str] = None
    createdAt: float = Field(default_factory=time.time)
    delivery: Dict[str, DeliveryState] = Field(default_factory=dict)

    @property
    def recipients(self) -> List[str]:
        return list(self.delivery.keys())


class RecipientTransition(BaseModel):
    """Result of a delivery-state change for one (message, recipient) pair."""
    messageId: str
    conversationId: str
    senderId: str
    recipientId: str
    state: DeliveryState
    deliveredAt: Optional[float] = None
    readAt: Optional[float] = None
    # True when a read also had to satisfy the missing "delivered" step.
    coercedDelivery: bool = False
