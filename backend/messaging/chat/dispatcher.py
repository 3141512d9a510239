"""Message dispatch: validate, persist, fan out.

Flow for ``message:send``:
    1. Validate the payload (target, content length, message type).
    2. Resolve the conversation: the room for ``roomId`` (sender must be a
       member), or the direct conversation for ``recipientId`` (created on
       first message).
    3. Short-circuit retries that reuse a ``clientMessageId``.
    4. Persist with every recipient in state ``sent``.
    5. Fan ``message:receive`` out concurrently to every connection of every
       online recipient and every connection of the sender (the sending
       connection's copy doubles as the acknowledgment).
    6. Mark reached recipients delivered, then send ``conversation:update``.

Sends into the same conversation are serialized by a per-conversation lock so
that persisted order (seq) is also delivery order.
"""
import asyncio
import logging
import weakref
from typing import Optional

from messaging.errors import ValidationFailed
from messaging.store import StoreGateway
from messaging.store.schemas import Conversation, Message

from .channel import EventChannel
from .connections import Connection
from .delivery import DeliveryTracker
from .events import CONVERSATION_UPDATE, MESSAGE_RECEIVE, SendMessageInput
from .membership import RoomMembershipResolver

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Handles ``message:send`` for direct and room targets."""

    def __init__(
        self,
        store: StoreGateway,
        channel: EventChannel,
        membership: RoomMembershipResolver,
        delivery: DeliveryTracker,
        max_content_length: int = 2000,
    ) -> None:
        self._store = store
        self._channel = channel
        self._membership = membership
        self._delivery = delivery
        self._max_content_length = max_content_length
        # Entries disappear once no send holds or awaits the lock.
        self._conversation_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._conversation_locks.get(conversation_id)
        if lock is None:
            lock = self._conversation_locks[conversation_id] = asyncio.Lock()
        return lock

    async def send(self, sender: Connection, request: SendMessageInput) -> Message:
        """Persist and deliver a message sent over *sender*'s socket.

        Raises:
            ValidationFailed: Empty/oversized content or sending to yourself.
            Forbidden: Sender is not a member of the target room.
            ConversationNotFound: Room id does not resolve.
            StoreTimeout: The store did not answer in time.
        """
        return await self.send_as(sender.user_id, request, origin=sender)

    async def send_as(
        self,
        sender_id: str,
        request: SendMessageInput,
        origin: Optional[Connection] = None,
    ) -> Message:
        """Persist and deliver a message on behalf of *sender_id*.

        *origin* is the socket the request arrived on, if any; a retried
        ``clientMessageId`` is re-acknowledged on it. REST sends pass None and
        get the original message back as the return value.
        """
        content = self._validate_content(request.content)

        if request.roomId:
            conversation = await self._membership.require_member(request.roomId, sender_id)
        else:
            if request.recipientId == sender_id:
                raise ValidationFailed("Cannot send message to yourself")
            conversation, created = await self._store.get_or_create_direct(
                sender_id, request.recipientId
            )
            if created:
                # Open connections of both participants join the new conversation.
                for user_id in conversation.member_ids:
                    for conn in self._channel.connections_for(user_id):
                        conn.rooms.add(conversation.id)

        async with self._lock_for(conversation.id):
            if request.clientMessageId:
                existing = await self._store.find_by_client_id(
                    conversation.id, sender_id, request.clientMessageId
                )
                if existing is not None:
                    logger.info(
                        "[Dispatch] Duplicate clientMessageId %s from %s, re-acknowledging %s",
                        request.clientMessageId, sender_id, existing.id,
                    )
                    if origin is not None:
                        await self._channel.emit_to_connection(
                            origin, MESSAGE_RECEIVE, {"message": existing.model_dump(mode="json")}
                        )
                    return existing

            recipients = [m for m in conversation.member_ids if m != sender_id]
            mentions = [m for m in dict.fromkeys(request.mentions) if conversation.is_member(m)]
            message = await self._store.insert_message(
                conversation.id,
                sender_id,
                content,
                recipients,
                message_type=request.messageType,
                mentions=mentions,
                client_message_id=request.clientMessageId,
                room_id=conversation.id if request.roomId else None,
            )

            reached = await self._channel.emit_to_users(
                [sender_id, *recipients],
                MESSAGE_RECEIVE,
                {"message": message.model_dump(mode="json")},
            )
            logger.info(
                "[Dispatch] %s -> %s: message %s (seq %d) reached %d/%d recipients",
                sender_id, conversation.id, message.id, message.seq,
                sum(1 for r in recipients if reached.get(r)), len(recipients),
            )

            for recipient_id in recipients:
                if reached.get(recipient_id):
                    await self._delivery.mark_delivered(message, recipient_id)

            await self._announce(conversation, message)
        return message

    def _validate_content(self, content: str) -> str:
        stripped = (content or "").strip()
        if not stripped:
            raise ValidationFailed("Message content is required")
        if len(stripped) > self._max_content_length:
            raise ValidationFailed(
                f"Message cannot exceed {self._max_content_length} characters"
            )
        return stripped

    async def _announce(self, conversation: Conversation, message: Message) -> None:
        refreshed = conversation.model_copy(
            update={"lastMessageId": message.id, "lastActivity": message.createdAt}
        )
        await self._channel.emit_to_users(
            conversation.member_ids,
            CONVERSATION_UPDATE,
            {
                "conversation": refreshed.model_dump(mode="json"),
                "lastMessage": message.model_dump(mode="json"),
            },
        )
