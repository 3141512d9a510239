"""Delivery and read tracking per (message, recipient) pair.

State machine: ``sent -> delivered -> read``. Transitions are conditional
updates in the store, so a later state never reverts. A read that arrives
before any delivery also satisfies ``delivered``; in that case the sender
receives ``message:delivered`` before ``message:read``.

All transitions for one recipient go through a per-recipient lock covering
both the store update and the confirmation emit, so confirmations for a pair
are observed in state order even across a reconnect.
"""
import asyncio
import logging
import weakref
from typing import Dict, List, Optional, Sequence

from messaging.store import StoreGateway
from messaging.store.schemas import (
    Conversation,
    ConversationKind,
    Message,
    RecipientTransition,
)

from .channel import EventChannel
from .events import MESSAGE_DELIVERED, MESSAGE_READ_RECEIPT

logger = logging.getLogger(__name__)


class DeliveryTracker:
    """Records delivery/read transitions and confirms them to senders."""

    def __init__(self, store: StoreGateway, channel: EventChannel) -> None:
        self._store = store
        self._channel = channel
        self._recipient_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, recipient_id: str) -> asyncio.Lock:
        lock = self._recipient_locks.get(recipient_id)
        if lock is None:
            lock = self._recipient_locks[recipient_id] = asyncio.Lock()
        return lock

    async def mark_delivered(
        self, message: Message, recipient_id: str, at: Optional[float] = None
    ) -> Optional[RecipientTransition]:
        """``sent -> delivered`` for one recipient; confirms to the sender.

        Returns None (and emits nothing) if the pair was already delivered or read.
        """
        async with self._lock_for(recipient_id):
            transition = await self._store.mark_delivered(message.id, recipient_id, at)
            if transition is None:
                return None
            await self._confirm_delivered(transition)
            return transition

    async def mark_read(
        self,
        reader_id: str,
        conversation: Conversation,
        message_ids: Sequence[str],
        at: Optional[float] = None,
    ) -> List[RecipientTransition]:
        """Mark the reader's copies of *message_ids* as read.

        Ids that are unknown, belong to another conversation, or were sent by
        the reader are ignored. Read confirmations are grouped per sender.
        """
        messages = [
            m for m in await self._store.get_messages(message_ids)
            if m.conversationId == conversation.id and reader_id in m.delivery
        ]
        if not messages:
            return []

        transitions: List[RecipientTransition] = []
        async with self._lock_for(reader_id):
            for message in messages:
                transition = await self._store.mark_read(message.id, reader_id, at)
                if transition is None:
                    continue
                if transition.coercedDelivery:
                    await self._confirm_delivered(transition)
                transitions.append(transition)

            by_sender: Dict[str, List[RecipientTransition]] = {}
            for transition in transitions:
                by_sender.setdefault(transition.senderId, []).append(transition)

            for sender_id, group in by_sender.items():
                payload = {
                    "messageIds": [t.messageId for t in group],
                    "conversationId": conversation.id,
                    "readerId": reader_id,
                    "at": max(t.readAt for t in group),
                }
                if conversation.kind == ConversationKind.GROUP:
                    payload["roomId"] = conversation.id
                await self._channel.emit_to_user(sender_id, MESSAGE_READ_RECEIPT, payload)

        if transitions:
            logger.info(
                "[Delivery] %s read %d message(s) in %s",
                reader_id, len(transitions), conversation.id,
            )
        return transitions

    async def _confirm_delivered(self, transition: RecipientTransition) -> None:
        await self._channel.emit_to_user(
            transition.senderId,
            MESSAGE_DELIVERED,
            {
                "messageId": transition.messageId,
                "conversationId": transition.conversationId,
                "recipientId": transition.recipientId,
                "at": transition.deliveredAt,
            },
        )
