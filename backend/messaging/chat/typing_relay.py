"""Typing indicator relay.

Purely ephemeral: nothing is persisted and nothing is retried. Every
``typing:start`` arms a timer; if the matching ``typing:stop`` does not arrive
within ``timeout_seconds`` the relay broadcasts the stop itself, so an
ungraceful disconnect never leaves a stuck "typing..." indicator.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from messaging.errors import ValidationFailed
from messaging.store import StoreGateway
from messaging.store.schemas import ConversationKind

from .channel import EventChannel
from .connections import Connection
from .events import TYPING_START, TYPING_STOP, TypingInput
from .membership import RoomMembershipResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypingScope:
    """Where a typing indicator is shown."""
    key: str
    conversation_id: Optional[str] = None
    room_id: Optional[str] = None
    recipient_id: Optional[str] = None


class TypingRelay:
    """Relays typing start/stop to the other participants' connections."""

    def __init__(
        self,
        channel: EventChannel,
        membership: RoomMembershipResolver,
        store: StoreGateway,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._channel = channel
        self._membership = membership
        self._store = store
        self._timeout = timeout_seconds
        # (user_id, scope key) -> (scope, expiry task)
        self._active: Dict[Tuple[str, str], Tuple[TypingScope, asyncio.Task]] = {}

    async def start_typing(self, connection: Connection, target: TypingInput) -> None:
        scope = await self._resolve(connection.user_id, target)
        await self._broadcast(connection.user_id, scope, TYPING_START)
        self._arm(connection.user_id, scope)

    async def stop_typing(self, connection: Connection, target: TypingInput) -> None:
        scope = await self._resolve(connection.user_id, target)
        self._disarm(connection.user_id, scope.key)
        await self._broadcast(connection.user_id, scope, TYPING_STOP)

    async def clear_user(self, user_id: str) -> None:
        """Stop every indicator *user_id* still has running (e.g. went offline)."""
        for (typist, key), (scope, _) in list(self._active.items()):
            if typist != user_id:
                continue
            self._disarm(user_id, key)
            await self._broadcast(user_id, scope, TYPING_STOP)

    def is_typing(self, user_id: str, key: str) -> bool:
        return (user_id, key) in self._active

    async def shutdown(self) -> None:
        tasks = [task for _, task in self._active.values()]
        self._active.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    async def _resolve(self, user_id: str, target: TypingInput) -> TypingScope:
        if target.recipientId:
            if target.recipientId == user_id:
                raise ValidationFailed("Cannot send typing indicator to yourself")
            conversation = await self._store.find_direct(user_id, target.recipientId)
            if conversation is None:
                return TypingScope(
                    key=f"user:{target.recipientId}", recipient_id=target.recipientId
                )
            return TypingScope(
                key=conversation.id,
                conversation_id=conversation.id,
                recipient_id=target.recipientId,
            )

        conversation_id = target.roomId or target.conversationId
        conversation = await self._membership.require_member(conversation_id, user_id)
        return TypingScope(
            key=conversation.id,
            conversation_id=conversation.id,
            room_id=conversation.id if conversation.kind == ConversationKind.GROUP else None,
        )

    async def _broadcast(self, user_id: str, scope: TypingScope, event: str) -> None:
        payload = {"userId": user_id, "conversationId": scope.conversation_id}
        if scope.room_id:
            payload["roomId"] = scope.room_id
        if scope.conversation_id:
            await self._channel.emit_to_room(
                scope.conversation_id, event, payload, exclude_user=user_id
            )
        else:
            await self._channel.emit_to_user(scope.recipient_id, event, payload)

    def _arm(self, user_id: str, scope: TypingScope) -> None:
        self._disarm(user_id, scope.key)
        task = asyncio.create_task(self._expire(user_id, scope))
        self._active[(user_id, scope.key)] = (scope, task)

    def _disarm(self, user_id: str, key: str) -> None:
        entry = self._active.pop((user_id, key), None)
        if entry is not None and not entry[1].done():
            entry[1].cancel()

    async def _expire(self, user_id: str, scope: TypingScope) -> None:
        await asyncio.sleep(self._timeout)
        entry = self._active.get((user_id, scope.key))
        if entry is None or entry[1] is not asyncio.current_task():
            return
        del self._active[(user_id, scope.key)]
        logger.debug("[Typing] %s typing in %s expired", user_id, scope.key)
        await self._broadcast(user_id, scope, TYPING_STOP)
