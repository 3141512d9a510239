"""Async facade over :class:`MessageStore`.

Each call is executed on the loop's default executor so a slow DuckDB write
suspends only the event that issued it. Calls are bounded by
``timeout_seconds``; on expiry :class:`StoreTimeout` is raised. The worker
thread may still finish the write afterwards, which is why clients retry
sends with the same ``clientMessageId``.
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from messaging.errors import StoreTimeout

from .schemas import Conversation, MemberRole, Message, MessageType, RecipientTransition
from .service import MessageStore

logger = logging.getLogger(__name__)


class StoreGateway:
    """Awaitable, time-bounded access to the message store."""

    def __init__(self, store: MessageStore, timeout_seconds: float = 5.0) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds

    async def _run(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        call = functools.partial(fn, *args, **kwargs)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "[Store] %s timed out after %ss", fn.__name__, self.timeout_seconds
            )
            raise StoreTimeout("Message store unavailable, please retry") from exc

    # Conversations ---------------------------------------------------------

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await self._run(self.store.get_conversation, conversation_id)

    async def get_or_create_direct(self, user_a: str, user_b: str) -> Tuple[Conversation, bool]:
        return await self._run(self.store.get_or_create_direct, user_a, user_b)

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        return await self._run(self.store.find_direct, user_a, user_b)

    async def create_group(
        self,
        created_by: str,
        name: str,
        member_ids: Iterable[str],
        description: Optional[str] = None,
        max_members: int = 50,
    ) -> Conversation:
        return await self._run(
            self.store.create_group, created_by, name, list(member_ids),
            description=description, max_members=max_members,
        )

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        return await self._run(self.store.list_conversations, user_id)

    async def conversation_ids_for(self, user_id: str) -> Set[str]:
        return await self._run(self.store.conversation_ids_for, user_id)

    async def peers_of(self, user_id: str) -> Set[str]:
        return await self._run(self.store.peers_of, user_id)

    async def add_member(
        self,
        conversation_id: str,
        user_id: str,
        role: MemberRole = MemberRole.MEMBER,
        max_members: int = 50,
    ) -> Conversation:
        return await self._run(
            self.store.add_member, conversation_id, user_id, role, max_members=max_members
        )

    async def remove_member(self, conversation_id: str, user_id: str) -> Conversation:
        return await self._run(self.store.remove_member, conversation_id, user_id)

    # Messages --------------------------------------------------------------

    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        recipients: Iterable[str],
        message_type: MessageType = MessageType.TEXT,
        mentions: Optional[List[str]] = None,
        client_message_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> Message:
        return await self._run(
            self.store.insert_message,
            conversation_id,
            sender_id,
            content,
            list(recipients),
            message_type=message_type,
            mentions=mentions,
            client_message_id=client_message_id,
            room_id=room_id,
        )

    async def find_by_client_id(
        self, conversation_id: str, sender_id: str, client_message_id: str
    ) -> Optional[Message]:
        return await self._run(
            self.store.find_by_client_id, conversation_id, sender_id, client_message_id
        )

    async def get_messages(self, message_ids: Sequence[str]) -> List[Message]:
        return await self._run(self.store.get_messages, list(message_ids))

    async def list_messages(
        self, conversation_id: str, before_seq: Optional[int] = None, limit: int = 50
    ) -> List[Message]:
        return await self._run(self.store.list_messages, conversation_id, before_seq, limit)

    async def undelivered_for(self, user_id: str, since: Optional[float] = None) -> List[Message]:
        return await self._run(self.store.undelivered_for, user_id, since)

    async def unread_count(self, user_id: str, conversation_id: Optional[str] = None) -> int:
        return await self._run(self.store.unread_count, user_id, conversation_id)

    # Delivery state --------------------------------------------------------

    async def mark_delivered(
        self, message_id: str, user_id: str, at: Optional[float] = None
    ) -> Optional[RecipientTransition]:
        return await self._run(self.store.mark_delivered, message_id, user_id, at)

    async def mark_read(
        self, message_id: str, user_id: str, at: Optional[float] = None
    ) -> Optional[RecipientTransition]:
        return await self._run(self.store.mark_read, message_id, user_id, at)

    # Presence --------------------------------------------------------------

    async def set_last_seen(self, user_id: str, at: float) -> None:
        await self._run(self.store.set_last_seen, user_id, at)

    async def get_last_seen(self, user_ids: Iterable[str]) -> Dict[str, float]:
        return await self._run(self.store.get_last_seen, list(user_ids))
