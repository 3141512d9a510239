"""Messaging hub: wires the components together and routes socket events.

The hub owns one instance of every component for the process:

    PresenceRegistry  <- PresenceTracker
          |
    EventChannel  <- MessageDispatcher, DeliveryTracker,
                     MissedMessageSynchronizer, TypingRelay
          |
    StoreGateway  <- RoomMembershipResolver (authorization)

The WebSocket router only authenticates, forwards frames to
:meth:`MessagingHub.handle_event` and calls :meth:`disconnect`; the REST
router calls the conversation/room helpers at the bottom of this module.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from messaging.auth import TokenAuthenticator
from messaging.config import AppConfig, MessagingSettings
from messaging.errors import ConversationNotFound, MessagingError, ValidationFailed
from messaging.store import MessageStore, StoreGateway
from messaging.store.schemas import (
    Conversation,
    ConversationKind,
    DeliveryState,
    MemberRole,
    Message,
    MessageType,
)

from .channel import EventChannel
from .connections import Connection, PresenceRegistry
from .delivery import DeliveryTracker
from .dispatcher import MessageDispatcher
from .events import (
    CONNECT,
    CONVERSATION_UPDATE,
    ERROR,
    GET_ONLINE_STATUS,
    MESSAGE_READ,
    MESSAGE_SEND,
    ONLINE_STATUS,
    SYNC_COMPLETE,
    SYNC_MISSED,
    TYPING_START,
    TYPING_STOP,
    OnlineStatusInput,
    ReadInput,
    SendMessageInput,
    SyncInput,
    TypingInput,
    parse_payload,
)
from .membership import RoomMembershipResolver
from .presence import PresenceTracker
from .sync import MissedMessageSynchronizer
from .typing_relay import TypingRelay

logger = logging.getLogger(__name__)


class MessagingHub:
    """Process-wide messaging core.

    Args:
        store: Async store gateway.
        authenticator: Verifies handshake and REST bearer tokens.
        settings: Limits and timeouts.
        clock: Unix-time source handed to the presence tracker.
    """

    def __init__(
        self,
        store: StoreGateway,
        authenticator: TokenAuthenticator,
        settings: Optional[MessagingSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or MessagingSettings()
        self.store = store
        self.authenticator = authenticator

        self.registry = PresenceRegistry()
        self.channel = EventChannel(self.registry)
        self.membership = RoomMembershipResolver(store)
        self.presence = PresenceTracker(
            self.registry, self.channel, self.membership, store, clock=clock
        )
        self.delivery = DeliveryTracker(store, self.channel)
        self.dispatcher = MessageDispatcher(
            store,
            self.channel,
            self.membership,
            self.delivery,
            max_content_length=self.settings.max_content_length,
        )
        self.sync = MissedMessageSynchronizer(store, self.channel, self.delivery)
        self.typing = TypingRelay(
            self.channel,
            self.membership,
            store,
            timeout_seconds=self.settings.typing_timeout_seconds,
        )

        self._handlers: Dict[str, Callable[[Connection, dict], Any]] = {
            MESSAGE_SEND: self._on_send,
            MESSAGE_READ: self._on_read,
            TYPING_START: self._on_typing_start,
            TYPING_STOP: self._on_typing_stop,
            GET_ONLINE_STATUS: self._on_online_status,
            SYNC_MISSED: self._on_sync,
        }

    @classmethod
    def from_config(cls, config: AppConfig, store: Optional[MessageStore] = None) -> "MessagingHub":
        store = store or MessageStore(config.store.db_path)
        return cls(
            StoreGateway(store, timeout_seconds=config.messaging.store_timeout_seconds),
            TokenAuthenticator.from_config(config),
            settings=config.messaging,
        )

    async def shutdown(self) -> None:
        await self.typing.shutdown()
        self.store.store.close()
        logger.info("[Hub] Shut down with %d open connection(s)", len(self.registry))

    # -----------------------------------------------------------------------
    # Connection lifecycle
    # -----------------------------------------------------------------------

    async def connect(self, connection: Connection) -> int:
        """Register an authenticated connection and replay its backlog.

        Live fan-out to the connection is parked until the replay finishes.
        A store failure is reported to the connection as an ``error`` event
        for ``connect``; the connection stays open and can recover with
        ``user:sync_missed_messages``.

        Returns:
            Number of missed messages replayed.
        """
        connection.ready = False
        try:
            await self.presence.register(connection.user_id, connection)
            replayed = await self.sync.sync(connection)
        except MessagingError as exc:
            connection.take_held()
            connection.ready = True
            logger.warning(
                "[Hub] Connect for %s (%s) incomplete: %s",
                connection.user_id, connection.handle, exc.message,
            )
            await self._report(connection, exc, CONNECT)
            return 0
        await self.channel.emit_to_connection(
            connection, SYNC_COMPLETE, {"count": len(replayed)}
        )
        return len(replayed)

    async def disconnect(self, connection: Connection) -> None:
        went_offline = await self.presence.deregister(connection.user_id, connection.handle)
        if went_offline is not None:
            await self.typing.clear_user(connection.user_id)

    async def handle_event(self, connection: Connection, data: Any) -> None:
        """Route one inbound frame. Failures are reported, never raised."""
        if not isinstance(data, dict):
            await self._report(connection, ValidationFailed("Frames must be JSON objects"), None)
            return

        event = data.get("type")
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("[Hub] Unknown event %r from %s", event, connection.user_id)
            await self._report(connection, ValidationFailed(f"Unknown event type: {event}"), event)
            return

        client_message_id = data.get("clientMessageId")
        if not isinstance(client_message_id, str):
            client_message_id = None

        try:
            await handler(connection, data)
        except MessagingError as exc:
            logger.info(
                "[Hub] %s from %s rejected: %s (%s)",
                event, connection.user_id, exc.message, exc.code,
            )
            await self._report(connection, exc, event, client_message_id)
        except Exception:
            logger.exception("[Hub] Unhandled error processing %s from %s", event, connection.user_id)
            await self.channel.emit_to_connection(connection, ERROR, {
                "message": "Internal server error",
                "code": "internal",
                "event": event,
                "retryable": False,
            })

    async def _report(
        self,
        connection: Connection,
        exc: MessagingError,
        event: Optional[str],
        client_message_id: Optional[str] = None,
    ) -> None:
        payload = exc.to_event(event, client_message_id)
        payload.pop("type")
        await self.channel.emit_to_connection(connection, ERROR, payload)

    # -----------------------------------------------------------------------
    # Event handlers
    # -----------------------------------------------------------------------

    async def _on_send(self, connection: Connection, data: dict) -> None:
        await self.dispatcher.send(connection, parse_payload(SendMessageInput, data))

    async def _on_read(self, connection: Connection, data: dict) -> None:
        request = parse_payload(ReadInput, data)
        conversation = await self.membership.require_member(request.target_id, connection.user_id)
        await self.delivery.mark_read(connection.user_id, conversation, request.messageIds)

    async def _on_typing_start(self, connection: Connection, data: dict) -> None:
        await self.typing.start_typing(connection, parse_payload(TypingInput, data))

    async def _on_typing_stop(self, connection: Connection, data: dict) -> None:
        await self.typing.stop_typing(connection, parse_payload(TypingInput, data))

    async def _on_online_status(self, connection: Connection, data: dict) -> None:
        request = parse_payload(OnlineStatusInput, data)
        statuses = await self.presence.query_online_status(request.userIds)
        await self.channel.emit_to_connection(connection, ONLINE_STATUS, {"statuses": statuses})

    async def _on_sync(self, connection: Connection, data: dict) -> None:
        request = parse_payload(SyncInput, data)
        await self.presence.refresh(connection)
        replayed = await self.sync.sync(connection, since=request.since)
        await self.channel.emit_to_connection(
            connection, SYNC_COMPLETE, {"count": len(replayed)}
        )

    # -----------------------------------------------------------------------
    # Conversations and rooms (REST surface)
    # -----------------------------------------------------------------------

    async def list_conversations(self, user_id: str) -> List[dict]:
        """The user's conversations, most recent first, with unread counts."""
        conversations = await self.store.list_conversations(user_id)
        last_ids = [c.lastMessageId for c in conversations if c.lastMessageId]
        last_messages = {m.id: m for m in await self.store.get_messages(last_ids)}
        summaries = []
        for conversation in conversations:
            last = last_messages.get(conversation.lastMessageId)
            summaries.append({
                "conversation": conversation.model_dump(mode="json"),
                "lastMessage": last.model_dump(mode="json") if last else None,
                "unreadCount": await self.store.unread_count(user_id, conversation.id),
            })
        return summaries

    async def open_direct(self, user_id: str, participant_id: str) -> Conversation:
        if not participant_id or participant_id == user_id:
            raise ValidationFailed("Cannot start a conversation with yourself")
        conversation, created = await self.store.get_or_create_direct(user_id, participant_id)
        if created:
            self._join_online(conversation, conversation.member_ids)
        return conversation

    async def history(
        self,
        user_id: str,
        conversation_id: str,
        before_seq: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """A page of history, oldest first, ending just before *before_seq*.

        Fetching a page marks the caller's copies on it as read; senders get
        ``message:read`` exactly as for the socket event. The returned
        messages show delivery state as it was before the fetch.
        """
        conversation = await self.membership.require_member(conversation_id, user_id)
        limit = min(limit or self.settings.history_page_size, self.settings.max_history_page_size)
        page = await self.store.list_messages(conversation_id, before_seq, limit + 1)
        has_more = len(page) > limit
        messages: List[Message] = page[1:] if has_more else page
        unread = [
            m.id for m in messages
            if m.delivery.get(user_id) not in (None, DeliveryState.READ)
        ]
        if unread:
            await self.delivery.mark_read(user_id, conversation, unread)
        return {
            "messages": [m.model_dump(mode="json") for m in messages],
            "hasMore": has_more,
        }

    async def post_message(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        mentions: Optional[List[str]] = None,
        client_message_id: Optional[str] = None,
    ) -> Message:
        """Send a message over HTTP; fan-out and delivery match ``message:send``."""
        conversation = await self.membership.require_member(conversation_id, user_id)
        target: Dict[str, Any] = {}
        if conversation.kind == ConversationKind.GROUP:
            target["roomId"] = conversation.id
        else:
            others = [m for m in conversation.member_ids if m != user_id]
            if not others:
                raise ValidationFailed("Cannot send message to yourself")
            target["recipientId"] = others[0]
        request = parse_payload(SendMessageInput, {
            **target,
            "content": content,
            "messageType": message_type,
            "mentions": mentions or [],
            "clientMessageId": client_message_id,
        })
        return await self.dispatcher.send_as(user_id, request)

    async def list_rooms(self, user_id: str) -> List[Conversation]:
        """Group rooms the user belongs to, most recent first."""
        conversations = await self.store.list_conversations(user_id)
        return [c for c in conversations if c.kind == ConversationKind.GROUP]

    async def get_room(self, user_id: str, room_id: str) -> Conversation:
        room = await self.membership.require_member(room_id, user_id)
        if room.kind != ConversationKind.GROUP:
            raise ConversationNotFound(f"Room {room_id} not found")
        return room

    async def create_room(
        self,
        user_id: str,
        name: str,
        member_ids: List[str],
        description: Optional[str] = None,
    ) -> Conversation:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("Room name is required")
        if len(name) > self.settings.max_room_name_length:
            raise ValidationFailed(
                f"Room name cannot exceed {self.settings.max_room_name_length} characters"
            )
        if description and len(description) > self.settings.max_description_length:
            raise ValidationFailed(
                f"Description cannot exceed {self.settings.max_description_length} characters"
            )

        room = await self.store.create_group(
            user_id,
            name,
            [m for m in member_ids if m],
            description=description,
            max_members=self.settings.max_room_members,
        )
        logger.info("[Hub] %s created room %s with %d members", user_id, room.id, len(room.members))
        self._join_online(room, room.member_ids)
        await self._announce_membership(room)
        return room

    async def add_member(self, actor_id: str, room_id: str, user_id: str) -> Conversation:
        await self.membership.require_moderator(room_id, actor_id)
        room = await self.store.add_member(
            room_id, user_id, MemberRole.MEMBER, max_members=self.settings.max_room_members
        )
        self._join_online(room, [user_id])
        await self._announce_membership(room)
        return room

    async def remove_member(self, actor_id: str, room_id: str, user_id: str) -> Conversation:
        if actor_id == user_id:
            await self.membership.require_member(room_id, actor_id)
        else:
            await self.membership.require_moderator(room_id, actor_id)
        room = await self.store.remove_member(room_id, user_id)
        for connection in self.registry.for_user(user_id):
            connection.rooms.discard(room_id)
        await self._announce_membership(room, also_notify=[user_id])
        return room

    async def unread_count(self, user_id: str) -> int:
        return await self.store.unread_count(user_id)

    def _join_online(self, conversation: Conversation, user_ids: List[str]) -> None:
        for user_id in user_ids:
            for connection in self.registry.for_user(user_id):
                connection.rooms.add(conversation.id)

    async def _announce_membership(
        self, conversation: Conversation, also_notify: Optional[List[str]] = None
    ) -> None:
        await self.channel.emit_to_users(
            [*conversation.member_ids, *(also_notify or [])],
            CONVERSATION_UPDATE,
            {"conversation": conversation.model_dump(mode="json"), "lastMessage": None},
        )
