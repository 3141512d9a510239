"""Missed-message replay after reconnect."""
import asyncio
import logging
import weakref
from typing import Dict, List, Optional

from messaging.store import StoreGateway
from messaging.store.schemas import Message

from .channel import EventChannel
from .connections import Connection
from .delivery import DeliveryTracker
from .events import MESSAGE_RECEIVE

logger = logging.getLogger(__name__)


class MissedMessageSynchronizer:
    """Replays messages still in state ``sent`` for a user onto one connection.

    Replay and the following ``delivered`` transition happen under a per-user
    lock, so two overlapping syncs (connect-time and an explicit request)
    never replay the same message twice: the second pass finds it delivered.

    A freshly connected connection is not ``ready``: live fan-out parks its
    frames on the connection instead of sending them. Parked messages are
    merged with the stored backlog and replayed in seq order, and the
    connection switches to live delivery only once nothing is left parked.
    A send racing the reconnect therefore never overtakes older missed
    messages.
    """

    def __init__(
        self, store: StoreGateway, channel: EventChannel, delivery: DeliveryTracker
    ) -> None:
        self._store = store
        self._channel = channel
        self._delivery = delivery
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def sync(self, connection: Connection, since: Optional[float] = None) -> List[Message]:
        """Replay the user's undelivered backlog on *connection*, oldest first.

        Args:
            connection: Freshly registered (or requesting) connection.
            since: Only replay messages created after this unix timestamp.

        Returns:
            The messages that were replayed and transitioned to ``delivered``.
        """
        user_id = connection.user_id
        async with self._lock_for(user_id):
            try:
                backlog = await self._store.undelivered_for(user_id, since)
                replayed = await self._replay(connection, backlog)
            except BaseException:
                dropped = connection.take_held()
                connection.ready = True
                if dropped:
                    # Parked messages are still "sent"; a later sync replays them.
                    logger.warning(
                        "[Sync] Replay on %s failed; dropped %d parked frame(s)",
                        connection.handle, len(dropped),
                    )
                raise

        if replayed:
            logger.info("[Sync] Replayed %d missed message(s) to %s", len(replayed), user_id)
        return replayed

    async def _replay(self, connection: Connection, backlog: List[Message]) -> List[Message]:
        user_id = connection.user_id
        replayed: List[Message] = []
        seen = set()
        pending = backlog
        while True:
            batch: Dict[str, Message] = {m.id: m for m in pending if m.id not in seen}
            others: List[dict] = []
            for frame in connection.take_held():
                if frame.get("type") == MESSAGE_RECEIVE and frame.get("message"):
                    message = Message.model_validate(frame["message"])
                    if message.id not in seen:
                        batch.setdefault(message.id, message)
                else:
                    others.append(frame)
            pending = []

            for message in sorted(batch.values(), key=lambda m: m.seq):
                ok = await self._channel.emit_to_connection(
                    connection,
                    MESSAGE_RECEIVE,
                    {"message": message.model_dump(mode="json"), "replayed": True},
                )
                if not ok:
                    # Connection dropped mid-replay; the rest stays "sent".
                    logger.info(
                        "[Sync] Connection %s dropped after %d replayed",
                        connection.handle, len(replayed),
                    )
                    connection.take_held()
                    connection.ready = True
                    return replayed
                seen.add(message.id)
                if user_id in message.delivery:
                    await self._delivery.mark_delivered(message, user_id)
                replayed.append(message)

            for frame in others:
                payload = {k: v for k, v in frame.items() if k != "type"}
                await self._channel.emit_to_connection(connection, frame["type"], payload)

            # No await between the check and the switch.
            if not connection.held:
                connection.ready = True
                return replayed
