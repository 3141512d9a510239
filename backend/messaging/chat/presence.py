"""Presence tracking: who is online, on how many devices, and since when.

A user is online iff they own at least one registered connection. Online and
offline transitions are broadcast to the user's peers (everyone who shares a
conversation with them).

Thread Safety:
    Designed for a single asyncio event loop. Transitions for the same user
    are serialized by a per-user asyncio.Lock so a rapid disconnect/reconnect
    can never deliver ``user:online`` and ``user:offline`` out of order.
"""
import asyncio
import logging
import time
import weakref
from typing import Callable, Iterable, List, Optional, Set

from messaging.errors import MessagingError
from messaging.store import StoreGateway

from .channel import EventChannel
from .connections import Connection, PresenceRegistry
from .membership import RoomMembershipResolver

logger = logging.getLogger(__name__)

USER_ONLINE = "user:online"
USER_OFFLINE = "user:offline"


class PresenceTracker:
    """Registers connections and emits online/offline transitions.

    Args:
        registry: The owned user -> connections structure.
        channel: Event channel used for presence broadcasts.
        membership: Resolves rooms to join and peers to notify.
        store: Gateway used to persist and read last-seen timestamps.
        clock: Returns the current unix time; injectable for tests.
    """

    def __init__(
        self,
        registry: PresenceRegistry,
        channel: EventChannel,
        membership: RoomMembershipResolver,
        store: StoreGateway,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._channel = channel
        self._membership = membership
        self._store = store
        self._clock = clock
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        # Users whose current online period was announced to their peers.
        self._announced: Set[str] = set()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def register(self, user_id: str, connection: Connection) -> bool:
        """Add *connection* to the user's set and join their rooms on it.

        The connection stays registered even if the room lookup or the
        ``online`` broadcast fails; :meth:`refresh` retries both later.

        Returns:
            True if this was the user's first connection.

        Raises:
            MessagingError: The store failed while joining rooms or
                resolving peers.
        """
        async with self._lock_for(user_id):
            first = self._registry.add(connection)
            logger.info(
                "[Presence] %s registered connection %s (%d open)",
                user_id, connection.handle, len(self._registry.for_user(user_id)),
            )
            await self._join_and_announce(user_id, connection)
            return first

    async def refresh(self, connection: Connection) -> None:
        """Re-join rooms and send a missing ``online`` for a live connection."""
        user_id = connection.user_id
        async with self._lock_for(user_id):
            if self._registry.get(connection.handle) is connection:
                await self._join_and_announce(user_id, connection)

    async def _join_and_announce(self, user_id: str, connection: Connection) -> None:
        connection.rooms |= await self._membership.rooms_for(user_id)
        if user_id in self._announced:
            return
        peers = await self._membership.peers_of(user_id)
        await self._channel.emit_to_users(peers, USER_ONLINE, {"userId": user_id})
        self._announced.add(user_id)

    async def deregister(self, user_id: str, handle: str) -> Optional[float]:
        """Remove a connection.

        ``user:offline`` is only broadcast if the matching ``user:online``
        went out.

        Returns:
            The last-seen timestamp if the user went offline, else None.
        """
        async with self._lock_for(user_id):
            if not self._registry.remove(user_id, handle):
                logger.info("[Presence] %s closed connection %s", user_id, handle)
                return None

            last_seen = self._clock()
            self._registry.last_seen[user_id] = last_seen
            announced = user_id in self._announced
            self._announced.discard(user_id)
            logger.info("[Presence] %s is offline", user_id)
            try:
                await self._store.set_last_seen(user_id, last_seen)
                peers = await self._membership.peers_of(user_id) if announced else set()
            except MessagingError as exc:
                # Presence is in-memory; a store hiccup only loses the broadcast.
                logger.warning("[Presence] Offline broadcast for %s skipped: %s", user_id, exc)
                return last_seen
            await self._channel.emit_to_users(
                peers, USER_OFFLINE, {"userId": user_id, "lastSeen": last_seen}
            )
            return last_seen

    async def query_online_status(self, user_ids: Iterable[str]) -> List[dict]:
        """Online flag and last-seen timestamp for each requested user."""
        user_ids = list(dict.fromkeys(user_ids))
        missing = [
            u for u in user_ids
            if not self._registry.is_online(u) and u not in self._registry.last_seen
        ]
        stored = await self._store.get_last_seen(missing) if missing else {}
        statuses = []
        for user_id in user_ids:
            online = self._registry.is_online(user_id)
            statuses.append({
                "userId": user_id,
                "isOnline": online,
                "lastSeen": None if online else self._registry.last_seen.get(
                    user_id, stored.get(user_id)
                ),
            })
        return statuses

    async def last_seen(self, user_id: str) -> Optional[float]:
        if user_id in self._registry.last_seen:
            return self._registry.last_seen[user_id]
        return (await self._store.get_last_seen([user_id])).get(user_id)

    def is_online(self, user_id: str) -> bool:
        return self._registry.is_online(user_id)

    def connections_for(self, user_id: str) -> List[Connection]:
        return self._registry.for_user(user_id)

    def online_users(self) -> set:
        return self._registry.online_users()
