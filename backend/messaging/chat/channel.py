"""Event channel: the narrow emit interface handed to every component.

Components never touch sockets directly. They emit named events to a
connection, a user (all of their devices), a set of users, or a room, and the
channel fans the frame out concurrently.

Wire format: each frame is a JSON object ``{"type": <event>, **payload}``.

Performance Notes:
    - Fan-out uses asyncio.gather() so a large room costs one round of
      concurrent sends rather than N sequential ones.
    - A failed send is logged and reported as False; the socket's own receive
      loop notices the disconnect and deregisters it, so the channel never
      mutates presence state.
    - Connections that are still replaying their backlog (``ready`` is False)
      do not receive fan-out directly. The frame is parked on the connection
      and it does not count as reached, so a message stays ``sent`` for that
      device until the replay releases it.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .connections import Connection, PresenceRegistry

logger = logging.getLogger(__name__)


def frame(event: str, payload: Optional[dict] = None) -> dict:
    """Build a wire frame for *event*."""
    return {"type": event, **(payload or {})}


class EventChannel:
    """Routes events to connections registered in a :class:`PresenceRegistry`."""

    def __init__(self, registry: PresenceRegistry) -> None:
        self._registry = registry

    def connections_for(self, user_id: str) -> List[Connection]:
        return self._registry.for_user(user_id)

    async def emit_to_connection(
        self, connection: Connection, event: str, payload: Optional[dict] = None
    ) -> bool:
        return await self._safe_send(connection, frame(event, payload))

    async def emit_to_user(
        self,
        user_id: str,
        event: str,
        payload: Optional[dict] = None,
        exclude: Optional[Connection] = None,
    ) -> int:
        """Send to every connection of *user_id*. Returns the number reached."""
        reached = await self.emit_to_users([user_id], event, payload, exclude=exclude)
        return reached.get(user_id, 0)

    async def emit_to_users(
        self,
        user_ids: Iterable[str],
        event: str,
        payload: Optional[dict] = None,
        exclude: Optional[Connection] = None,
    ) -> Dict[str, int]:
        """Send to every connection of every user concurrently.

        Returns:
            user_id -> number of connections that accepted the frame. Users
            with no open connection are absent.
        """
        targets: List[Connection] = []
        for user_id in dict.fromkeys(user_ids):
            targets.extend(
                c for c in self._registry.for_user(user_id) if c is not exclude
            )
        return await self._fan_out(targets, frame(event, payload))

    async def emit_to_room(
        self,
        room_id: str,
        event: str,
        payload: Optional[dict] = None,
        exclude_user: Optional[str] = None,
    ) -> Dict[str, int]:
        """Send to every connection that joined *room_id*."""
        targets = [
            c for c in self._registry.in_room(room_id) if c.user_id != exclude_user
        ]
        return await self._fan_out(targets, frame(event, payload))

    async def _fan_out(self, targets: List[Connection], message: dict) -> Dict[str, int]:
        live = []
        for conn in targets:
            if conn.ready:
                live.append(conn)
            else:
                conn.hold(message)
        targets = live
        if not targets:
            return {}
        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in targets],
            return_exceptions=True,
        )
        reached: Dict[str, int] = {}
        for conn, ok in zip(targets, results):
            if ok is True:
                reached[conn.user_id] = reached.get(conn.user_id, 0) + 1
        return reached

    async def _safe_send(self, connection: Connection, message: dict) -> bool:
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(
                "[Channel] Failed to send %s to connection %s: %s",
                message.get("type"), connection.handle, e,
            )
            return False
