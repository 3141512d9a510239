"""Connection records and the in-memory presence registry.

The registry is the only process-wide mutable state of the messaging core.
It is a plain owned structure so it can be handed to the presence tracker and
the event channel explicitly (and swapped for a shared cache later).
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set


@dataclass(eq=False)
class Connection:
    """One live socket belonging to exactly one authenticated user.

    Attributes:
        user_id: Owning user identity (immutable for the connection's life).
        socket: Anything exposing ``async send_json(dict)``; a FastAPI
            WebSocket in production.
        handle: Unique connection handle.
        rooms: Conversation ids joined on this connection.
        connected_at: Unix timestamp of the handshake.
        ready: False while the missed-message replay is running. Fan-out
            frames for a connection that is not ready are parked in
            ``held`` and released by the replay in persisted order.
        held: Frames parked while not ready.
    """
    user_id: str
    socket: Any
    handle: str = field(default_factory=lambda: str(uuid.uuid4()))
    rooms: Set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    ready: bool = True
    held: List[dict] = field(default_factory=list)

    async def send_json(self, payload: dict) -> None:
        await self.socket.send_json(payload)

    def hold(self, payload: dict) -> None:
        self.held.append(payload)

    def take_held(self) -> List[dict]:
        frames, self.held = self.held, []
        return frames


class PresenceRegistry:
    """user_id -> connection handles, plus last-seen timestamps."""

    def __init__(self) -> None:
        # handle -> Connection
        self.connections: Dict[str, Connection] = {}
        # user_id -> set of handles
        self.by_user: Dict[str, Set[str]] = {}
        # user_id -> unix timestamp of the last disconnect
        self.last_seen: Dict[str, float] = {}

    def add(self, connection: Connection) -> bool:
        """Add a connection. Returns True if it is the user's first one."""
        handles = self.by_user.setdefault(connection.user_id, set())
        first = not handles
        handles.add(connection.handle)
        self.connections[connection.handle] = connection
        return first

    def remove(self, user_id: str, handle: str) -> bool:
        """Remove a connection. Returns True if the user has none left."""
        self.connections.pop(handle, None)
        handles = self.by_user.get(user_id)
        if handles is None:
            return False
        if handle not in handles:
            return False
        handles.discard(handle)
        if not handles:
            del self.by_user[user_id]
            return True
        return False

    def get(self, handle: str) -> Optional[Connection]:
        return self.connections.get(handle)

    def for_user(self, user_id: str) -> List[Connection]:
        return [
            self.connections[h]
            for h in self.by_user.get(user_id, ())
            if h in self.connections
        ]

    def in_room(self, room_id: str) -> List[Connection]:
        return [c for c in self.connections.values() if room_id in c.rooms]

    def is_online(self, user_id: str) -> bool:
        return bool(self.by_user.get(user_id))

    def online_users(self) -> Set[str]:
        return set(self.by_user)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self.connections.values()))

    def __len__(self) -> int:
        return len(self.connections)
