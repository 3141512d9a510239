"""Tests for presence tracking and online/offline broadcasts."""
import gc
from unittest.mock import AsyncMock, patch

import pytest

from messaging.chat.channel import EventChannel
from messaging.chat.connections import PresenceRegistry
from messaging.chat.membership import RoomMembershipResolver
from messaging.chat.presence import USER_OFFLINE, USER_ONLINE, PresenceTracker
from messaging.errors import StoreTimeout

from conftest import open_connection


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return PresenceRegistry()


@pytest.fixture
def presence(registry, gateway, clock):
    channel = EventChannel(registry)
    return PresenceTracker(
        registry, channel, RoomMembershipResolver(gateway), gateway, clock=clock
    )


class TestPresenceRegistry:

    def test_online_iff_connection_set_non_empty(self, registry):
        phone = open_connection("alice")
        laptop = open_connection("alice")

        assert registry.add(phone) is True
        assert registry.add(laptop) is False
        assert registry.is_online("alice")

        assert registry.remove("alice", phone.handle) is False
        assert registry.is_online("alice")
        assert registry.remove("alice", laptop.handle) is True
        assert not registry.is_online("alice")
        assert len(registry) == 0

    def test_removing_unknown_handle_is_not_a_transition(self, registry):
        registry.add(open_connection("alice"))
        assert registry.remove("alice", "nope") is False
        assert registry.remove("bob", "nope") is False

    def test_in_room(self, registry):
        a = open_connection("alice")
        b = open_connection("bob")
        a.rooms.add("room-1")
        registry.add(a)
        registry.add(b)
        assert registry.in_room("room-1") == [a]


class TestPresenceTracker:

    @pytest.mark.asyncio
    async def test_online_broadcast_only_on_first_connection(self, presence, store):
        store.get_or_create_direct("alice", "bob")
        bob = open_connection("bob")
        await presence.register("bob", bob)

        phone = open_connection("alice")
        laptop = open_connection("alice")
        assert await presence.register("alice", phone) is True
        assert await presence.register("alice", laptop) is False

        assert bob.socket.of_type(USER_ONLINE) == [{"type": USER_ONLINE, "userId": "alice"}]

    @pytest.mark.asyncio
    async def test_register_joins_conversation_rooms(self, presence, store):
        direct, _ = store.get_or_create_direct("alice", "bob")
        room = store.create_group("carol", "Room", ["alice"])

        connection = open_connection("alice")
        await presence.register("alice", connection)

        assert connection.rooms == {direct.id, room.id}

    @pytest.mark.asyncio
    async def test_offline_broadcast_only_after_last_connection(self, presence, store, clock):
        store.get_or_create_direct("alice", "bob")
        bob = open_connection("bob")
        await presence.register("bob", bob)
        phone = open_connection("alice")
        laptop = open_connection("alice")
        await presence.register("alice", phone)
        await presence.register("alice", laptop)
        bob.socket.clear()

        assert await presence.deregister("alice", phone.handle) is None
        assert bob.socket.sent == []

        clock.now = 2000.0
        assert await presence.deregister("alice", laptop.handle) == 2000.0
        assert bob.socket.sent == [
            {"type": USER_OFFLINE, "userId": "alice", "lastSeen": 2000.0}
        ]
        assert store.get_last_seen(["alice"]) == {"alice": 2000.0}

    @pytest.mark.asyncio
    async def test_strangers_are_not_notified(self, presence):
        stranger = open_connection("mallory")
        await presence.register("mallory", stranger)
        await presence.register("alice", open_connection("alice"))
        assert stranger.socket.sent == []

    @pytest.mark.asyncio
    async def test_query_online_status(self, presence, store, clock):
        store.set_last_seen("carol", 500.0)
        alice = open_connection("alice")
        bob = open_connection("bob")
        await presence.register("alice", alice)
        await presence.register("bob", bob)
        clock.now = 1500.0
        await presence.deregister("bob", bob.handle)

        statuses = await presence.query_online_status(["alice", "bob", "carol", "dave"])

        assert statuses == [
            {"userId": "alice", "isOnline": True, "lastSeen": None},
            {"userId": "bob", "isOnline": False, "lastSeen": 1500.0},
            {"userId": "carol", "isOnline": False, "lastSeen": 500.0},
            {"userId": "dave", "isOnline": False, "lastSeen": None},
        ]
        assert await presence.last_seen("carol") == 500.0

    @pytest.mark.asyncio
    async def test_reconnect_goes_online_again(self, presence, store):
        store.get_or_create_direct("alice", "bob")
        bob = open_connection("bob")
        await presence.register("bob", bob)

        first = open_connection("alice")
        await presence.register("alice", first)
        await presence.deregister("alice", first.handle)
        await presence.register("alice", open_connection("alice"))

        assert bob.socket.types() == [USER_ONLINE, USER_OFFLINE, USER_ONLINE]
        assert presence.is_online("alice")

    @pytest.mark.asyncio
    async def test_unannounced_user_never_goes_offline(self, presence, store, gateway):
        store.get_or_create_direct("alice", "bob")
        bob = open_connection("bob")
        await presence.register("bob", bob)
        bob.socket.clear()

        alice = open_connection("alice")
        with patch.object(gateway, "peers_of", AsyncMock(side_effect=StoreTimeout("slow"))):
            with pytest.raises(StoreTimeout):
                await presence.register("alice", alice)
        assert presence.is_online("alice")

        await presence.deregister("alice", alice.handle)
        assert bob.socket.sent == []

    @pytest.mark.asyncio
    async def test_refresh_sends_missing_online(self, presence, store, gateway):
        direct, _ = store.get_or_create_direct("alice", "bob")
        bob = open_connection("bob")
        await presence.register("bob", bob)
        bob.socket.clear()

        alice = open_connection("alice")
        with patch.object(gateway, "conversation_ids_for", AsyncMock(side_effect=StoreTimeout("slow"))):
            with pytest.raises(StoreTimeout):
                await presence.register("alice", alice)
        assert alice.rooms == set()

        await presence.refresh(alice)
        await presence.refresh(alice)

        assert alice.rooms == {direct.id}
        assert bob.socket.sent == [{"type": USER_ONLINE, "userId": "alice"}]

    @pytest.mark.asyncio
    async def test_user_locks_are_released(self, presence):
        connection = open_connection("alice")
        await presence.register("alice", connection)
        await presence.deregister("alice", connection.handle)
        gc.collect()

        assert "alice" not in presence._user_locks
