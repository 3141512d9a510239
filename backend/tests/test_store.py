"""Unit tests for the DuckDB message store and its async gateway."""
import time

import pytest

from messaging.errors import ConversationNotFound, StoreTimeout, ValidationFailed
from messaging.store import MessageStore, StoreGateway
from messaging.store.schemas import ConversationKind, DeliveryState, MemberRole


class TestConversations:

    def test_direct_conversation_is_unique_per_pair(self, store):
        first, created = store.get_or_create_direct("alice", "bob")
        again, created_again = store.get_or_create_direct("bob", "alice")

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert first.kind == ConversationKind.DIRECT
        assert sorted(first.member_ids) == ["alice", "bob"]

    def test_find_direct(self, store):
        assert store.find_direct("alice", "bob") is None
        conversation, _ = store.get_or_create_direct("alice", "bob")
        assert store.find_direct("bob", "alice").id == conversation.id

    def test_group_creator_is_admin(self, store):
        room = store.create_group("alice", "Design crit", ["bob", "carol", "bob"])

        assert room.kind == ConversationKind.GROUP
        assert room.name == "Design crit"
        assert room.role_of("alice") == MemberRole.ADMIN
        assert room.role_of("bob") == MemberRole.MEMBER
        assert len(room.members) == 3

    def test_group_member_cap(self, store):
        with pytest.raises(ValidationFailed, match="Maximum 3 members"):
            store.create_group("alice", "Too many", ["b", "c", "d"], max_members=3)

    def test_add_and_remove_member(self, store):
        room = store.create_group("alice", "Team", ["bob"])

        room = store.add_member(room.id, "carol")
        assert room.is_member("carol")

        room = store.remove_member(room.id, "bob")
        assert not room.is_member("bob")
        assert store.conversation_ids_for("bob") == set()

    def test_add_member_respects_cap(self, store):
        room = store.create_group("alice", "Pair", ["bob"], max_members=2)
        with pytest.raises(ValidationFailed):
            store.add_member(room.id, "carol", max_members=2)

    def test_add_member_to_unknown_room(self, store):
        with pytest.raises(ConversationNotFound):
            store.add_member("missing", "carol")

    def test_cannot_add_member_to_direct_conversation(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        with pytest.raises(ValidationFailed):
            store.add_member(conversation.id, "carol")

    def test_peers_and_conversation_ids(self, store):
        direct, _ = store.get_or_create_direct("alice", "bob")
        room = store.create_group("carol", "Room", ["alice"])

        assert store.conversation_ids_for("alice") == {direct.id, room.id}
        assert store.peers_of("alice") == {"bob", "carol"}
        assert store.peers_of("dave") == set()

    def test_list_conversations_most_recent_first(self, store):
        older, _ = store.get_or_create_direct("alice", "bob")
        newer, _ = store.get_or_create_direct("alice", "carol")
        store.insert_message(older.id, "bob", "ping", ["alice"])

        ids = [c.id for c in store.list_conversations("alice")]
        assert ids == [older.id, newer.id]


class TestMessages:

    def test_insert_assigns_increasing_seq_and_sent_state(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")

        first = store.insert_message(conversation.id, "alice", "one", ["bob", "alice"])
        second = store.insert_message(conversation.id, "alice", "two", ["bob"])

        assert second.seq > first.seq
        assert second.createdAt > first.createdAt
        assert first.delivery == {"bob": DeliveryState.SENT}
        assert store.get_conversation(conversation.id).lastMessageId == second.id

    def test_group_messages_carry_room_id(self, store):
        room = store.create_group("alice", "Room", ["bob"])
        message = store.insert_message(room.id, "alice", "hi", ["bob"], room_id=room.id)

        assert store.get_message(message.id).roomId == room.id

    def test_find_by_client_id(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        message = store.insert_message(
            conversation.id, "alice", "hi", ["bob"], client_message_id="c-1"
        )

        assert store.find_by_client_id(conversation.id, "alice", "c-1").id == message.id
        assert store.find_by_client_id(conversation.id, "bob", "c-1") is None

    def test_client_id_is_scoped_to_conversation(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        room = store.create_group("alice", "Room", ["carol"])
        store.insert_message(conversation.id, "alice", "hi", ["bob"], client_message_id="c-1")

        assert store.find_by_client_id(room.id, "alice", "c-1") is None

    def test_list_messages_pages_backwards(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        sent = [
            store.insert_message(conversation.id, "alice", f"m{i}", ["bob"]) for i in range(5)
        ]

        latest = store.list_messages(conversation.id, limit=2)
        assert [m.content for m in latest] == ["m3", "m4"]

        older = store.list_messages(conversation.id, before_seq=latest[0].seq, limit=2)
        assert [m.content for m in older] == ["m1", "m2"]
        assert older[-1].seq < sent[3].seq

    def test_undelivered_for_in_seq_order(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        m1 = store.insert_message(conversation.id, "alice", "1", ["bob"])
        m2 = store.insert_message(conversation.id, "alice", "2", ["bob"])
        m3 = store.insert_message(conversation.id, "alice", "3", ["bob"])
        store.mark_delivered(m2.id, "bob")

        assert [m.id for m in store.undelivered_for("bob")] == [m1.id, m3.id]
        assert [m.id for m in store.undelivered_for("bob", since=m1.createdAt)] == [m3.id]
        assert store.undelivered_for("alice") == []


class TestDeliveryState:

    def test_delivered_transition_happens_once(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        message = store.insert_message(conversation.id, "alice", "hi", ["bob"])

        first = store.mark_delivered(message.id, "bob", at=100.0)
        second = store.mark_delivered(message.id, "bob", at=200.0)

        assert first.state == DeliveryState.DELIVERED
        assert first.deliveredAt == 100.0
        assert first.senderId == "alice"
        assert second is None

    def test_read_without_delivery_fills_delivered(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        message = store.insert_message(conversation.id, "alice", "hi", ["bob"])

        transition = store.mark_read(message.id, "bob", at=50.0)

        assert transition.state == DeliveryState.READ
        assert transition.coercedDelivery is True
        assert transition.deliveredAt == 50.0
        assert transition.readAt == 50.0

    def test_state_never_regresses(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        message = store.insert_message(conversation.id, "alice", "hi", ["bob"])
        store.mark_delivered(message.id, "bob", at=10.0)
        read = store.mark_read(message.id, "bob", at=20.0)

        assert read.coercedDelivery is False
        assert store.mark_delivered(message.id, "bob") is None
        assert store.mark_read(message.id, "bob") is None
        state = store.recipient_state(message.id, "bob")
        assert state.state == DeliveryState.READ
        assert (state.deliveredAt, state.readAt) == (10.0, 20.0)

    def test_sender_has_no_recipient_row(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        message = store.insert_message(conversation.id, "alice", "hi", ["bob"])
        assert store.mark_read(message.id, "alice") is None

    def test_unread_count(self, store):
        conversation, _ = store.get_or_create_direct("alice", "bob")
        room = store.create_group("carol", "Room", ["bob"])
        m1 = store.insert_message(conversation.id, "alice", "1", ["bob"])
        store.insert_message(conversation.id, "alice", "2", ["bob"])
        store.insert_message(room.id, "carol", "3", ["bob"], room_id=room.id)
        store.mark_read(m1.id, "bob")

        assert store.unread_count("bob") == 2
        assert store.unread_count("bob", conversation.id) == 1
        assert store.unread_count("alice") == 0


class TestPresence:

    def test_last_seen_upsert(self, store):
        store.set_last_seen("alice", 10.0)
        store.set_last_seen("alice", 20.0)
        assert store.get_last_seen(["alice", "bob"]) == {"alice": 20.0}


def test_file_backed_store_persists(tmp_path):
    db_path = str(tmp_path / "messages.duckdb")
    store = MessageStore(db_path)
    conversation, _ = store.get_or_create_direct("alice", "bob")
    store.insert_message(conversation.id, "alice", "kept", ["bob"])
    store.close()

    reopened = MessageStore(db_path)
    try:
        assert [m.content for m in reopened.undelivered_for("bob")] == ["kept"]
    finally:
        reopened.close()


class TestGateway:

    @pytest.mark.asyncio
    async def test_round_trip(self, gateway):
        conversation, created = await gateway.get_or_create_direct("alice", "bob")
        message = await gateway.insert_message(conversation.id, "alice", "hi", ["bob"])

        assert created is True
        assert (await gateway.get_messages([message.id]))[0].content == "hi"

    @pytest.mark.asyncio
    async def test_slow_store_raises_retryable_timeout(self, store):
        gateway = StoreGateway(store, timeout_seconds=0.05)

        def slow_lookup(user_id):
            time.sleep(0.3)
            return set()

        store.conversation_ids_for = slow_lookup
        with pytest.raises(StoreTimeout) as info:
            await gateway.conversation_ids_for("alice")
        assert info.value.retryable is True
        assert info.value.code == "timeout"
