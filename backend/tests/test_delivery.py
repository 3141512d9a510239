"""Tests for delivered/read transitions and their confirmations."""
import pytest

from messaging.store.schemas import DeliveryState

from conftest import connect


async def _direct_message(hub, store, sender="alice", recipient="bob", content="hi"):
    conversation, _ = store.get_or_create_direct(sender, recipient)
    message = store.insert_message(conversation.id, sender, content, [recipient])
    return conversation, message


class TestMarkDelivered:

    @pytest.mark.asyncio
    async def test_confirms_to_every_sender_device_once(self, hub, store):
        _, message = await _direct_message(hub, store)
        phone = await connect(hub, "alice")
        laptop = await connect(hub, "alice")
        phone.socket.clear()
        laptop.socket.clear()

        assert await hub.delivery.mark_delivered(message, "bob", at=5.0) is not None
        assert await hub.delivery.mark_delivered(message, "bob", at=6.0) is None

        for conn in (phone, laptop):
            assert conn.socket.sent == [{
                "type": "message:delivered",
                "messageId": message.id,
                "conversationId": message.conversationId,
                "recipientId": "bob",
                "at": 5.0,
            }]


class TestMarkRead:

    @pytest.mark.asyncio
    async def test_read_before_delivered_emits_both_in_order(self, hub, store):
        conversation, message = await _direct_message(hub, store)
        alice = await connect(hub, "alice")
        alice.socket.clear()

        transitions = await hub.delivery.mark_read("bob", conversation, [message.id], at=9.0)

        assert [t.state for t in transitions] == [DeliveryState.READ]
        assert alice.socket.types() == ["message:delivered", "message:read"]
        receipt = alice.socket.sent[1]
        assert receipt["messageIds"] == [message.id]
        assert receipt["readerId"] == "bob"
        assert receipt["conversationId"] == conversation.id
        assert "roomId" not in receipt

    @pytest.mark.asyncio
    async def test_read_twice_is_a_no_op(self, hub, store):
        conversation, message = await _direct_message(hub, store)
        alice = await connect(hub, "alice")
        await hub.delivery.mark_read("bob", conversation, [message.id])
        alice.socket.clear()

        assert await hub.delivery.mark_read("bob", conversation, [message.id]) == []
        assert alice.socket.sent == []

    @pytest.mark.asyncio
    async def test_history_is_monotonic(self, hub, store):
        conversation, message = await _direct_message(hub, store)
        alice = await connect(hub, "alice")
        alice.socket.clear()

        await hub.delivery.mark_delivered(message, "bob")
        await hub.delivery.mark_read("bob", conversation, [message.id])
        await hub.delivery.mark_delivered(message, "bob")

        assert alice.socket.types() == ["message:delivered", "message:read"]
        assert store.recipient_state(message.id, "bob").state == DeliveryState.READ

    @pytest.mark.asyncio
    async def test_ignores_foreign_and_own_messages(self, hub, store):
        conversation, message = await _direct_message(hub, store)
        other, foreign = await _direct_message(hub, store, sender="carol", recipient="bob")
        carol = await connect(hub, "carol")
        carol.socket.clear()

        # Foreign id in the wrong conversation; own message from the sender side.
        assert await hub.delivery.mark_read("bob", conversation, [foreign.id, "missing"]) == []
        assert await hub.delivery.mark_read("alice", conversation, [message.id]) == []
        assert carol.socket.sent == []
        assert store.recipient_state(foreign.id, "bob").state == DeliveryState.SENT

    @pytest.mark.asyncio
    async def test_room_receipts_are_grouped_per_sender(self, hub, store):
        room = store.create_group("alice", "Room", ["bob", "carol"])
        from_alice = store.insert_message(room.id, "alice", "a1", ["bob", "carol"], room_id=room.id)
        from_bob = store.insert_message(room.id, "bob", "b1", ["alice", "carol"], room_id=room.id)
        from_alice_2 = store.insert_message(room.id, "alice", "a2", ["bob", "carol"], room_id=room.id)
        alice = await connect(hub, "alice")
        bob = await connect(hub, "bob")
        alice.socket.clear()
        bob.socket.clear()

        await hub.delivery.mark_read(
            "carol", room, [from_alice.id, from_bob.id, from_alice_2.id], at=3.0
        )

        alice_read = alice.socket.of_type("message:read")
        assert len(alice_read) == 1
        assert alice_read[0]["messageIds"] == [from_alice.id, from_alice_2.id]
        assert alice_read[0]["roomId"] == room.id
        assert [r["messageIds"] for r in bob.socket.of_type("message:read")] == [[from_bob.id]]
