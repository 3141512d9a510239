"""DuckDB-backed storage for conversations, messages and delivery state.

This is the single source of truth for durable messaging state. All calls are
synchronous; :class:`messaging.store.gateway.StoreGateway` runs them off the
event loop with a timeout.

Database Schema:
    conversations: one row per direct conversation or group room.
        direct_key is the sorted member pair for direct conversations, so at
        most one direct conversation exists per pair.
    conversation_members: (conversation_id, user_id) with role and join time.
    messages: immutable message rows; seq comes from messages_seq and orders
        messages store-wide.
    message_recipients: (message_id, user_id) delivery state machine
        sent -> delivered -> read, with timestamps.
    user_presence: last-seen timestamp per user.

Thread Safety:
    A DuckDB connection must not be used from several threads at once. Every
    public method takes ``self._lock``; multi-statement writes run inside a
    transaction so concurrent membership changes never interleave.
"""
import json
import logging
import threading
import time
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import duckdb

from messaging.errors import ConversationNotFound, ValidationFailed

from .schemas import (
    Conversation,
    ConversationKind,
    ConversationMember,
    DeliveryState,
    MemberRole,
    Message,
    MessageType,
    RecipientTransition,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id              VARCHAR PRIMARY KEY,
        kind            VARCHAR NOT NULL,
        direct_key      VARCHAR UNIQUE,
        name            VARCHAR,
        description     VARCHAR,
        created_by      VARCHAR NOT NULL,
        created_at      DOUBLE NOT NULL,
        last_activity   DOUBLE NOT NULL,
        last_message_id VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_members (
        conversation_id VARCHAR NOT NULL,
        user_id         VARCHAR NOT NULL,
        role            VARCHAR NOT NULL DEFAULT 'member',
        joined_at       DOUBLE NOT NULL,
        PRIMARY KEY (conversation_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id                VARCHAR PRIMARY KEY,
        seq               BIGINT NOT NULL,
        conversation_id   VARCHAR NOT NULL,
        sender_id         VARCHAR NOT NULL,
        content           VARCHAR NOT NULL,
        message_type      VARCHAR NOT NULL DEFAULT 'text',
        mentions          VARCHAR NOT NULL DEFAULT '[]',
        client_message_id VARCHAR,
        created_at        DOUBLE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_recipients (
        message_id   VARCHAR NOT NULL,
        user_id      VARCHAR NOT NULL,
        state        VARCHAR NOT NULL DEFAULT 'sent',
        delivered_at DOUBLE,
        read_at      DOUBLE,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_presence (
        user_id   VARCHAR PRIMARY KEY,
        last_seen DOUBLE NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_members_user ON conversation_members(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_conv ON messages(conversation_id, seq)",
    "CREATE INDEX IF NOT EXISTS idx_messages_client "
    "ON messages(conversation_id, sender_id, client_message_id)",
    "CREATE INDEX IF NOT EXISTS idx_recipients_user ON message_recipients(user_id, state)",
]

_CONVERSATION_COLUMNS = (
    "id, kind, name, description, created_by, created_at, last_activity, last_message_id"
)
_MESSAGE_COLUMNS = (
    "id, seq, conversation_id, sender_id, content, message_type, mentions, "
    "client_message_id, created_at"
)


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent key for a direct conversation between two users."""
    first, second = sorted((user_a, user_b))
    return f"{first}\x1f{second}"


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


class MessageStore:
    """Conversation, message and delivery-state persistence.

    Args:
        db_path: DuckDB database file, or ``":memory:"``.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._last_created_at = 0.0
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", db_path)

    def _initialize_db(self) -> None:
        for statement in _SCHEMA:
            self._conn.execute(statement)

    @property
    def _conn(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise RuntimeError("MessageStore is closed")
        return self._connection

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    def _next_timestamp(self) -> float:
        # Strictly increasing so createdAt never ties within this process.
        now = max(time.time(), self._last_created_at + 1e-6)
        self._last_created_at = now
        return now

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def create_group(
        self,
        created_by: str,
        name: str,
        member_ids: Iterable[str],
        description: Optional[str] = None,
        max_members: int = 50,
    ) -> Conversation:
        """Create a group room. The creator becomes its admin."""
        unique_members = list(dict.fromkeys([created_by, *member_ids]))
        if len(unique_members) > max_members:
            raise ValidationFailed(f"Maximum {max_members} members allowed per room")

        conversation = Conversation(
            kind=ConversationKind.GROUP,
            name=name,
            description=description,
            createdBy=created_by,
        )
        with self._lock:
            self._conn.begin()
            try:
                self._insert_conversation(conversation, key=None)
                for user_id in unique_members:
                    role = MemberRole.ADMIN if user_id == created_by else MemberRole.MEMBER
                    self._insert_member(conversation.id, user_id, role, conversation.createdAt)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            return self._load_conversation(conversation.id)

    def get_or_create_direct(self, user_a: str, user_b: str) -> Tuple[Conversation, bool]:
        """Return the direct conversation between two users, creating it if needed.

        Returns:
            Tuple of (conversation, created).
        """
        key = direct_key(user_a, user_b)
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM conversations WHERE direct_key = ?", [key]
            ).fetchone()
            if row:
                return self._load_conversation(row[0]), False

            conversation = Conversation(kind=ConversationKind.DIRECT, createdBy=user_a)
            self._conn.begin()
            try:
                self._insert_conversation(conversation, key=key)
                self._insert_member(conversation.id, user_a, MemberRole.MEMBER, conversation.createdAt)
                self._insert_member(conversation.id, user_b, MemberRole.MEMBER, conversation.createdAt)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            logger.info("[Store] Created direct conversation %s", conversation.id)
            return self._load_conversation(conversation.id), True

    def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM conversations WHERE direct_key = ?",
                [direct_key(user_a, user_b)],
            ).fetchone()
            return self._load_conversation(row[0]) if row else None

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._load_conversation(conversation_id)

    def list_conversations(self, user_id: str) -> List[Conversation]:
        """All conversations *user_id* belongs to, most recently active first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.id FROM conversations c
                JOIN conversation_members m ON m.conversation_id = c.id
                WHERE m.user_id = ?
                ORDER BY c.last_activity DESC
                """,
                [user_id],
            ).fetchall()
            return [self._load_conversation(r[0]) for r in rows]

    def conversation_ids_for(self, user_id: str) -> Set[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT conversation_id FROM conversation_members WHERE user_id = ?",
                [user_id],
            ).fetchall()
        return {r[0] for r in rows}

    def peers_of(self, user_id: str) -> Set[str]:
        """Users who share at least one conversation with *user_id*."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT DISTINCT other.user_id
                FROM conversation_members mine
                JOIN conversation_members other
                  ON other.conversation_id = mine.conversation_id
                WHERE mine.user_id = ? AND other.user_id <> ?
                """,
                [user_id, user_id],
            ).fetchall()
        return {r[0] for r in rows}

    def add_member(
        self,
        conversation_id: str,
        user_id: str,
        role: MemberRole = MemberRole.MEMBER,
        max_members: int = 50,
    ) -> Conversation:
        """Add *user_id* to a group room. Adding an existing member is a no-op."""
        with self._lock:
            self._conn.begin()
            try:
                conversation = self._load_conversation(conversation_id)
                if conversation is None:
                    raise ConversationNotFound(f"Room {conversation_id} not found")
                if conversation.kind != ConversationKind.GROUP:
                    raise ValidationFailed("Members can only be added to group rooms")
                if not conversation.is_member(user_id):
                    if len(conversation.members) >= max_members:
                        raise ValidationFailed(f"Maximum {max_members} members allowed per room")
                    now = time.time()
                    self._insert_member(conversation_id, user_id, role, now)
                    self._touch(conversation_id, now)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            return self._load_conversation(conversation_id)

    def remove_member(self, conversation_id: str, user_id: str) -> Conversation:
        with self._lock:
            self._conn.begin()
            try:
                conversation = self._load_conversation(conversation_id)
                if conversation is None:
                    raise ConversationNotFound(f"Room {conversation_id} not found")
                if conversation.kind != ConversationKind.GROUP:
                    raise ValidationFailed("Members can only be removed from group rooms")
                self._conn.execute(
                    "DELETE FROM conversation_members WHERE conversation_id = ? AND user_id = ?",
                    [conversation_id, user_id],
                )
                self._touch(conversation_id, time.time())
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            return self._load_conversation(conversation_id)

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def insert_message(
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
        """Persist a message with every recipient in state ``sent``."""
        recipients = [r for r in dict.fromkeys(recipients) if r != sender_id]
        with self._lock:
            self._conn.begin()
            try:
                seq = self._conn.execute("SELECT nextval('messages_seq')").fetchone()[0]
                message = Message(
                    seq=seq,
                    conversationId=conversation_id,
                    roomId=room_id,
                    senderId=sender_id,
                    content=content,
                    messageType=message_type,
                    mentions=list(mentions or []),
                    clientMessageId=client_message_id,
                    createdAt=self._next_timestamp(),
                    delivery={r: DeliveryState.SENT for r in recipients},
                )
                self._conn.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        message.id, message.seq, conversation_id, sender_id, content,
                        message.messageType.value, json.dumps(message.mentions),
                        client_message_id, message.createdAt,
                    ],
                )
                for recipient_id in recipients:
                    self._conn.execute(
                        "INSERT INTO message_recipients (message_id, user_id, state) VALUES (?, ?, 'sent')",
                        [message.id, recipient_id],
                    )
                self._conn.execute(
                    "UPDATE conversations SET last_activity = ?, last_message_id = ? WHERE id = ?",
                    [message.createdAt, message.id, conversation_id],
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return message

    def find_by_client_id(
        self, conversation_id: str, sender_id: str, client_message_id: str
    ) -> Optional[Message]:
        """A message previously sent into *conversation_id* with this token."""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                "WHERE conversation_id = ? AND sender_id = ? AND client_message_id = ? "
                "ORDER BY seq LIMIT 1",
                [conversation_id, sender_id, client_message_id],
            ).fetchall()
            messages = self._hydrate(rows)
        return messages[0] if messages else None

    def get_message(self, message_id: str) -> Optional[Message]:
        messages = self.get_messages([message_id])
        return messages[0] if messages else None

    def get_messages(self, message_ids: Sequence[str]) -> List[Message]:
        """Fetch messages by id, ordered by seq. Unknown ids are skipped."""
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                f"WHERE id IN ({_placeholders(ids)}) ORDER BY seq",
                ids,
            ).fetchall()
            return self._hydrate(rows)

    def list_messages(
        self,
        conversation_id: str,
        before_seq: Optional[int] = None,
        limit: int = 50,
    ) -> List[Message]:
        """Page of history, oldest first, strictly before *before_seq* when given."""
        params: list = [conversation_id]
        where = "conversation_id = ?"
        if before_seq is not None:
            where += " AND seq < ?"
            params.append(before_seq)
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE {where} "
                "ORDER BY seq DESC LIMIT ?",
                params,
            ).fetchall()
            return list(reversed(self._hydrate(rows)))

    def undelivered_for(self, user_id: str, since: Optional[float] = None) -> List[Message]:
        """Messages addressed to *user_id* still in state ``sent``, in seq order."""
        params: list = [user_id]
        where = "r.user_id = ? AND r.state = 'sent'"
        if since is not None:
            where += " AND m.created_at > ?"
            params.append(since)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT m.id, m.seq, m.conversation_id, m.sender_id, m.content,
                       m.message_type, m.mentions, m.client_message_id, m.created_at
                FROM messages m
                JOIN message_recipients r ON r.message_id = m.id
                WHERE {where}
                ORDER BY m.seq
                """,
                params,
            ).fetchall()
            return self._hydrate(rows)

    # -----------------------------------------------------------------------
    # Delivery state
    # -----------------------------------------------------------------------

    def mark_delivered(
        self, message_id: str, user_id: str, at: Optional[float] = None
    ) -> Optional[RecipientTransition]:
        """Move a recipient from ``sent`` to ``delivered``.

        Returns None when the row does not exist or is already past ``sent``.
        """
        at = at if at is not None else time.time()
        with self._lock:
            row = self._conn.execute(
                """
                UPDATE message_recipients SET state = 'delivered', delivered_at = ?
                WHERE message_id = ? AND user_id = ? AND state = 'sent'
                RETURNING message_id
                """,
                [at, message_id, user_id],
            ).fetchone()
            if row is None:
                return None
            return self._transition(message_id, user_id)

    def mark_read(
        self, message_id: str, user_id: str, at: Optional[float] = None
    ) -> Optional[RecipientTransition]:
        """Move a recipient to ``read``, filling in delivered_at if it was missing.

        Returns None when the row does not exist or is already ``read``.
        """
        at = at if at is not None else time.time()
        with self._lock:
            current = self._conn.execute(
                "SELECT state FROM message_recipients WHERE message_id = ? AND user_id = ?",
                [message_id, user_id],
            ).fetchone()
            if current is None or current[0] == DeliveryState.READ.value:
                return None
            self._conn.execute(
                """
                UPDATE message_recipients
                SET state = 'read', read_at = ?, delivered_at = COALESCE(delivered_at, ?)
                WHERE message_id = ? AND user_id = ? AND state <> 'read'
                """,
                [at, at, message_id, user_id],
            )
            transition = self._transition(message_id, user_id)
            transition.coercedDelivery = current[0] == DeliveryState.SENT.value
            return transition

    def recipient_state(self, message_id: str, user_id: str) -> Optional[RecipientTransition]:
        with self._lock:
            return self._transition(message_id, user_id)

    def unread_count(self, user_id: str, conversation_id: Optional[str] = None) -> int:
        params: list = [user_id]
        sql = (
            "SELECT COUNT(*) FROM message_recipients r "
            "JOIN messages m ON m.id = r.message_id "
            "WHERE r.user_id = ? AND r.state <> 'read'"
        )
        if conversation_id is not None:
            sql += " AND m.conversation_id = ?"
            params.append(conversation_id)
        with self._lock:
            return self._conn.execute(sql, params).fetchone()[0]

    # -----------------------------------------------------------------------
    # Presence
    # -----------------------------------------------------------------------

    def set_last_seen(self, user_id: str, at: float) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO user_presence (user_id, last_seen) VALUES (?, ?)
                ON CONFLICT (user_id) DO UPDATE SET last_seen = excluded.last_seen
                """,
                [user_id, at],
            )

    def get_last_seen(self, user_ids: Iterable[str]) -> Dict[str, float]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        with self._lock:
            rows = self._conn.execute(
                f"SELECT user_id, last_seen FROM user_presence WHERE user_id IN ({_placeholders(ids)})",
                ids,
            ).fetchall()
        return {r[0]: r[1] for r in rows}

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _insert_conversation(self, conversation: Conversation, key: Optional[str]) -> None:
        self._conn.execute(
            f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}, direct_key) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                conversation.id, conversation.kind.value, conversation.name,
                conversation.description, conversation.createdBy,
                conversation.createdAt, conversation.lastActivity, None, key,
            ],
        )

    def _insert_member(
        self, conversation_id: str, user_id: str, role: MemberRole, joined_at: float
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO conversation_members (conversation_id, user_id, role, joined_at)
            VALUES (?, ?, ?, ?) ON CONFLICT DO NOTHING
            """,
            [conversation_id, user_id, role.value, joined_at],
        )

    def _touch(self, conversation_id: str, at: float) -> None:
        self._conn.execute(
            "UPDATE conversations SET last_activity = ? WHERE id = ?", [at, conversation_id]
        )

    def _load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = self._conn.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            [conversation_id],
        ).fetchone()
        if row is None:
            return None
        members = self._conn.execute(
            """
            SELECT user_id, role, joined_at FROM conversation_members
            WHERE conversation_id = ? ORDER BY joined_at, user_id
            """,
            [conversation_id],
        ).fetchall()
        return Conversation(
            id=row[0],
            kind=ConversationKind(row[1]),
            name=row[2],
            description=row[3],
            createdBy=row[4],
            createdAt=row[5],
            lastActivity=row[6],
            lastMessageId=row[7],
            members=[
                ConversationMember(userId=m[0], role=MemberRole(m[1]), joinedAt=m[2])
                for m in members
            ],
        )

    def _hydrate(self, rows: List[tuple]) -> List[Message]:
        if not rows:
            return []
        ids = [r[0] for r in rows]
        delivery: Dict[str, Dict[str, DeliveryState]] = {mid: {} for mid in ids}
        for message_id, user_id, state in self._conn.execute(
            f"SELECT message_id, user_id, state FROM message_recipients "
            f"WHERE message_id IN ({_placeholders(ids)})",
            ids,
        ).fetchall():
            delivery[message_id][user_id] = DeliveryState(state)

        conversation_ids = list(dict.fromkeys(r[2] for r in rows))
        group_ids = {
            g[0] for g in self._conn.execute(
                f"SELECT id FROM conversations WHERE kind = 'group' "
                f"AND id IN ({_placeholders(conversation_ids)})",
                conversation_ids,
            ).fetchall()
        }

        return [
            Message(
                id=r[0],
                seq=r[1],
                conversationId=r[2],
                roomId=r[2] if r[2] in group_ids else None,
                senderId=r[3],
                content=r[4],
                messageType=MessageType(r[5]),
                mentions=json.loads(r[6]),
                clientMessageId=r[7],
                createdAt=r[8],
                delivery=delivery[r[0]],
            )
            for r in rows
        ]

    def _transition(self, message_id: str, user_id: str) -> Optional[RecipientTransition]:
        row = self._conn.execute(
            """
            SELECT r.message_id, m.conversation_id, m.sender_id, r.user_id,
                   r.state, r.delivered_at, r.read_at
            FROM message_recipients r JOIN messages m ON m.id = r.message_id
            WHERE r.message_id = ? AND r.user_id = ?
            """,
            [message_id, user_id],
        ).fetchone()
        if row is None:
            return None
        return RecipientTransition(
            messageId=row[0],
            conversationId=row[1],
            senderId=row[2],
            recipientId=row[3],
            state=DeliveryState(row[4]),
            deliveredAt=row[5],
            readAt=row[6],
        )
