"""DuckDB-backed Conversation Store.

Sole source of truth for messages, read markers and groups. The realtime
core reads and writes through this service; unread counts are always
derived from it on demand and never stored.

Database Schema:
    messages table:
        - seq: Monotonic sequence, canonical persistence order
        - id: Message ID (primary key)
        - sender_id: Sending user
        - target_kind: 'direct' | 'group'
        - target_id: Receiving user ID or group ID
        - text / attachment: At least one is non-null
        - ts: Creation time (seconds since epoch)
        - status: 'sent' | 'delivered' | 'read'
    message_reads table:
        - (message_id, user_id) primary key; rows are only ever inserted
    groups table:
        - id, name, created_by, created_at, last_message_id (cache)
    group_members / group_admins tables:
        - (group_id, user_id) primary key, one row per member/admin

Thread Safety:
    The DuckDB connection is NOT thread-safe. All calls are made from the
    event loop thread; each statement commits on its own.
"""
import logging
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Tuple

import duckdb

from chatline.errors import ValidationError

from .schemas import (
    Attachment,
    DirectTarget,
    Group,
    GroupTarget,
    Message,
    MessageStatus,
    TargetKind,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq         BIGINT NOT NULL DEFAULT nextval('messages_seq'),
        id          VARCHAR PRIMARY KEY,
        sender_id   VARCHAR NOT NULL,
        target_kind VARCHAR NOT NULL,
        target_id   VARCHAR NOT NULL,
        text        VARCHAR,
        attachment  VARCHAR,
        ts          DOUBLE NOT NULL,
        status      VARCHAR NOT NULL DEFAULT 'sent'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_target ON messages(target_kind, target_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender_id)",
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS groups (
        id              VARCHAR PRIMARY KEY,
        name            VARCHAR NOT NULL,
        created_by      VARCHAR NOT NULL,
        created_at      DOUBLE NOT NULL,
        last_message_id VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_id VARCHAR NOT NULL,
        user_id  VARCHAR NOT NULL,
        PRIMARY KEY (group_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_admins (
        group_id VARCHAR NOT NULL,
        user_id  VARCHAR NOT NULL,
        PRIMARY KEY (group_id, user_id)
    )
    """,
]

_MESSAGE_COLUMNS = "id, sender_id, target_kind, target_id, text, attachment, ts, status"

# Lower-ranked statuses a message may advance from, per target status
_ADVANCE_FROM = {
    MessageStatus.DELIVERED: [MessageStatus.SENT.value],
    MessageStatus.READ: [MessageStatus.SENT.value, MessageStatus.DELIVERED.value],
}

# Cap for the direct partners aggregation
MAX_PARTNERS = 500

_UNREAD_FILTER = (
    "NOT EXISTS (SELECT 1 FROM message_reads r "
    "WHERE r.message_id = m.id AND r.user_id = ?)"
)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class ReadLedger:
    """Append-only per-message reader sets.

    The only write is a set union (``INSERT OR IGNORE`` on the
    ``(message_id, user_id)`` key), so marking the same message read twice,
    from any number of devices, leaves exactly one marker. There is no
    removal path.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self._conn = conn

    def add(self, message_ids: Iterable[str], user_id: str) -> None:
        rows = [[message_id, user_id] for message_id in dict.fromkeys(message_ids)]
        if rows:
            self._conn.executemany(
                "INSERT OR IGNORE INTO message_reads (message_id, user_id) VALUES (?, ?)",
                rows,
            )

    def readers(self, message_ids: Iterable[str]) -> Dict[str, List[str]]:
        ids = list(dict.fromkeys(message_ids))
        result: Dict[str, List[str]] = {message_id: [] for message_id in ids}
        if not ids:
            return result
        rows = self._conn.execute(
            f"SELECT message_id, user_id FROM message_reads "
            f"WHERE message_id IN ({_placeholders(len(ids))}) ORDER BY user_id",
            ids,
        ).fetchall()
        for message_id, user_id in rows:
            result[message_id].append(user_id)
        return result


class ConversationStore:
    """Singleton service persisting messages, read markers and groups."""

    _instance: Optional["ConversationStore"] = None
    _default_db_path: str = "chat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        for statement in _SCHEMA:
            self._conn.execute(statement)
        self.reads = ReadLedger(self._conn)
        logger.info("[ConversationStore] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ConversationStore":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def _transaction(self):
        """Run the enclosed statements atomically; roll back on any error."""
        self._conn.begin()
        try:
            yield
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def create_message(
        self,
        sender_id: str,
        target,
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        read_by: Iterable[str] = (),
    ) -> Message:
        """Persist a new message with its initial reader set.

        Raises:
            ValidationError: If the message has neither text nor attachment.
        """
        if not text and attachment is None:
            raise ValidationError("Message must have text or attachment")

        message_id = uuid.uuid4().hex
        ts = time.time()
        with self._transaction():
            self._conn.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    message_id,
                    sender_id,
                    target.kind,
                    target.target_id,
                    text,
                    attachment.model_dump_json() if attachment is not None else None,
                    ts,
                    MessageStatus.SENT.value,
                ],
            )
            for reader in dict.fromkeys(read_by):
                self.reads.add([message_id], reader)
        return self.get_message(message_id)

    def get_message(self, message_id: str) -> Optional[Message]:
        messages = self.get_messages([message_id])
        return messages[0] if messages else None

    def get_messages(self, message_ids: Iterable[str]) -> List[Message]:
        """Load the messages that exist among ``message_ids``."""
        ids = [str(i) for i in dict.fromkeys(message_ids)]
        if not ids:
            return []
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            f"WHERE id IN ({_placeholders(len(ids))}) ORDER BY ts, seq",
            ids,
        ).fetchall()
        return self._rows_to_messages(rows)

    def mark_read(self, message_ids: Iterable[str], reader_id: str) -> List[Message]:
        """Add ``reader_id`` to every referenced message's readers.

        Unknown ids are ignored. Returns the affected messages as stored
        after the update.
        """
        ids = [m.id for m in self.get_messages(message_ids)]
        if not ids:
            return []
        with self._transaction():
            self.reads.add(ids, reader_id)
            self._advance_status(ids, MessageStatus.READ)
        return self.get_messages(ids)

    def advance_status(self, message_id: str, status: MessageStatus) -> None:
        """Move a message's coarse status forward; never backwards."""
        self._advance_status([message_id], status)

    def _advance_status(self, message_ids: List[str], status: MessageStatus) -> None:
        allowed = _ADVANCE_FROM.get(MessageStatus(status))
        if not allowed or not message_ids:
            return
        self._conn.execute(
            f"UPDATE messages SET status = ? "
            f"WHERE id IN ({_placeholders(len(message_ids))}) "
            f"AND status IN ({_placeholders(len(allowed))})",
            [MessageStatus(status).value, *message_ids, *allowed],
        )

    def direct_page(
        self,
        user_id: str,
        other_user_id: str,
        before: Optional[float] = None,
        limit: int = 50,
    ) -> Tuple[List[Message], bool]:
        """Page of the direct conversation between two users, oldest first."""
        where = (
            "target_kind = 'direct' AND ("
            "(sender_id = ? AND target_id = ?) OR (sender_id = ? AND target_id = ?))"
        )
        return self._page(where, [user_id, other_user_id, other_user_id, user_id], before, limit)

    def group_page(
        self,
        group_id: str,
        before: Optional[float] = None,
        limit: int = 50,
    ) -> Tuple[List[Message], bool]:
        """Page of a group conversation, oldest first."""
        return self._page("target_kind = 'group' AND target_id = ?", [group_id], before, limit)

    def _page(
        self, where: str, params: list, before: Optional[float], limit: int
    ) -> Tuple[List[Message], bool]:
        if before is not None:
            where += " AND ts < ?"
            params = params + [before]
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE {where} "
            f"ORDER BY ts DESC, seq DESC LIMIT ?",
            params + [limit + 1],
        ).fetchall()
        has_more = len(rows) > limit
        rows = list(reversed(rows[:limit]))
        return self._rows_to_messages(rows), has_more

    # -----------------------------------------------------------------------
    # Unread accounting (always derived)
    # -----------------------------------------------------------------------

    def count_unread_group(self, group_id: str, reader_id: str) -> int:
        row = self._conn.execute(
            f"SELECT COUNT(*) FROM messages m "
            f"WHERE m.target_kind = 'group' AND m.target_id = ? AND {_UNREAD_FILTER}",
            [group_id, reader_id],
        ).fetchone()
        return int(row[0])

    def count_unread_direct(self, reader_id: str, partner_id: str) -> int:
        """Messages from ``partner_id`` addressed to ``reader_id`` not yet read."""
        row = self._conn.execute(
            f"SELECT COUNT(*) FROM messages m "
            f"WHERE m.target_kind = 'direct' AND m.target_id = ? "
            f"AND m.sender_id = ? AND {_UNREAD_FILTER}",
            [reader_id, partner_id, reader_id],
        ).fetchone()
        return int(row[0])

    def unread_by_group(self, reader_id: str) -> Dict[str, int]:
        """Unread count for every group ``reader_id`` currently belongs to."""
        counts = {group_id: 0 for group_id in self.group_ids_for_user(reader_id)}
        if not counts:
            return counts
        rows = self._conn.execute(
            f"SELECT m.target_id, COUNT(*) FROM messages m "
            f"JOIN group_members gm ON gm.group_id = m.target_id AND gm.user_id = ? "
            f"WHERE m.target_kind = 'group' AND {_UNREAD_FILTER} "
            f"GROUP BY m.target_id",
            [reader_id, reader_id],
        ).fetchall()
        for group_id, unread in rows:
            counts[group_id] = int(unread)
        return counts

    def unread_by_partner(self, reader_id: str) -> Dict[str, int]:
        """Unread direct messages addressed to ``reader_id``, keyed by sender."""
        rows = self._conn.execute(
            f"SELECT m.sender_id, COUNT(*) FROM messages m "
            f"WHERE m.target_kind = 'direct' AND m.target_id = ? AND {_UNREAD_FILTER} "
            f"GROUP BY m.sender_id ORDER BY m.sender_id",
            [reader_id, reader_id],
        ).fetchall()
        return {sender_id: int(unread) for sender_id, unread in rows}

    def direct_partners(self, user_id: str) -> List[dict]:
        """Distinct direct-message partners, most recent conversation first."""
        rows = self._conn.execute(
            """
            SELECT CASE WHEN sender_id = ? THEN target_id ELSE sender_id END AS other,
                   MAX(ts) AS last_ts,
                   COUNT(*) AS message_count
            FROM messages
            WHERE target_kind = 'direct' AND (sender_id = ? OR target_id = ?)
            GROUP BY other
            ORDER BY last_ts DESC
            LIMIT ?
            """,
            [user_id, user_id, user_id, MAX_PARTNERS],
        ).fetchall()
        return [
            {"userId": other, "lastMessageAt": last_ts, "messageCount": int(count)}
            for other, last_ts, count in rows
        ]

    def partner_ids(self, user_id: str) -> List[str]:
        """Every direct-message partner id, without the listing cap."""
        rows = self._conn.execute(
            """
            SELECT DISTINCT CASE WHEN sender_id = ? THEN target_id ELSE sender_id END
            FROM messages
            WHERE target_kind = 'direct' AND (sender_id = ? OR target_id = ?)
            """,
            [user_id, user_id, user_id],
        ).fetchall()
        return [r[0] for r in rows]

    # -----------------------------------------------------------------------
    # Groups
    # -----------------------------------------------------------------------

    def create_group(self, name: str, creator_id: str, member_ids: Iterable[str]) -> Group:
        """Create a group; the creator is always a member and the first admin."""
        group_id = uuid.uuid4().hex
        members = list(dict.fromkeys([*member_ids, creator_id]))
        with self._transaction():
            self._conn.execute(
                "INSERT INTO groups (id, name, created_by, created_at) VALUES (?, ?, ?, ?)",
                [group_id, name, creator_id, time.time()],
            )
            self._conn.executemany(
                "INSERT OR IGNORE INTO group_members (group_id, user_id) VALUES (?, ?)",
                [[group_id, uid] for uid in members],
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO group_admins (group_id, user_id) VALUES (?, ?)",
                [group_id, creator_id],
            )
        return self.get_group(group_id)

    def get_group(self, group_id: str) -> Optional[Group]:
        row = self._conn.execute(
            "SELECT id, name, created_by, created_at, last_message_id FROM groups WHERE id = ?",
            [group_id],
        ).fetchone()
        return self._row_to_group(row) if row else None

    def member_ids(self, group_id: str) -> List[str]:
        """Current members, read fresh from storage."""
        rows = self._conn.execute(
            "SELECT user_id FROM group_members WHERE group_id = ? ORDER BY user_id",
            [group_id],
        ).fetchall()
        return [r[0] for r in rows]

    def admin_ids(self, group_id: str) -> List[str]:
        rows = self._conn.execute(
            "SELECT user_id FROM group_admins WHERE group_id = ? ORDER BY user_id",
            [group_id],
        ).fetchall()
        return [r[0] for r in rows]

    def is_member(self, group_id: str, user_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
            [group_id, user_id],
        ).fetchone()
        return row is not None

    def group_ids_for_user(self, user_id: str) -> List[str]:
        rows = self._conn.execute(
            "SELECT group_id FROM group_members WHERE user_id = ? ORDER BY group_id",
            [user_id],
        ).fetchall()
        return [r[0] for r in rows]

    def groups_for_user(self, user_id: str) -> List[Group]:
        """Groups the user belongs to, each with its cached last message."""
        groups = [self.get_group(gid) for gid in self.group_ids_for_user(user_id)]
        groups = [g for g in groups if g is not None]
        last_ids = [g.lastMessageId for g in groups if g.lastMessageId]
        last_messages = {m.id: m for m in self.get_messages(last_ids)}
        for group in groups:
            if group.lastMessageId:
                group.lastMessage = last_messages.get(group.lastMessageId)
        groups.sort(key=lambda g: g.lastMessage.ts if g.lastMessage else g.createdAt, reverse=True)
        return groups

    def add_member(self, group_id: str, user_id: str) -> bool:
        """Returns False if the user already was a member."""
        if self.is_member(group_id, user_id):
            return False
        self._conn.execute(
            "INSERT OR IGNORE INTO group_members (group_id, user_id) VALUES (?, ?)",
            [group_id, user_id],
        )
        return True

    def remove_member(self, group_id: str, user_id: str) -> bool:
        """Remove a member (and their admin role). Returns False if absent."""
        if not self.is_member(group_id, user_id):
            return False
        with self._transaction():
            self._conn.execute(
                "DELETE FROM group_admins WHERE group_id = ? AND user_id = ?",
                [group_id, user_id],
            )
            self._conn.execute(
                "DELETE FROM group_members WHERE group_id = ? AND user_id = ?",
                [group_id, user_id],
            )
        return True

    def add_admin(self, group_id: str, user_id: str) -> bool:
        """Promote a member. Returns False if already an admin."""
        if user_id in self.admin_ids(group_id):
            return False
        self._conn.execute(
            "INSERT OR IGNORE INTO group_admins (group_id, user_id) VALUES (?, ?)",
            [group_id, user_id],
        )
        return True

    def rename_group(self, group_id: str, name: str) -> None:
        self._conn.execute("UPDATE groups SET name = ? WHERE id = ?", [name, group_id])

    def set_last_message(self, group_id: str, message_id: str) -> None:
        self._conn.execute(
            "UPDATE groups SET last_message_id = ? WHERE id = ?", [message_id, group_id]
        )

    # -----------------------------------------------------------------------
    # Row conversion
    # -----------------------------------------------------------------------

    def _rows_to_messages(self, rows) -> List[Message]:
        readers = self.reads.readers(r[0] for r in rows)
        return [self._row_to_message(r, readers.get(r[0], [])) for r in rows]

    @staticmethod
    def _row_to_message(row, read_by: List[str]) -> Message:
        message_id, sender_id, kind, target_id, text, attachment, ts, status = row
        if kind == TargetKind.GROUP.value:
            target = GroupTarget(groupId=target_id)
        else:
            target = DirectTarget(userId=target_id)
        return Message(
            id=message_id,
            senderId=sender_id,
            target=target,
            text=text,
            attachment=Attachment.model_validate_json(attachment) if attachment else None,
            ts=ts,
            status=MessageStatus(status),
            readBy=list(read_by),
        )

    def _row_to_group(self, row) -> Group:
        group_id, name, created_by, created_at, last_message_id = row
        return Group(
            id=group_id,
            name=name,
            members=self.member_ids(group_id),
            admins=self.admin_ids(group_id),
            createdBy=created_by,
            createdAt=created_at,
            lastMessageId=last_message_id,
        )
