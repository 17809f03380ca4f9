"""DuckDB-based course chat message storage.

This module is the persistence adapter behind the message lifecycle
coordinator. It stores exactly what it is given; every rule about who may
edit, delete or react lives in ``lifecycle.py`` and ``coordinator.py``.

Database Schema:
    messages table:
        - id: UUID primary key
        - seq: Insertion sequence (tie-breaker for equal timestamps)
        - course_id: Owning course (never updated)
        - sender_id / sender_name / sender_role: Author snapshot
        - content, type, reply_to, is_announcement
        - mentions: JSON array of @handles
        - is_edited / edited_at, is_deleted / deleted_at
        - created_at: Server-assigned creation time (UTC)
    message_reactions table:
        - (message_id, user_id) primary key, kind, created_at
    message_reads table:
        - (message_id, user_id) primary key, read_at

Thread Safety:
    A single DuckDB connection is shared; every call takes ``self._lock``.

Usage:
    store = MessageStore.get_instance()
    message = store.create(ChatMessage(...))
    recent = store.list_recent(course_id, limit=50)
"""
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import duckdb

from .schemas import (
    DELETED_PLACEHOLDER,
    ChatMessage,
    MessageType,
    Reaction,
    ReactionKind,
    ReplyPreview,
)

logger = logging.getLogger(__name__)

_CREATE_SEQUENCE = "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1"

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    id              VARCHAR PRIMARY KEY,
    seq             BIGINT NOT NULL DEFAULT nextval('messages_seq'),
    course_id       VARCHAR NOT NULL,
    sender_id       VARCHAR NOT NULL,
    sender_name     VARCHAR NOT NULL DEFAULT '',
    sender_role     VARCHAR NOT NULL DEFAULT '',
    content         VARCHAR NOT NULL,
    type            VARCHAR NOT NULL DEFAULT 'text',
    reply_to        VARCHAR,
    mentions        VARCHAR NOT NULL DEFAULT '[]',
    is_announcement BOOLEAN NOT NULL DEFAULT FALSE,
    is_edited       BOOLEAN NOT NULL DEFAULT FALSE,
    edited_at       TIMESTAMP,
    is_deleted      BOOLEAN NOT NULL DEFAULT FALSE,
    deleted_at      TIMESTAMP,
    created_at      TIMESTAMP NOT NULL
)
"""

_CREATE_REACTIONS = """
CREATE TABLE IF NOT EXISTS message_reactions (
    message_id VARCHAR NOT NULL,
    user_id    VARCHAR NOT NULL,
    kind       VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (message_id, user_id)
)
"""

_CREATE_READS = """
CREATE TABLE IF NOT EXISTS message_reads (
    message_id VARCHAR NOT NULL,
    user_id    VARCHAR NOT NULL,
    read_at    TIMESTAMP NOT NULL,
    PRIMARY KEY (message_id, user_id)
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_course ON messages(course_id, created_at)"

_SELECT = """
SELECT m.id, m.course_id, m.sender_id, m.sender_name, m.sender_role,
       m.content, m.type, m.reply_to, m.mentions, m.is_announcement,
       m.is_edited, m.edited_at, m.is_deleted, m.deleted_at, m.created_at,
       p.id, p.content, p.sender_id, p.sender_name, p.is_deleted
FROM messages m
LEFT JOIN messages p ON p.id = m.reply_to
"""


def utcnow() -> datetime:
    """Naive UTC now, matching DuckDB TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _placeholders(values: List[str]) -> str:
    return ", ".join("?" for _ in values)


class MessageStore:
    """Singleton service for storing chat messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _default_db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _default_db_path: str = "chat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file (``":memory:"`` for tests).
        """
        self._db_path = db_path or self._default_db_path
        self._lock = threading.Lock()
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_SEQUENCE)
        self._conn.execute(_CREATE_MESSAGES)
        self._conn.execute(_CREATE_REACTIONS)
        self._conn.execute(_CREATE_READS)
        self._conn.execute(_INDEX)
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create(self, message: ChatMessage) -> ChatMessage:
        """Insert a new message and return it as stored."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO messages
                  (id, course_id, sender_id, sender_name, sender_role, content,
                   type, reply_to, mentions, is_announcement, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id,
                    message.courseId,
                    message.senderId,
                    message.senderName,
                    message.senderRole,
                    message.content,
                    message.type.value,
                    message.replyTo,
                    json.dumps(list(message.mentions)),
                    message.isAnnouncement,
                    to_naive_utc(message.createdAt),
                ],
            )
        logger.debug("[Store] Created message %s in course %s", message.id, message.courseId)
        return self._require(message.id)

    def update_content(
        self, message_id: str, content: str, mentions: List[str], edited_at: datetime
    ) -> ChatMessage:
        """Replace content and mark the message edited."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE messages
                SET content = ?, mentions = ?, is_edited = TRUE, edited_at = ?
                WHERE id = ?
                """,
                [content, json.dumps(list(mentions)), to_naive_utc(edited_at), message_id],
            )
        return self._require(message_id)

    def soft_delete(self, message_id: str, deleted_at: datetime) -> ChatMessage:
        """Swap content for the placeholder and flag the row deleted."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE messages
                SET content = ?, mentions = ?, is_deleted = TRUE, deleted_at = ?
                WHERE id = ?
                """,
                [DELETED_PLACEHOLDER, "[]", to_naive_utc(deleted_at), message_id],
            )
        return self._require(message_id)

    def set_reaction(
        self,
        message_id: str,
        user_id: str,
        kind: Optional[ReactionKind],
        at: datetime,
    ) -> ChatMessage:
        """Set a user's reaction kind, or remove it when ``kind`` is None.

        Changing an existing reaction keeps its original position.
        """
        with self._lock:
            if kind is None:
                self._conn.execute(
                    "DELETE FROM message_reactions WHERE message_id = ? AND user_id = ?",
                    [message_id, user_id],
                )
            else:
                self._conn.execute(
                    """
                    INSERT INTO message_reactions (message_id, user_id, kind, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (message_id, user_id) DO UPDATE SET kind = excluded.kind
                    """,
                    [message_id, user_id, kind.value, to_naive_utc(at)],
                )
        return self._require(message_id)

    def mark_read(self, message_ids: Iterable[str], user_id: str, at: datetime) -> int:
        """Record reads for existing messages not yet read by ``user_id``.

        Returns:
            Number of newly recorded reads.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return 0
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT m.id FROM messages m
                WHERE m.id IN ({_placeholders(ids)})
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = ?
                  )
                """,
                [*ids, user_id],
            ).fetchall()
            fresh = [r[0] for r in rows]
            if fresh:
                self._conn.executemany(
                    "INSERT INTO message_reads (message_id, user_id, read_at) VALUES (?, ?, ?)",
                    [[mid, user_id, to_naive_utc(at)] for mid in fresh],
                )
        return len(fresh)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get(self, message_id: str) -> Optional[ChatMessage]:
        with self._lock:
            row = self._conn.execute(f"{_SELECT} WHERE m.id = ?", [message_id]).fetchone()
            if row is None:
                return None
            return self._hydrate([row])[0]

    def get_many(self, message_ids: List[str]) -> List[ChatMessage]:
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        with self._lock:
            rows = self._conn.execute(
                f"{_SELECT} WHERE m.id IN ({_placeholders(ids)})", ids
            ).fetchall()
            return self._hydrate(rows)

    def list_recent(
        self, course_id: str, limit: int, before: Optional[datetime] = None
    ) -> List[ChatMessage]:
        """Newest non-deleted messages first, optionally older than ``before``."""
        params: list = [course_id]
        cursor = ""
        if before is not None:
            cursor = "AND m.created_at < ?"
            params.append(to_naive_utc(before))
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"""
                {_SELECT}
                WHERE m.course_id = ? AND NOT m.is_deleted {cursor}
                ORDER BY m.created_at DESC, m.seq DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
            return self._hydrate(rows)

    def search(self, course_id: str, term: str, limit: int) -> List[ChatMessage]:
        """Case-insensitive substring search, most recent first."""
        with self._lock:
            rows = self._conn.execute(
                f"""
                {_SELECT}
                WHERE m.course_id = ? AND NOT m.is_deleted
                  AND contains(lower(m.content), lower(?))
                ORDER BY m.created_at DESC, m.seq DESC
                LIMIT ?
                """,
                [course_id, term, limit],
            ).fetchall()
            return self._hydrate(rows)

    def unread_count(self, course_id: str, user_id: str) -> int:
        """Non-deleted messages by others that ``user_id`` has not read."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT count(*) FROM messages m
                WHERE m.course_id = ? AND NOT m.is_deleted AND m.sender_id <> ?
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = ?
                  )
                """,
                [course_id, user_id, user_id],
            ).fetchone()
        return int(row[0])

    def count(self, course_id: str, include_deleted: bool = True) -> int:
        """Stored rows for a course. Only tests use this, to check nothing was written."""
        deleted = "" if include_deleted else "AND NOT is_deleted"
        with self._lock:
            row = self._conn.execute(
                f"SELECT count(*) FROM messages WHERE course_id = ? {deleted}",
                [course_id],
            ).fetchone()
        return int(row[0])

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _require(self, message_id: str) -> ChatMessage:
        message = self.get(message_id)
        if message is None:
            raise LookupError(f"Message {message_id} vanished after write")
        return message

    def _hydrate(self, rows: list) -> List[ChatMessage]:
        """Turn message rows into ChatMessage objects. Caller holds the lock."""
        if not rows:
            return []
        ids = [row[0] for row in rows]
        marks = _placeholders(ids)

        reactions: Dict[str, List[Reaction]] = {}
        for message_id, user_id, kind, created_at in self._conn.execute(
            f"""
            SELECT message_id, user_id, kind, created_at FROM message_reactions
            WHERE message_id IN ({marks})
            ORDER BY created_at, user_id
            """,
            ids,
        ).fetchall():
            reactions.setdefault(message_id, []).append(
                Reaction(userId=user_id, kind=ReactionKind(kind), createdAt=created_at)
            )

        reads: Dict[str, Dict[str, datetime]] = {}
        for message_id, user_id, read_at in self._conn.execute(
            f"SELECT message_id, user_id, read_at FROM message_reads WHERE message_id IN ({marks})",
            ids,
        ).fetchall():
            reads.setdefault(message_id, {})[user_id] = read_at

        messages = []
        for row in rows:
            preview = None
            if row[15] is not None:
                preview = ReplyPreview(
                    id=row[15],
                    content=row[16],
                    senderId=row[17],
                    senderName=row[18],
                    isDeleted=row[19],
                )
            messages.append(
                ChatMessage(
                    id=row[0],
                    courseId=row[1],
                    senderId=row[2],
                    senderName=row[3],
                    senderRole=row[4],
                    content=row[5],
                    type=MessageType(row[6]),
                    replyTo=row[7],
                    mentions=json.loads(row[8] or "[]"),
                    isAnnouncement=row[9],
                    isEdited=row[10],
                    editedAt=row[11],
                    isDeleted=row[12],
                    deletedAt=row[13],
                    createdAt=row[14],
                    replyPreview=preview,
                    reactions=reactions.get(row[0], []),
                    readBy=reads.get(row[0], {}),
                )
            )
        return messages
