# companion_relay/memory/repository.py

import sqlite3
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Union

from companion_relay.core.errors import StoreError
from companion_relay.memory.db import get_connection, init_db
from companion_relay.memory.models import (
    ISO_FMT,
    Conversation,
    Message,
    MessageRole,
    now_iso,
    parse_iso,
)
from companion_relay.utils.logging import get_logger

logger = get_logger(__name__)

_VALID_ROLES = {role.value for role in MessageRole}


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        name=row["name"],
        is_ai_companion=bool(row["is_ai_companion"]),
        created_at=row["created_at"],
        continuation_token=row["continuation_token"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        timestamp=row["timestamp"],
    )


def _next_timestamp(last: Optional[str]) -> str:
    """
    Current time, nudged forward so timestamps strictly increase within a
    conversation even when the clock stalls or steps back.
    """
    now = now_iso()
    if last is None or now > last:
        return now
    return (parse_iso(last) + timedelta(microseconds=1)).strftime(ISO_FMT)


class ConversationStore:
    """
    SQLite-backed conversation log.

    Every call opens its own short-lived connection, so one instance can be
    shared by concurrent callers on different threads.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = Path(db_path)

    def initialize(self) -> None:
        """
        Initialize DB schema. Call once at startup.
        """
        try:
            init_db(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize conversation store at {self.db_path}: {e}") from e

    def create_conversation(self, name: str, is_ai_companion: bool = True) -> Conversation:
        """
        Create a new conversation row and return it.
        """
        created_at = now_iso()
        try:
            conn = get_connection(self.db_path)
            try:
                cur = conn.cursor()
                cur.execute(
                    """
                    INSERT INTO conversations (name, is_ai_companion, created_at)
                    VALUES (?, ?, ?)
                    """,
                    (name, int(is_ai_companion), created_at),
                )
                conv_id = cur.lastrowid
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to create conversation {name!r}: {e}") from e

        return Conversation(
            id=conv_id,
            name=name,
            is_ai_companion=is_ai_companion,
            created_at=created_at,
            continuation_token=None,
        )

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        try:
            conn = get_connection(self.db_path)
            try:
                cur = conn.cursor()
                cur.execute(
                    """
                    SELECT id, name, is_ai_companion, continuation_token, created_at
                    FROM conversations
                    WHERE id = ?
                    """,
                    (conversation_id,),
                )
                row = cur.fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to load conversation {conversation_id}: {e}") from e

        return _row_to_conversation(row) if row is not None else None

    def get_messages(self, conversation_id: int, limit: Optional[int] = None) -> List[Message]:
        """
        Return the conversation's messages, oldest first.
        With `limit`, only the trailing `limit` messages are returned.
        """
        try:
            conn = get_connection(self.db_path)
            try:
                cur = conn.cursor()
                if limit is None:
                    cur.execute(
                        """
                        SELECT id, conversation_id, role, timestamp, content
                        FROM messages
                        WHERE conversation_id = ?
                        ORDER BY id ASC
                        """,
                        (conversation_id,),
                    )
                    rows = cur.fetchall()
                else:
                    cur.execute(
                        """
                        SELECT id, conversation_id, role, timestamp, content
                        FROM messages
                        WHERE conversation_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (conversation_id, max(0, limit)),
                    )
                    rows = list(reversed(cur.fetchall()))
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to load messages for conversation {conversation_id}: {e}") from e

        return [_row_to_message(row) for row in rows]

    def create_message(self, conversation_id: int, role: str, content: str) -> Message:
        """
        Append a message and return it with its id and timestamp.
        """
        role_value = role.value if isinstance(role, MessageRole) else str(role)
        if role_value not in _VALID_ROLES:
            raise ValueError(f"Unknown message role: {role_value!r}")

        try:
            conn = get_connection(self.db_path)
            try:
                cur = conn.cursor()
                # IMMEDIATE takes the write lock up front so the timestamp read
                # and the insert cannot interleave with another writer.
                cur.execute("BEGIN IMMEDIATE")
                cur.execute(
                    """
                    SELECT timestamp FROM messages
                    WHERE conversation_id = ?
                    ORDER BY id DESC
                    LIMIT 1
                    """,
                    (conversation_id,),
                )
                last = cur.fetchone()
                timestamp = _next_timestamp(last["timestamp"] if last is not None else None)
                cur.execute(
                    """
                    INSERT INTO messages (conversation_id, role, timestamp, content)
                    VALUES (?, ?, ?, ?)
                    """,
                    (conversation_id, role_value, timestamp, content),
                )
                msg_id = cur.lastrowid
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to save {role_value} message in conversation {conversation_id}: {e}") from e

        return Message(
            id=msg_id,
            conversation_id=conversation_id,
            role=role_value,
            content=content,
            timestamp=timestamp,
        )

    def update_conversation_continuation_token(self, conversation_id: int, token: str) -> bool:
        """
        Set the continuation token if the conversation has none yet.
        Returns True when this call wrote it; an existing token is never replaced.
        """
        try:
            conn = get_connection(self.db_path)
            try:
                cur = conn.cursor()
                cur.execute(
                    """
                    UPDATE conversations
                    SET continuation_token = ?
                    WHERE id = ? AND continuation_token IS NULL
                    """,
                    (token, conversation_id),
                )
                updated = cur.rowcount > 0
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to update continuation token for conversation {conversation_id}: {e}") from e

        if not updated:
            logger.info("[store] conversation_id=%s continuation token already set or conversation missing; kept existing.", conversation_id)
        return updated
