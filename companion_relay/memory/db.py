# companion_relay/memory/db.py

import sqlite3
from pathlib import Path
from typing import Union

# Seconds a writer waits on a locked database before sqlite3 raises
BUSY_TIMEOUT_SECONDS = 10.0


def get_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """
    Return a SQLite connection.
    Uses Row factory to allow dict-like access.
    Caller is responsible for closing.
    """
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Union[str, Path]) -> None:
    """
    Initialize the database schema if it does not exist.
    Safe to call multiple times.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    try:
        cur = conn.cursor()

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                is_ai_companion INTEGER NOT NULL DEFAULT 1,
                continuation_token TEXT,      -- set once, never overwritten
                created_at TEXT NOT NULL
            )
            """
        )

        # messages are append-only; id order is creation order
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL,
                role TEXT NOT NULL,            -- 'user', 'companion' or 'assistant'
                timestamp TEXT NOT NULL,
                content TEXT NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_messages_conversation
            ON messages (conversation_id, id)
            """
        )

        conn.commit()
    finally:
        conn.close()
