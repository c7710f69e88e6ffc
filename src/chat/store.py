"""Append-only chat transcript per session."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

from src.models import ChatMessage


class ChatMessageStore:
    """SQLite-backed message log. Messages are never edited or removed."""

    def __init__(self, db_path: str) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self) -> None:
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                session_id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                user_id TEXT NOT NULL,
                is_bot INTEGER NOT NULL DEFAULT 0,
                source TEXT,
                status TEXT NOT NULL,
                metadata_json TEXT
            )
        """)
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages(session_id)"
        )
        self.conn.commit()

    def append(self, message: ChatMessage) -> ChatMessage:
        """Record ``message``. A repeated id is ignored."""
        self.conn.execute(
            """INSERT OR IGNORE INTO chat_messages
               (id, session_id, type, content, timestamp, user_id, is_bot,
                source, status, metadata_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                message.id,
                message.session_id,
                message.type.value,
                message.content,
                message.timestamp,
                message.user_id,
                int(message.is_bot),
                message.source,
                message.status.value,
                json.dumps(message.metadata) if message.metadata is not None else None,
            ),
        )
        self.conn.commit()
        return message

    def list_for_session(self, session_id: str, limit: int = 50) -> list[ChatMessage]:
        """Most recent ``limit`` messages of the session, oldest first."""
        rows = self.conn.execute(
            """SELECT * FROM (
                   SELECT * FROM chat_messages WHERE session_id = ?
                   ORDER BY seq DESC LIMIT ?
               ) ORDER BY seq""",
            (session_id, limit),
        ).fetchall()
        return [
            ChatMessage(
                id=r["id"],
                session_id=r["session_id"],
                type=r["type"],
                content=r["content"],
                timestamp=r["timestamp"],
                user_id=r["user_id"],
                is_bot=bool(r["is_bot"]),
                source=r["source"],
                status=r["status"],
                metadata=json.loads(r["metadata_json"]) if r["metadata_json"] else None,
            )
            for r in rows
        ]

    def count(self, session_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM chat_messages WHERE session_id = ?", (session_id,)
        ).fetchone()
        return int(row[0])

    def close(self) -> None:
        self.conn.close()
