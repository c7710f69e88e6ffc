"""SQLite storage for queued webhook deliveries."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable
from pathlib import Path

from src.models import QueuedMessage, WebhookPayload

QueueListener = Callable[[list[QueuedMessage]], None]


class QueueDB:
    """Persisted queue state; survives restarts.

    Rows keep insertion order (``seq``) so ready items are picked FIFO.
    Listeners registered with ``subscribe`` receive the full queue after
    every mutation.
    """

    def __init__(self, db_path: str) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._listeners: list[QueueListener] = []
        self._create_tables()

    def _create_tables(self) -> None:
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS queue_items (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                payload_json TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 5,
                next_retry INTEGER NOT NULL,
                last_error TEXT
            )
        """)
        self.conn.commit()

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> QueuedMessage:
        return QueuedMessage(
            id=row["id"],
            payload=WebhookPayload.model_validate(json.loads(row["payload_json"])),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_retry=row["next_retry"],
            last_error=row["last_error"],
        )

    def insert(self, item: QueuedMessage) -> bool:
        """Insert ``item``; returns False when its id is already queued."""
        cursor = self.conn.execute(
            """INSERT OR IGNORE INTO queue_items
               (id, payload_json, attempts, max_attempts, next_retry, last_error)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                item.id,
                json.dumps(item.payload.to_wire(include_routing=True)),
                item.attempts,
                item.max_attempts,
                item.next_retry,
                item.last_error,
            ),
        )
        self.conn.commit()
        inserted = cursor.rowcount > 0
        if inserted:
            self._notify()
        return inserted

    def get(self, item_id: str) -> QueuedMessage | None:
        row = self.conn.execute(
            "SELECT * FROM queue_items WHERE id = ?", (item_id,)
        ).fetchone()
        return self._row_to_item(row) if row else None

    def list_items(self) -> list[QueuedMessage]:
        rows = self.conn.execute("SELECT * FROM queue_items ORDER BY seq").fetchall()
        return [self._row_to_item(r) for r in rows]

    def update(
        self,
        item_id: str,
        attempts: int,
        next_retry: int,
        last_error: str | None,
    ) -> bool:
        cursor = self.conn.execute(
            """UPDATE queue_items SET attempts=?, next_retry=?, last_error=?
               WHERE id=?""",
            (attempts, next_retry, last_error, item_id),
        )
        self.conn.commit()
        updated = cursor.rowcount > 0
        if updated:
            self._notify()
        return updated

    def delete(self, item_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM queue_items WHERE id = ?", (item_id,))
        self.conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            self._notify()
        return deleted

    def clear(self) -> None:
        self.conn.execute("DELETE FROM queue_items")
        self.conn.commit()
        self._notify()

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.list_items()
        for listener in list(self._listeners):
            listener(snapshot)

    def close(self) -> None:
        self.conn.close()
