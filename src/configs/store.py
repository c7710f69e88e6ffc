"""User-managed webhook destinations.

At most one config is active at a time. Deleting the active config leaves
none active; nothing is promoted automatically.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from src.models import WebhookConfig
from src.webhook.url_validator import validate_webhook_url

_UPDATABLE = ("name", "url", "api_secret", "description")


class WebhookConfigNotFoundError(Exception):
    """Raised when a webhook config id does not exist."""

    def __init__(self, config_id: str) -> None:
        self.config_id = config_id
        super().__init__(f"Webhook config not found: {config_id}")


class WebhookConfigStore:
    """SQLite-backed CRUD for ``WebhookConfig`` records."""

    def __init__(self, db_path: str, allowed_domains: Iterable[str] = ()) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._allowed_domains = tuple(allowed_domains)
        self._create_tables()

    def _create_tables(self) -> None:
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS webhook_configs (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                url TEXT NOT NULL,
                api_secret TEXT,
                is_active INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                last_used TEXT,
                description TEXT
            )
        """)
        self.conn.commit()

    @staticmethod
    def _row_to_config(row: sqlite3.Row) -> WebhookConfig:
        return WebhookConfig(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            api_secret=row["api_secret"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            last_used=row["last_used"],
            description=row["description"],
        )

    def _canonical(self, url: str) -> str:
        return validate_webhook_url(url, is_custom=True, allowed_domains=self._allowed_domains)

    def add(
        self,
        name: str,
        url: str,
        api_secret: str | None = None,
        description: str | None = None,
    ) -> WebhookConfig:
        """Store a new, inactive config. Raises ``WebhookURLError`` for bad URLs."""
        config = WebhookConfig(
            id=uuid.uuid4().hex,
            name=name,
            url=self._canonical(url),
            api_secret=api_secret or None,
            description=description,
        )
        self.conn.execute(
            """INSERT INTO webhook_configs
               (id, name, url, api_secret, is_active, created_at, description)
               VALUES (?, ?, ?, ?, 0, ?, ?)""",
            (config.id, config.name, config.url, config.api_secret,
             config.created_at, config.description),
        )
        self.conn.commit()
        return config

    def get(self, config_id: str) -> WebhookConfig:
        row = self.conn.execute(
            "SELECT * FROM webhook_configs WHERE id = ?", (config_id,)
        ).fetchone()
        if row is None:
            raise WebhookConfigNotFoundError(config_id)
        return self._row_to_config(row)

    def list_configs(self) -> list[WebhookConfig]:
        rows = self.conn.execute(
            "SELECT * FROM webhook_configs ORDER BY created_at, rowid"
        ).fetchall()
        return [self._row_to_config(r) for r in rows]

    def update(self, config_id: str, **changes: str | None) -> WebhookConfig:
        unknown = set(changes) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        for field in ("name", "url"):
            if field in changes and not changes[field]:
                raise ValueError(f"{field} must not be empty")
        current = self.get(config_id)
        if changes.get("url"):
            changes["url"] = self._canonical(changes["url"] or "")
        updated = current.model_copy(update=changes)
        self.conn.execute(
            """UPDATE webhook_configs SET name=?, url=?, api_secret=?, description=?
               WHERE id=?""",
            (updated.name, updated.url, updated.api_secret, updated.description, config_id),
        )
        self.conn.commit()
        return updated

    def delete(self, config_id: str) -> None:
        cursor = self.conn.execute("DELETE FROM webhook_configs WHERE id = ?", (config_id,))
        self.conn.commit()
        if cursor.rowcount == 0:
            raise WebhookConfigNotFoundError(config_id)

    def set_active(self, config_id: str) -> WebhookConfig:
        """Activate ``config_id`` and deactivate every other config."""
        self.get(config_id)
        with self.conn:
            self.conn.execute("UPDATE webhook_configs SET is_active = 0 WHERE is_active = 1")
            self.conn.execute(
                "UPDATE webhook_configs SET is_active = 1 WHERE id = ?", (config_id,)
            )
        return self.get(config_id)

    def clear_active(self) -> None:
        self.conn.execute("UPDATE webhook_configs SET is_active = 0 WHERE is_active = 1")
        self.conn.commit()

    def get_active(self) -> WebhookConfig | None:
        row = self.conn.execute(
            "SELECT * FROM webhook_configs WHERE is_active = 1 LIMIT 1"
        ).fetchone()
        return self._row_to_config(row) if row else None

    def touch(self, config_id: str) -> None:
        """Record that ``config_id`` was just used for a send."""
        self.conn.execute(
            "UPDATE webhook_configs SET last_used = ? WHERE id = ?",
            (datetime.now(UTC).isoformat(), config_id),
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()
