"""Runtime settings read from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

VERSION = "1.0.0"
USER_AGENT = f"n8n-chat-relay/{VERSION}"


class PayloadFormat(str, Enum):
    FULL = "full"
    SIMPLE = "simple"


def _parse_bool(raw: str | None) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


def _parse_domains(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(d.strip().lower() for d in raw.split(",") if d.strip())


class RelaySettings(BaseModel):
    """Environment-level defaults for the relay.

    ``timeout`` keeps the raw configured value. The dispatcher resolves it per
    request and uses the default when it is missing or out of range.
    """

    model_config = ConfigDict(frozen=True)

    webhook_url: str | None = None
    webhook_secret: str | None = None
    timeout: str | None = None
    allowed_domains: tuple[str, ...] = ()
    skip_external_health_check: bool = False
    app_url: str | None = None
    function_url: str | None = None
    payload_format: PayloadFormat = PayloadFormat.FULL
    data_dir: str = "data"
    audit_log_path: str | None = None
    audit_log_max_bytes: int = Field(default=10_485_760, gt=0)
    audit_log_backup_count: int = Field(default=5, ge=1)
    queue_poll_interval_ms: int = Field(default=1000, ge=50)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelaySettings:
        """Build settings from ``os.environ`` (or the given mapping)."""
        env = os.environ if environ is None else environ
        return cls(
            webhook_url=env.get("N8N_WEBHOOK_URL") or None,
            webhook_secret=env.get("WEBHOOK_SECRET") or None,
            timeout=env.get("TIMEOUT") or None,
            allowed_domains=_parse_domains(env.get("ALLOWED_WEBHOOK_DOMAINS")),
            skip_external_health_check=_parse_bool(env.get("SKIP_EXTERNAL_HEALTH_CHECK")),
            app_url=env.get("APP_URL") or None,
            function_url=env.get("WEBHOOK_FUNCTION_URL") or None,
            payload_format=PayloadFormat(
                env.get("WEBHOOK_PAYLOAD_FORMAT", PayloadFormat.FULL.value).strip().lower(),
            ),
            data_dir=env.get("DATA_DIR", "data"),
            audit_log_path=env.get("AUDIT_LOG_PATH") or None,
            audit_log_max_bytes=int(env.get("AUDIT_LOG_MAX_BYTES", "10485760")),
            audit_log_backup_count=int(env.get("AUDIT_LOG_BACKUP_COUNT", "5")),
            queue_poll_interval_ms=int(env.get("QUEUE_POLL_INTERVAL_MS", "1000")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def db_path(self) -> str:
        return str(Path(self.data_dir) / "relay.db")
