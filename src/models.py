"""Shared Pydantic data models for n8n-chat-relay."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_CONTENT_LENGTH = 10_000


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# --- Enums ---


class MessageType(str, Enum):
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"


class MessageSource(str, Enum):
    WEB = "web"
    MOBILE = "mobile"


class MessageStatus(str, Enum):
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"


class AuditEventType(str, Enum):
    WEBHOOK_SEND = "webhook_send"
    WEBHOOK_FAILURE = "webhook_failure"
    URL_REJECTED = "url_rejected"
    HEALTH_CHECK = "health_check"
    QUEUE_ENQUEUED = "queue_enqueued"
    QUEUE_EXHAUSTED = "queue_exhausted"
    AUTH_FAILURE = "auth_failure"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Outbound payload ---


class _WireModel(BaseModel):
    """Base for models exchanged with browsers and webhooks (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)


class ChatUser(_WireModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str | None = None


class FileAttachment(_WireModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    size: int = Field(ge=0)
    type: str
    data: str  # base64


class MessageBody(_WireModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: MessageType = MessageType.TEXT
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH)
    destination: str | None = None
    metadata: dict[str, Any] | None = None
    file: FileAttachment | None = None

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message content cannot be empty")
        return value


class PayloadContext(_WireModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    previous_messages: int | None = Field(default=None, alias="previousMessages")
    user_agent: str | None = Field(default=None, alias="userAgent")
    source: MessageSource = MessageSource.WEB


class WebhookPayload(_WireModel):
    """Outbound message envelope. Immutable; build a new one per send."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    message_id: str = Field(alias="messageId")
    timestamp: str
    user: ChatUser
    message: MessageBody
    context: PayloadContext | None = None
    webhook_url: str | None = Field(default=None, alias="webhookUrl")
    webhook_secret: str | None = Field(default=None, alias="webhookSecret")

    @classmethod
    def build(
        cls,
        session_id: str,
        user_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        user_name: str | None = None,
        context: PayloadContext | None = None,
    ) -> WebhookPayload:
        """Create a payload with a fresh messageId and the current timestamp."""
        return cls(
            session_id=session_id,
            message_id=f"msg_{uuid.uuid4().hex}",
            timestamp=_now_iso(),
            user=ChatUser(id=user_id, name=user_name),
            message=MessageBody(type=message_type, content=content),
            context=context,
        )

    def to_wire(self, include_routing: bool = False) -> dict[str, Any]:
        """Serialize for the remote webhook.

        Routing overrides (webhookUrl/webhookSecret) are only included when
        the receiver is the managed send function, which routes on them.
        """
        exclude = None if include_routing else {"webhook_url", "webhook_secret"}
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude=exclude)


# --- Destinations ---


class WebhookConfig(_WireModel):
    id: str
    name: str = Field(min_length=1)
    url: str
    api_secret: str | None = Field(default=None, alias="apiSecret")
    is_active: bool = Field(default=False, alias="isActive")
    created_at: str = Field(default_factory=_now_iso, alias="createdAt")
    last_used: str | None = Field(default=None, alias="lastUsed")
    description: str | None = None

    def public_view(self) -> dict[str, Any]:
        """Serialize without the secret."""
        data = self.model_dump(mode="json", by_alias=True, exclude={"api_secret"})
        data["hasSecret"] = bool(self.api_secret)
        return data


# --- Results ---


class NormalizedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str | None = None
    source: str | None = None


class BotMessage(_WireModel):
    content: str
    type: Literal["text"] = "text"
    source: str | None = None
    metadata: dict[str, Any] | None = None


class WebhookResult(_WireModel):
    success: bool
    message_id: str = Field(alias="messageId")
    timestamp: str = Field(default_factory=_now_iso)
    bot_message: BotMessage | None = Field(default=None, alias="botMessage")
    error: str | None = None
    status_code: int | None = Field(default=None, alias="statusCode")
    retryable: bool = True

    @model_validator(mode="after")
    def _failure_has_error(self) -> WebhookResult:
        if not self.success and not self.error:
            raise ValueError("failed WebhookResult must carry an error message")
        return self


class QueuedMessage(_WireModel):
    id: str
    payload: WebhookPayload
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=1, alias="maxAttempts")
    next_retry: int = Field(alias="nextRetry")  # epoch ms
    last_error: str | None = Field(default=None, alias="lastError")

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_ready(self, now_ms: int) -> bool:
        return not self.is_exhausted and self.next_retry <= now_ms


class ChatMessage(_WireModel):
    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex}")
    session_id: str = Field(alias="sessionId")
    type: MessageType = MessageType.TEXT
    content: str
    timestamp: str = Field(default_factory=_now_iso)
    user_id: str = Field(alias="userId")
    is_bot: bool = Field(default=False, alias="isBot")
    source: str | None = None
    status: MessageStatus = MessageStatus.DELIVERED
    metadata: dict[str, Any] | None = None


# --- Audit Models ---


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    action: str
    result: str  # "success" | "failure" | "rejected"
    risk_level: RiskLevel
    message_id: str | None = None
    details: dict[str, object] | None = None
