"""Shared test fixtures for n8n-chat-relay."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from src.audit.logger import AuditLogger
from src.config import RelaySettings
from src.models import (
    AuditEvent,
    AuditEventType,
    RiskLevel,
    WebhookPayload,
)

WEBHOOK_URL = "https://n8n.example.com/webhook/chat"


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Temporary SQLite path shared by the stores under test."""
    return str(tmp_path / "relay.db")


# --- Factory functions for test data ---


def make_settings(**kwargs: Any) -> RelaySettings:
    """Factory for RelaySettings pointing at the test webhook."""
    defaults: dict[str, Any] = {"webhook_url": WEBHOOK_URL}
    defaults.update(kwargs)
    return RelaySettings(**defaults)


def make_payload_dict(**kwargs: Any) -> dict[str, Any]:
    """Wire-format payload as a browser would send it."""
    defaults: dict[str, Any] = {
        "sessionId": "session-1",
        "messageId": "msg_test_1",
        "timestamp": "2026-01-01T00:00:00+00:00",
        "user": {"id": "user-1", "name": "Ada"},
        "message": {"type": "text", "content": "Hello there"},
        "context": {"source": "web", "previousMessages": 2},
    }
    defaults.update(kwargs)
    return defaults


def make_payload(**kwargs: Any) -> WebhookPayload:
    """Factory for WebhookPayload with sensible defaults."""
    return WebhookPayload.model_validate(make_payload_dict(**kwargs))


def make_audit_event(**kwargs: Any) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, Any] = {
        "event_type": AuditEventType.WEBHOOK_FAILURE,
        "action": "test_action",
        "result": "failure",
        "risk_level": RiskLevel.MEDIUM,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)


def json_transport(
    body: Any = None,
    status_code: int = 200,
    requests: list[httpx.Request] | None = None,
) -> httpx.MockTransport:
    """MockTransport answering every request with ``body`` as JSON.

    Requests are appended to ``requests`` when a list is given.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(status_code, json=body)

    return httpx.MockTransport(handler)
