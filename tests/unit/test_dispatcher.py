"""Tests for WebhookDispatcher routing, delivery and health checks."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.config import USER_AGENT, PayloadFormat
from src.models import AuditEventType, WebhookConfig
from src.webhook.dispatcher import (
    HEALTH_CHECK_MESSAGE,
    ProbeResult,
    TransportPath,
    WebhookDispatcher,
    describe_http_error,
    resolve_health_timeout_ms,
    resolve_timeout_ms,
)
from tests.conftest import WEBHOOK_URL, json_transport, make_payload, make_settings


def _make_config(**kwargs: Any) -> WebhookConfig:
    defaults: dict[str, Any] = {
        "id": "cfg-1",
        "name": "Custom",
        "url": "https://custom.example.org/webhook/abc",
    }
    defaults.update(kwargs)
    return WebhookConfig(**defaults)


def _raising_transport(exc: Exception) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc

    return httpx.MockTransport(handler)


class TestTimeouts:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("500", 10_000),
            ("5000", 5000),
            ("1000", 1000),
            ("120000", 120_000),
            ("120001", 10_000),
            ("abc", 10_000),
            ("", 10_000),
            (None, 10_000),
            (30_000, 30_000),
            ("1_5000", 10_000),
            ("+5000", 10_000),
            (" 5000 ", 10_000),
            ("-5000", 10_000),
        ],
    )
    def test_resolve_timeout(self, raw: Any, expected: int) -> None:
        assert resolve_timeout_ms(raw) == expected

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("4000", 2000), ("20000", 5000), ("500", 5000), (None, 5000)],
    )
    def test_resolve_health_timeout(self, raw: Any, expected: int) -> None:
        assert resolve_health_timeout_ms(raw) == expected


class TestDescribeHttpError:
    def test_unauthorized(self) -> None:
        assert "Unauthorized" in describe_http_error(401)

    def test_forbidden(self) -> None:
        assert "Access denied" in describe_http_error(403)

    def test_not_found(self) -> None:
        message = describe_http_error(404)
        assert "not found" in message
        assert "verify" in message

    def test_other(self) -> None:
        assert describe_http_error(500) == "Failed to deliver message to webhook (HTTP 500)"


class TestRouting:
    def test_direct_by_default(self) -> None:
        dispatcher = WebhookDispatcher(make_settings())
        assert dispatcher.select_path(WEBHOOK_URL) is TransportPath.DIRECT

    def test_proxy_for_external_target_when_app_url_set(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(app_url="https://chat.example.com"))
        assert dispatcher.select_path(WEBHOOK_URL) is TransportPath.PROXY

    @pytest.mark.parametrize(
        "url",
        ["http://localhost:5678/webhook/x", "http://127.0.0.1/x", "https://chat.example.com/x"],
    )
    def test_local_target_goes_direct(self, url: str) -> None:
        dispatcher = WebhookDispatcher(make_settings(app_url="https://chat.example.com"))
        assert dispatcher.select_path(url) is TransportPath.DIRECT

    def test_function_url_takes_precedence(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(
            app_url="https://chat.example.com",
            function_url="https://fn.example.com/send",
        ))
        assert dispatcher.select_path(WEBHOOK_URL) is TransportPath.FUNCTION


class TestSend:
    @pytest.mark.asyncio
    async def test_success_extracts_bot_message(self) -> None:
        requests: list[httpx.Request] = []
        dispatcher = WebhookDispatcher(
            make_settings(),
            transport=json_transport({"message": "hello back"}, requests=requests),
        )
        result = await dispatcher.send(make_payload(message={"content": "hi"}))

        assert result.success is True
        assert result.bot_message is not None
        assert result.bot_message.content == "hello back"
        assert result.bot_message.metadata == {"originalResponse": {"message": "hello back"}}
        assert result.status_code == 200
        assert len(requests) == 1
        assert str(requests[0].url) == WEBHOOK_URL
        assert requests[0].headers["user-agent"] == USER_AGENT

    @pytest.mark.asyncio
    async def test_success_without_reply_text(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(), transport=json_transport({"ok": True}))
        result = await dispatcher.send(make_payload())
        assert result.success is True
        assert result.bot_message is None

    @pytest.mark.asyncio
    async def test_not_found_maps_to_guidance(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(), transport=json_transport({}, 404))
        result = await dispatcher.send(make_payload())

        assert result.success is False
        assert result.retryable is True
        assert result.status_code == 404
        assert "not found" in (result.error or "")
        assert "verify" in (result.error or "")

    @pytest.mark.asyncio
    async def test_full_payload_omits_routing_fields(self) -> None:
        requests: list[httpx.Request] = []
        dispatcher = WebhookDispatcher(make_settings(), transport=json_transport({}, requests=requests))
        await dispatcher.send(make_payload(webhookSecret="s3cret"))

        body = json.loads(requests[0].content)
        assert body["sessionId"] == "session-1"
        assert body["message"]["content"] == "Hello there"
        assert "webhookSecret" not in body
        assert "webhookUrl" not in body

    @pytest.mark.asyncio
    async def test_simple_payload_format(self) -> None:
        requests: list[httpx.Request] = []
        dispatcher = WebhookDispatcher(
            make_settings(payload_format=PayloadFormat.SIMPLE),
            transport=json_transport({}, requests=requests),
        )
        await dispatcher.send(make_payload())
        assert json.loads(requests[0].content) == {"message": "Hello there"}

    @pytest.mark.asyncio
    async def test_missing_url_is_not_retryable(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(webhook_url=None))
        result = await dispatcher.send(make_payload())
        assert result.success is False
        assert result.retryable is False
        assert result.error == "Webhook URL not configured"

    @pytest.mark.asyncio
    async def test_rejected_domain_is_audited(self, mock_audit_logger: MagicMock) -> None:
        requests: list[httpx.Request] = []
        dispatcher = WebhookDispatcher(
            make_settings(allowed_domains=("allowed.com",)),
            audit_logger=mock_audit_logger,
            transport=json_transport({}, requests=requests),
        )
        result = await dispatcher.send(make_payload(), _make_config())

        assert result.success is False
        assert result.retryable is False
        assert requests == []
        event = mock_audit_logger.log.call_args[0][0]
        assert event.event_type == AuditEventType.URL_REJECTED
        assert event.details == {"kind": "domain_not_allowed"}

    @pytest.mark.asyncio
    async def test_timeout_reports_configured_duration(self) -> None:
        dispatcher = WebhookDispatcher(
            make_settings(timeout="3000"),
            transport=_raising_transport(httpx.ReadTimeout("slow")),
        )
        result = await dispatcher.send(make_payload())
        assert result.success is False
        assert result.retryable is True
        assert result.error == "Webhook request timed out after 3000 ms"

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        dispatcher = WebhookDispatcher(
            make_settings(),
            transport=_raising_transport(httpx.ConnectError("refused")),
        )
        result = await dispatcher.send(make_payload())
        assert result.success is False
        assert (result.error or "").startswith("Failed to connect to webhook")

    @pytest.mark.asyncio
    async def test_audits_success(self, mock_audit_logger: MagicMock) -> None:
        dispatcher = WebhookDispatcher(
            make_settings(), audit_logger=mock_audit_logger, transport=json_transport("ok"),
        )
        await dispatcher.send(make_payload())
        event = mock_audit_logger.log.call_args[0][0]
        assert event.event_type == AuditEventType.WEBHOOK_SEND
        assert event.message_id == "msg_test_1"
        assert event.details["host"] == "n8n.example.com"


class TestSecrets:
    @pytest.mark.asyncio
    async def test_environment_secret_sent_to_environment_url(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(webhook_secret="env-secret"))
        with patch.object(dispatcher, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, json={})
            await dispatcher.send(make_payload())
        headers = mock_post.call_args[0][2]
        assert headers["X-Webhook-Secret"] == "env-secret"

    @pytest.mark.asyncio
    async def test_environment_secret_not_sent_to_custom_config(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(webhook_secret="env-secret"))
        with patch.object(dispatcher, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, json={})
            await dispatcher.send(make_payload(), _make_config())
        url, _, headers, _ = mock_post.call_args[0]
        assert url == "https://custom.example.org/webhook/abc"
        assert "X-Webhook-Secret" not in headers

    @pytest.mark.asyncio
    async def test_environment_secret_not_sent_to_payload_override(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(webhook_secret="env-secret"))
        payload = make_payload(webhookUrl="https://other.example.net/hook")
        with patch.object(dispatcher, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, json={})
            await dispatcher.send(payload)
        url, _, headers, _ = mock_post.call_args[0]
        assert url == "https://other.example.net/hook"
        assert "X-Webhook-Secret" not in headers

    @pytest.mark.asyncio
    async def test_config_secret_is_sent(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(webhook_secret="env-secret"))
        with patch.object(dispatcher, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, json={})
            await dispatcher.send(make_payload(), _make_config(api_secret="cfg-secret"))
        assert mock_post.call_args[0][2]["X-Webhook-Secret"] == "cfg-secret"

    @pytest.mark.asyncio
    async def test_payload_secret_overrides_config_secret(self) -> None:
        dispatcher = WebhookDispatcher(make_settings())
        with patch.object(dispatcher, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, json={})
            await dispatcher.send(
                make_payload(webhookSecret="explicit"),
                _make_config(api_secret="cfg-secret"),
            )
        assert mock_post.call_args[0][2]["X-Webhook-Secret"] == "explicit"


class TestProxyPath:
    @pytest.mark.asyncio
    async def test_envelope_is_posted_to_app_proxy(self) -> None:
        requests: list[httpx.Request] = []
        reply = {"success": True, "status": 200, "data": {"output": "proxied hi"}}
        dispatcher = WebhookDispatcher(
            make_settings(app_url="https://chat.example.com/"),
            transport=json_transport(reply, requests=requests),
        )
        result = await dispatcher.send(make_payload(), _make_config(api_secret="cfg-secret"))

        assert result.success is True
        assert result.bot_message is not None
        assert result.bot_message.content == "proxied hi"
        assert str(requests[0].url) == "https://chat.example.com/api/webhook/proxy"
        envelope = json.loads(requests[0].content)
        assert envelope["webhookUrl"] == "https://custom.example.org/webhook/abc"
        assert envelope["apiSecret"] == "cfg-secret"
        assert envelope["payload"]["messageId"] == "msg_test_1"
        assert "x-webhook-secret" not in requests[0].headers

    @pytest.mark.asyncio
    async def test_relay_secret_authenticates_proxy_hop(self) -> None:
        requests: list[httpx.Request] = []
        reply = {"success": True, "status": 200, "data": {"output": "ok"}}
        dispatcher = WebhookDispatcher(
            make_settings(app_url="https://chat.example.com", webhook_secret="relay-secret"),
            transport=json_transport(reply, requests=requests),
        )
        await dispatcher.send(make_payload(), _make_config(api_secret="cfg-secret"))

        assert requests[0].headers["x-webhook-secret"] == "relay-secret"
        assert json.loads(requests[0].content)["apiSecret"] == "cfg-secret"

    @pytest.mark.asyncio
    async def test_remote_status_is_unwrapped(self) -> None:
        reply = {"success": False, "status": 403, "data": "forbidden"}
        dispatcher = WebhookDispatcher(
            make_settings(app_url="https://chat.example.com"),
            transport=json_transport(reply),
        )
        result = await dispatcher.send(make_payload())
        assert result.success is False
        assert result.status_code == 403
        assert "Access denied" in (result.error or "")

    @pytest.mark.asyncio
    async def test_proxy_network_error(self) -> None:
        reply = {"success": False, "error": "Webhook request timed out", "timeout": True}
        dispatcher = WebhookDispatcher(
            make_settings(app_url="https://chat.example.com"),
            transport=json_transport(reply),
        )
        result = await dispatcher.send(make_payload())
        assert result.success is False
        assert result.error == "Webhook request timed out"


class TestFunctionPath:
    @pytest.mark.asyncio
    async def test_routing_fields_are_sent_to_function(self) -> None:
        requests: list[httpx.Request] = []
        reply = {"success": True, "botMessage": {"content": "from function"}}
        dispatcher = WebhookDispatcher(
            make_settings(function_url="https://fn.example.com/send"),
            transport=json_transport(reply, requests=requests),
        )
        result = await dispatcher.send(make_payload(), _make_config(api_secret="cfg-secret"))

        assert result.success is True
        assert result.bot_message is not None
        assert result.bot_message.content == "from function"
        body = json.loads(requests[0].content)
        assert str(requests[0].url) == "https://fn.example.com/send"
        assert body["webhookUrl"] == "https://custom.example.org/webhook/abc"
        assert body["webhookSecret"] == "cfg-secret"

    @pytest.mark.asyncio
    async def test_function_error_is_reported(self) -> None:
        dispatcher = WebhookDispatcher(
            make_settings(function_url="https://fn.example.com/send"),
            transport=json_transport({"error": "upstream exploded"}, 500),
        )
        result = await dispatcher.send(make_payload())
        assert result.success is False
        assert result.error == "upstream exploded"


class TestHealth:
    @pytest.mark.asyncio
    async def test_probe_sends_health_check_message(self) -> None:
        requests: list[httpx.Request] = []
        dispatcher = WebhookDispatcher(make_settings(), transport=json_transport({}, requests=requests))
        result = await dispatcher.probe(WEBHOOK_URL)
        assert result.healthy is True
        assert result.message == "Webhook is responding"
        assert json.loads(requests[0].content) == {"message": HEALTH_CHECK_MESSAGE}

    @pytest.mark.asyncio
    async def test_probe_non_2xx(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(), transport=json_transport({}, 500))
        result = await dispatcher.probe(WEBHOOK_URL)
        assert result.healthy is False
        assert result.status_code == 500
        assert result.message == "Webhook returned 500"

    @pytest.mark.asyncio
    async def test_probe_unreachable(self) -> None:
        dispatcher = WebhookDispatcher(
            make_settings(), transport=_raising_transport(httpx.ConnectError("down")),
        )
        result = await dispatcher.probe(WEBHOOK_URL)
        assert result == ProbeResult(False, None, "Cannot reach webhook URL")

    @pytest.mark.asyncio
    async def test_check_health_probes_target(self, mock_audit_logger: MagicMock) -> None:
        dispatcher = WebhookDispatcher(
            make_settings(), audit_logger=mock_audit_logger, transport=json_transport({}),
        )
        assert await dispatcher.check_health() is True
        event = mock_audit_logger.log.call_args[0][0]
        assert event.event_type == AuditEventType.HEALTH_CHECK

    @pytest.mark.asyncio
    async def test_check_health_skip_sends_nothing(self) -> None:
        requests: list[httpx.Request] = []
        dispatcher = WebhookDispatcher(
            make_settings(skip_external_health_check=True),
            transport=json_transport({}, 500, requests=requests),
        )
        assert await dispatcher.check_health() is True
        assert requests == []

    @pytest.mark.asyncio
    async def test_check_health_without_url(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(webhook_url=None))
        assert await dispatcher.check_health() is False

    @pytest.mark.asyncio
    async def test_check_health_invalid_url(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(webhook_url="ftp://n8n.example.com"))
        assert await dispatcher.check_health() is False

    @pytest.mark.asyncio
    async def test_check_health_unhealthy(self) -> None:
        dispatcher = WebhookDispatcher(make_settings(), transport=json_transport({}, 502))
        assert await dispatcher.check_health() is False
