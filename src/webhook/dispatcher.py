"""Webhook dispatcher: delivers a payload and normalizes the outcome.

Per send: resolve target and secret, validate the URL, pick a transport
path, POST, and map the HTTP/network outcome to a ``WebhookResult``.
``send`` and ``check_health`` never raise; retries belong to the queue.

Transport paths:
- DIRECT   POST straight to the target (always used for local targets)
- PROXY    POST ``{webhookUrl, apiSecret, payload}`` to ``<APP_URL>/api/webhook/proxy``
- FUNCTION POST the payload with routing fields to a managed send function
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import httpx

from src.config import USER_AGENT, PayloadFormat, RelaySettings
from src.models import (
    AuditEvent,
    AuditEventType,
    BotMessage,
    RiskLevel,
    WebhookConfig,
    WebhookPayload,
    WebhookResult,
)
from src.webhook.extractor import extract_response
from src.webhook.url_validator import WebhookURLError, validate_webhook_url

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
HEALTH_TIMEOUT_MS = 5_000
MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 120_000

HEALTH_CHECK_MESSAGE = "__health_check__"
PROXY_PATH = "/api/webhook/proxy"
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
_TIMEOUT_RE = re.compile(r"[0-9]+")


class TransportPath(str, Enum):
    DIRECT = "direct"
    PROXY = "proxy"
    FUNCTION = "function"


def _parse_timeout(raw: str | int | None) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    text = str(raw)
    if not _TIMEOUT_RE.fullmatch(text):
        return None
    value = int(text)
    if MIN_TIMEOUT_MS <= value <= MAX_TIMEOUT_MS:
        return value
    return None


def resolve_timeout_ms(raw: str | int | None, default: int = DEFAULT_TIMEOUT_MS) -> int:
    """Configured timeout if it is an integer in [1000, 120000], else ``default``."""
    value = _parse_timeout(raw)
    return default if value is None else value


def resolve_health_timeout_ms(raw: str | int | None) -> int:
    """Half the configured timeout, capped at 5000 ms."""
    value = _parse_timeout(raw)
    if value is None:
        return HEALTH_TIMEOUT_MS
    return min(value // 2, HEALTH_TIMEOUT_MS)


def describe_http_error(status_code: int) -> str:
    if status_code == 401:
        return "Unauthorized - check webhook authentication credentials"
    if status_code == 403:
        return "Access denied - check webhook authentication and permissions"
    if status_code == 404:
        return "Webhook not found - verify the URL and ensure the workflow is active"
    return f"Failed to deliver message to webhook (HTTP {status_code})"


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def decode_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


@dataclass(frozen=True)
class _Target:
    url: str | None
    secret: str | None
    is_custom: bool


@dataclass(frozen=True)
class _Delivery:
    status_code: int | None
    data: Any = None
    error: str | None = None


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of probing one webhook URL."""

    healthy: bool
    status_code: int | None
    message: str
    data: Any = None


class WebhookDispatcher:
    """Sends payloads to the configured webhook and normalizes replies."""

    def __init__(
        self,
        settings: RelaySettings,
        audit_logger: AuditLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._audit = audit_logger
        self._transport = transport

    # --- routing ---

    def _resolve_target(
        self,
        config: WebhookConfig | None,
        url_override: str | None = None,
        secret_override: str | None = None,
    ) -> _Target:
        # The environment secret only ever goes to the environment URL.
        if config is not None and config.url:
            return _Target(config.url, secret_override or config.api_secret, True)
        if url_override:
            return _Target(url_override, secret_override, True)
        return _Target(
            self._settings.webhook_url,
            secret_override or self._settings.webhook_secret,
            False,
        )

    def is_local(self, url: str) -> bool:
        host = urlsplit(url).hostname
        if host in LOCAL_HOSTS:
            return True
        if self._settings.app_url:
            return host == urlsplit(self._settings.app_url).hostname
        return False

    def select_path(self, url: str) -> TransportPath:
        if self._settings.function_url:
            return TransportPath.FUNCTION
        if self._settings.app_url and not self.is_local(url):
            return TransportPath.PROXY
        return TransportPath.DIRECT

    def _headers(self, secret: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if secret:
            headers["X-Webhook-Secret"] = secret
        return headers

    def _outbound_body(self, payload: WebhookPayload) -> dict[str, Any]:
        if self._settings.payload_format == PayloadFormat.SIMPLE:
            return {"message": payload.message.content}
        return payload.to_wire()

    async def _post(
        self,
        url: str,
        body: Any,
        headers: dict[str, str],
        timeout_ms: int,
    ) -> httpx.Response:
        async with httpx.AsyncClient(transport=self._transport) as client:
            return await client.post(url, json=body, headers=headers, timeout=timeout_ms / 1000)

    # --- sending ---

    async def forward(
        self,
        url: str,
        body: Any,
        secret: str | None = None,
        timeout_ms: int | None = None,
    ) -> httpx.Response:
        """Plain POST used by the proxy route. Network errors propagate."""
        timeout = timeout_ms or resolve_timeout_ms(self._settings.timeout)
        return await self._post(url, body, self._headers(secret), timeout)

    async def _deliver(
        self,
        path: TransportPath,
        url: str,
        secret: str | None,
        payload: WebhookPayload,
        timeout_ms: int,
    ) -> _Delivery:
        if path is TransportPath.FUNCTION:
            body = payload.to_wire(include_routing=True)
            body["webhookUrl"] = url
            if secret:
                body["webhookSecret"] = secret
            resp = await self._post(
                self._settings.function_url or "", body, self._headers(secret), timeout_ms,
            )
            data = decode_body(resp)
            if not isinstance(data, dict):
                return _Delivery(resp.status_code, data)
            if _is_success(resp.status_code):
                return _Delivery(resp.status_code, data.get("botMessage"))
            return _Delivery(resp.status_code, data, data.get("error"))

        if path is TransportPath.PROXY:
            proxy_url = f"{(self._settings.app_url or '').rstrip('/')}{PROXY_PATH}"
            envelope_body = {
                "webhookUrl": url,
                "apiSecret": secret,
                "payload": self._outbound_body(payload),
            }
            # Shared secret for the relay's own proxy route
            resp = await self._post(
                proxy_url, envelope_body, self._headers(self._settings.webhook_secret), timeout_ms,
            )
            envelope = decode_body(resp)
            if not isinstance(envelope, dict):
                return _Delivery(resp.status_code, envelope)
            if isinstance(envelope.get("status"), int):
                return _Delivery(envelope["status"], envelope.get("data"))
            if not _is_success(resp.status_code):
                return _Delivery(resp.status_code, envelope, envelope.get("error"))
            return _Delivery(None, None, envelope.get("error") or "Webhook proxy request failed")

        resp = await self._post(url, self._outbound_body(payload), self._headers(secret), timeout_ms)
        return _Delivery(resp.status_code, decode_body(resp))

    async def send(
        self,
        payload: WebhookPayload,
        config: WebhookConfig | None = None,
    ) -> WebhookResult:
        """Deliver ``payload``; every failure comes back as ``success=False``."""
        target = self._resolve_target(config, payload.webhook_url, payload.webhook_secret)
        if not target.url:
            logger.error("No webhook URL configured for message %s", payload.message_id)
            return self._failure(payload, "Webhook URL not configured", retryable=False)

        try:
            url = validate_webhook_url(
                target.url,
                is_custom=target.is_custom,
                allowed_domains=self._settings.allowed_domains,
            )
        except WebhookURLError as exc:
            logger.warning("Rejected webhook URL (%s): %s", exc.kind.value, exc)
            self._log_event(
                AuditEventType.URL_REJECTED, "validate_url", "rejected", RiskLevel.MEDIUM,
                payload.message_id, {"kind": exc.kind.value},
            )
            return self._failure(payload, str(exc), retryable=False)

        timeout_ms = resolve_timeout_ms(self._settings.timeout)
        path = self.select_path(url)
        host = urlsplit(url).hostname

        try:
            delivery = await self._deliver(path, url, target.secret, payload, timeout_ms)
        except httpx.TimeoutException:
            error = f"Webhook request timed out after {timeout_ms} ms"
            delivery = _Delivery(None, None, error)
        except httpx.RequestError as exc:
            delivery = _Delivery(None, None, f"Failed to connect to webhook: {exc}")

        if delivery.status_code is None or not _is_success(delivery.status_code):
            error = delivery.error or describe_http_error(delivery.status_code or 0)
            logger.warning(
                "Webhook delivery failed for message %s via %s to %s: %s",
                payload.message_id, path.value, host, error,
            )
            self._log_event(
                AuditEventType.WEBHOOK_FAILURE, f"send:{path.value}", "failure", RiskLevel.MEDIUM,
                payload.message_id, {"host": host, "status_code": delivery.status_code},
            )
            return self._failure(payload, error, status_code=delivery.status_code)

        extracted = extract_response(delivery.data)
        bot_message = None
        if extracted.content is not None:
            bot_message = BotMessage(
                content=extracted.content,
                source=extracted.source,
                metadata={"originalResponse": delivery.data},
            )
        logger.info(
            "Delivered message %s via %s (HTTP %s, reply=%s)",
            payload.message_id, path.value, delivery.status_code, bot_message is not None,
        )
        self._log_event(
            AuditEventType.WEBHOOK_SEND, f"send:{path.value}", "success", RiskLevel.INFO,
            payload.message_id, {"host": host, "status_code": delivery.status_code},
        )
        return WebhookResult(
            success=True,
            message_id=payload.message_id,
            bot_message=bot_message,
            status_code=delivery.status_code,
        )

    # --- health ---

    async def probe(
        self,
        url: str,
        secret: str | None = None,
        body: Any = None,
        timeout_ms: int | None = None,
    ) -> ProbeResult:
        """POST a probe body to ``url`` and report whether it answered 2xx."""
        if body is None:
            body = {"message": HEALTH_CHECK_MESSAGE}
        timeout = timeout_ms or resolve_health_timeout_ms(self._settings.timeout)
        try:
            resp = await self._post(url, body, self._headers(secret), timeout)
        except httpx.TimeoutException:
            return ProbeResult(False, None, "Webhook request timed out")
        except httpx.RequestError:
            return ProbeResult(False, None, "Cannot reach webhook URL")

        healthy = _is_success(resp.status_code)
        message = "Webhook is responding" if healthy else f"Webhook returned {resp.status_code}"
        return ProbeResult(healthy, resp.status_code, message, decode_body(resp))

    async def check_health(self, config: WebhookConfig | None = None) -> bool:
        """True when the target answers a probe with 2xx. Never raises."""
        target = self._resolve_target(config)
        if not target.url:
            return False
        try:
            url = validate_webhook_url(
                target.url,
                is_custom=target.is_custom,
                allowed_domains=self._settings.allowed_domains,
            )
        except WebhookURLError:
            return False

        if self._settings.skip_external_health_check or self.select_path(url) is TransportPath.PROXY:
            # Format check only; no traffic to the production workflow.
            healthy = True
        else:
            healthy = (await self.probe(url, target.secret)).healthy

        self._log_event(
            AuditEventType.HEALTH_CHECK, "check_health",
            "success" if healthy else "failure", RiskLevel.INFO,
            None, {"host": urlsplit(url).hostname},
        )
        return healthy

    # --- helpers ---

    def _failure(
        self,
        payload: WebhookPayload,
        error: str,
        status_code: int | None = None,
        retryable: bool = True,
    ) -> WebhookResult:
        return WebhookResult(
            success=False,
            message_id=payload.message_id,
            error=error,
            status_code=status_code,
            retryable=retryable,
        )

    def _log_event(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel,
        message_id: str | None,
        details: dict[str, object],
    ) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=event_type,
                action=action,
                result=result,
                risk_level=risk_level,
                message_id=message_id,
                details=details,
            ))
