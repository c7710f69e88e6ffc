"""Chat-facing endpoints: send, same-origin proxy, health and test pings."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.config import VERSION, RelaySettings
from src.models import ChatMessage, MessageStatus, WebhookPayload, WebhookResult
from src.webhook.dispatcher import decode_body, resolve_timeout_ms
from src.webhook.url_validator import WebhookURLError, validate_webhook_url

if TYPE_CHECKING:
    from src.chat.store import ChatMessageStore
    from src.configs.store import WebhookConfigStore
    from src.queue.manager import MessageQueue
    from src.webhook.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

TEST_MESSAGE = "This is a test message from the chat interface"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _canonical_or_none(url: str | None) -> str | None:
    if not url:
        return None
    try:
        return validate_webhook_url(url)
    except WebhookURLError:
        return None


def _result_response(result: WebhookResult) -> JSONResponse:
    return JSONResponse(
        result.model_dump(mode="json", by_alias=True, exclude_none=True),
        status_code=200 if result.success else 502,
    )


def create_webhook_router(
    settings: RelaySettings,
    dispatcher: WebhookDispatcher,
    queue: MessageQueue,
    config_store: WebhookConfigStore,
    chat_store: ChatMessageStore,
) -> APIRouter:
    """Create the router for message delivery and health endpoints."""
    router = APIRouter(prefix="/api")

    @router.post("/webhook/send")
    async def send(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if body is None:
            return JSONResponse(
                {"success": False, "error": "Request body must be JSON"},
                status_code=400,
            )
        try:
            payload = WebhookPayload.model_validate(body)
        except ValidationError as e:
            return JSONResponse(
                {
                    "success": False,
                    "error": "Invalid payload format",
                    "details": json.loads(e.json(include_url=False)),
                },
                status_code=400,
            )

        config = config_store.get_active()
        result = await dispatcher.send(payload, config)
        if config is not None:
            config_store.touch(config.id)

        chat_store.append(ChatMessage(
            id=payload.message_id,
            session_id=payload.session_id,
            type=payload.message.type,
            content=payload.message.content,
            timestamp=payload.timestamp,
            user_id=payload.user.id,
            source=payload.context.source.value if payload.context else None,
            status=MessageStatus.DELIVERED if result.success else MessageStatus.FAILED,
        ))
        if result.bot_message is not None:
            chat_store.append(ChatMessage(
                session_id=payload.session_id,
                content=result.bot_message.content,
                timestamp=result.timestamp,
                user_id="bot",
                is_bot=True,
                source=result.bot_message.source,
                metadata=result.bot_message.metadata,
            ))

        if not result.success and result.retryable:
            queue.enqueue(payload)
            queue.record_failure(payload.message_id, result.error or "Unknown error")
            logger.info("Queued message %s for retry", payload.message_id)

        return _result_response(result)

    @router.post("/webhook/proxy")
    async def proxy(request: Request) -> JSONResponse:
        """Forward a payload to a webhook on the browser's behalf."""
        body = await _json_body(request)
        webhook_url = body.get("webhookUrl") if isinstance(body, dict) else None
        if not isinstance(webhook_url, str) or not webhook_url:
            return JSONResponse(
                {"success": False, "error": "Webhook URL is required"},
                status_code=400,
            )
        # The environment webhook is preconfigured, not user-supplied.
        is_custom = _canonical_or_none(webhook_url) != _canonical_or_none(settings.webhook_url)
        try:
            url = validate_webhook_url(
                webhook_url, is_custom=is_custom, allowed_domains=settings.allowed_domains,
            )
        except WebhookURLError as e:
            return JSONResponse(
                {"success": False, "error": str(e), "kind": e.kind.value},
                status_code=400,
            )

        try:
            resp = await dispatcher.forward(url, body.get("payload"), body.get("apiSecret"))
        except httpx.TimeoutException:
            return JSONResponse(
                {"success": False, "error": "Webhook request timed out", "timeout": True},
            )
        except httpx.RequestError as e:
            logger.warning("Proxy request to %s failed: %s", url, e)
            return JSONResponse(
                {"success": False, "error": f"Failed to connect to webhook: {e}"},
            )

        return JSONResponse({
            "success": 200 <= resp.status_code < 300,
            "status": resp.status_code,
            "statusText": resp.reason_phrase,
            "data": decode_body(resp),
            "timestamp": _now_iso(),
        })

    @router.get("/health")
    async def health() -> JSONResponse:
        config = config_store.get_active()
        webhook_ok = False
        if config is not None or settings.webhook_url:
            webhook_ok = await dispatcher.check_health(config)
        return JSONResponse(
            {
                "status": "healthy" if webhook_ok else "unhealthy",
                "checks": {"api": True, "webhook": webhook_ok, "timestamp": _now_iso()},
                "version": VERSION,
            },
            status_code=200 if webhook_ok else 503,
        )

    @router.post("/health")
    async def check_url(request: Request) -> JSONResponse:
        """Probe an arbitrary webhook URL supplied by the client."""
        body = await _json_body(request)
        raw_url = body.get("url") if isinstance(body, dict) else None
        if not isinstance(raw_url, str) or not raw_url:
            return JSONResponse(
                {"status": "error", "message": "Webhook URL is required"},
                status_code=400,
            )
        try:
            url = validate_webhook_url(
                raw_url, is_custom=True, allowed_domains=settings.allowed_domains,
            )
        except WebhookURLError as e:
            return JSONResponse({"status": "error", "message": str(e)}, status_code=400)

        if settings.skip_external_health_check:
            return JSONResponse({
                "status": "healthy",
                "message": "URL format is valid (external checks disabled)",
            })

        probe = await dispatcher.probe(url, body.get("secret"))
        if not probe.healthy:
            return JSONResponse(
                {"status": "error", "message": probe.message, "statusCode": probe.status_code},
                status_code=503,
            )
        return JSONResponse(
            {"status": "healthy", "message": probe.message, "statusCode": probe.status_code},
        )

    @router.post("/test-webhook")
    async def test_webhook(
        health_check: bool = Query(default=False, alias="healthCheck"),
    ) -> JSONResponse:
        if not settings.webhook_url:
            return JSONResponse(
                {"success": False, "error": "N8N_WEBHOOK_URL not configured"},
                status_code=500,
            )
        try:
            url = validate_webhook_url(settings.webhook_url)
        except WebhookURLError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)

        body: dict[str, str] = {} if health_check else {"message": TEST_MESSAGE}
        probe = await dispatcher.probe(
            url, settings.webhook_secret, body, resolve_timeout_ms(settings.timeout),
        )
        if not probe.healthy:
            return JSONResponse(
                {
                    "success": False,
                    "error": probe.message,
                    "status": probe.status_code,
                    "data": probe.data,
                },
                status_code=400,
            )
        return JSONResponse({
            "success": True,
            "status": probe.status_code,
            "data": probe.data,
            "message": "Webhook test successful!",
        })

    return router
