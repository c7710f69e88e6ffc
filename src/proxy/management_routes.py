"""Management endpoints for webhook configs, the retry queue and transcripts."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.models import QueuedMessage

if TYPE_CHECKING:
    from src.chat.store import ChatMessageStore
    from src.configs.store import WebhookConfigStore
    from src.queue.manager import MessageQueue

logger = logging.getLogger(__name__)


class WebhookConfigCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    api_secret: str | None = Field(default=None, alias="apiSecret")
    description: str | None = None
    activate: bool = False


class WebhookConfigUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(default=None, min_length=1)
    url: str | None = Field(default=None, min_length=1)
    api_secret: str | None = Field(default=None, alias="apiSecret")
    description: str | None = None

    @field_validator("name", "url")
    @classmethod
    def _not_null(cls, v: str | None) -> str:
        if v is None:
            raise ValueError("may be omitted but not null")
        return v


def _queue_view(item: QueuedMessage) -> dict[str, Any]:
    data = item.model_dump(
        mode="json",
        by_alias=True,
        exclude={"payload": {"webhook_secret"}},
    )
    data["exhausted"] = item.is_exhausted
    return data


def create_management_router(
    queue: MessageQueue,
    config_store: WebhookConfigStore,
    chat_store: ChatMessageStore,
) -> APIRouter:
    """Create the router for config, queue and transcript management."""
    router = APIRouter(prefix="/api")

    # --- webhook configs ---

    @router.get("/webhooks")
    async def list_webhooks() -> JSONResponse:
        configs = config_store.list_configs()
        active = next((c.id for c in configs if c.is_active), None)
        return JSONResponse({
            "webhooks": [c.public_view() for c in configs],
            "activeWebhookId": active,
        })

    @router.post("/webhooks")
    async def add_webhook(body: WebhookConfigCreate) -> JSONResponse:
        config = config_store.add(body.name, body.url, body.api_secret, body.description)
        if body.activate:
            config = config_store.set_active(config.id)
        logger.info("Added webhook config %s (%s)", config.id, config.name)
        return JSONResponse(config.public_view(), status_code=201)

    @router.patch("/webhooks/{config_id}")
    async def update_webhook(config_id: str, body: WebhookConfigUpdate) -> JSONResponse:
        changes = body.model_dump(exclude_unset=True)
        config = config_store.update(config_id, **changes)
        return JSONResponse(config.public_view())

    @router.delete("/webhooks/active")
    async def deactivate_webhooks() -> JSONResponse:
        """Fall back to the environment webhook."""
        config_store.clear_active()
        return JSONResponse({"activeWebhookId": None})

    @router.delete("/webhooks/{config_id}")
    async def delete_webhook(config_id: str) -> JSONResponse:
        config_store.delete(config_id)
        active = config_store.get_active()
        logger.info("Deleted webhook config %s", config_id)
        return JSONResponse({
            "deleted": config_id,
            "activeWebhookId": active.id if active else None,
        })

    @router.post("/webhooks/{config_id}/activate")
    async def activate_webhook(config_id: str) -> JSONResponse:
        return JSONResponse(config_store.set_active(config_id).public_view())

    # --- retry queue ---

    @router.get("/queue")
    async def list_queue() -> JSONResponse:
        items = queue.items()
        return JSONResponse({
            "items": [_queue_view(i) for i in items],
            "pending": len(queue.pending()),
            "failed": len(queue.failed()),
            "processing": queue.is_processing,
        })

    @router.post("/queue/{item_id}/retry")
    async def retry_item(item_id: str) -> JSONResponse:
        queue.retry(item_id)
        return JSONResponse({"id": item_id, "status": "scheduled"})

    @router.post("/queue/process")
    async def process_queue() -> JSONResponse:
        """Run one delivery attempt now instead of waiting for the worker."""
        result = await queue.process_next()
        if result is None:
            return JSONResponse({"processed": False})
        return JSONResponse({
            "processed": True,
            "result": result.model_dump(mode="json", by_alias=True, exclude_none=True),
        })

    @router.delete("/queue/{item_id}")
    async def remove_item(item_id: str) -> JSONResponse:
        queue.remove(item_id)
        return JSONResponse({"removed": item_id})

    @router.delete("/queue")
    async def clear_queue() -> JSONResponse:
        queue.clear()
        return JSONResponse({"cleared": True})

    # --- transcripts ---

    @router.get("/messages/{session_id}")
    async def list_messages(
        session_id: str,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> JSONResponse:
        messages = chat_store.list_for_session(session_id, limit)
        return JSONResponse({
            "sessionId": session_id,
            "messages": [m.model_dump(mode="json", by_alias=True) for m in messages],
            "total": chat_store.count(session_id),
            "limit": limit,
        })

    return router
