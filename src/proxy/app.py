"""FastAPI application for the chat relay."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.audit.logger import AuditLogger
from src.chat.store import ChatMessageStore
from src.config import RelaySettings
from src.configs.store import WebhookConfigNotFoundError, WebhookConfigStore
from src.proxy.management_routes import create_management_router
from src.proxy.secret_middleware import SharedSecretMiddleware
from src.proxy.webhook_routes import create_webhook_router
from src.queue.db import QueueDB
from src.queue.manager import MessageQueue, QueueItemNotFoundError, QueueWorker
from src.webhook.dispatcher import WebhookDispatcher
from src.webhook.url_validator import WebhookURLError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = RelaySettings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    return create_app(settings, AuditLogger.from_settings(settings))


def create_app(
    settings: RelaySettings,
    audit_logger: AuditLogger | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    run_worker: bool = True,
) -> FastAPI:
    """Create the relay app and wire its stores, queue and dispatcher.

    ``transport`` replaces the network for outbound webhook calls. The queue
    worker runs for the lifetime of the app when ``run_worker`` is set.
    """
    dispatcher = WebhookDispatcher(settings, audit_logger, transport)
    config_store = WebhookConfigStore(settings.db_path, settings.allowed_domains)
    chat_store = ChatMessageStore(settings.db_path)
    queue_db = QueueDB(settings.db_path)
    queue = MessageQueue(
        queue_db,
        dispatcher,
        audit_logger,
        config_provider=config_store.get_active,
    )
    worker = QueueWorker(queue, settings.queue_poll_interval_ms)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if run_worker:
            worker.start()
        try:
            yield
        finally:
            await worker.stop()
            queue_db.close()
            config_store.close()
            chat_store.close()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.queue = queue
    app.state.config_store = config_store
    app.state.chat_store = chat_store

    app.include_router(
        create_webhook_router(settings, dispatcher, queue, config_store, chat_store),
    )
    app.include_router(create_management_router(queue, config_store, chat_store))

    @app.exception_handler(WebhookConfigNotFoundError)
    async def config_not_found(request: Request, exc: WebhookConfigNotFoundError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(QueueItemNotFoundError)
    async def queue_item_not_found(request: Request, exc: QueueItemNotFoundError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(WebhookURLError)
    async def invalid_webhook_url(request: Request, exc: WebhookURLError) -> JSONResponse:
        return JSONResponse({"error": str(exc), "kind": exc.kind.value}, status_code=400)

    if settings.webhook_secret:
        app.add_middleware(
            SharedSecretMiddleware,
            secret=settings.webhook_secret,
            audit_logger=audit_logger,
        )
    else:
        logger.warning("WEBHOOK_SECRET is not set; management endpoints are unprotected")

    # Added last so preflight requests are answered before the secret check
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Webhook-Secret"],
    )

    return app
