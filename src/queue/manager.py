"""Best-effort retry queue for webhook deliveries.

One ready item is sent per ``process_next`` call so the remote workflow is
never hit by a burst. Failed items are rescheduled from a fixed delay table;
once ``attempts`` reaches ``max_attempts`` the item stays in the queue,
untouched, until ``retry`` or ``clear``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from src.models import (
    AuditEvent,
    AuditEventType,
    QueuedMessage,
    RiskLevel,
    WebhookConfig,
    WebhookPayload,
    WebhookResult,
)
from src.queue.db import QueueDB

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.webhook.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

RETRY_DELAYS = (1000, 2000, 5000, 10000, 30000)  # ms, indexed by prior attempts
DEFAULT_MAX_ATTEMPTS = 5


class QueueItemNotFoundError(Exception):
    """Raised when a queue operation names an id that is not queued."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Queued message not found: {item_id}")


def _now_ms() -> int:
    return int(time.time() * 1000)


def retry_delay_ms(attempts: int) -> int:
    """Delay before the next try, given how many attempts already failed."""
    return RETRY_DELAYS[min(attempts, len(RETRY_DELAYS) - 1)]


class MessageQueue:
    """Persisted queue of payloads waiting for (re)delivery."""

    def __init__(
        self,
        db: QueueDB,
        dispatcher: WebhookDispatcher,
        audit_logger: AuditLogger | None = None,
        config_provider: Callable[[], WebhookConfig | None] | None = None,
    ) -> None:
        self._db = db
        self._dispatcher = dispatcher
        self._audit = audit_logger
        self._config_provider = config_provider
        self._processing = False

    @property
    def is_processing(self) -> bool:
        return self._processing

    def enqueue(
        self,
        payload: WebhookPayload,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> QueuedMessage:
        """Queue ``payload``; an existing entry with the same messageId wins."""
        item = QueuedMessage(
            id=payload.message_id,
            payload=payload,
            max_attempts=max_attempts,
            next_retry=_now_ms(),
        )
        if not self._db.insert(item):
            existing = self._db.get(item.id)
            if existing is not None:
                return existing
            # Removed between the two calls
            if not self._db.insert(item):
                raise QueueItemNotFoundError(item.id)
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.QUEUE_ENQUEUED,
                action="enqueue",
                result="success",
                risk_level=RiskLevel.INFO,
                message_id=item.id,
            ))
        return item

    def record_failure(
        self,
        item_id: str,
        error: str,
        now_ms: int | None = None,
    ) -> QueuedMessage:
        """Count one failed attempt and schedule the next one."""
        item = self._db.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        now = _now_ms() if now_ms is None else now_ms
        updated = item.model_copy(update={
            "attempts": item.attempts + 1,
            "next_retry": now + retry_delay_ms(item.attempts),
            "last_error": error,
        })
        self._db.update(item_id, updated.attempts, updated.next_retry, updated.last_error)

        if updated.is_exhausted:
            logger.warning(
                "Message %s failed permanently after %d attempts: %s",
                item_id, updated.attempts, error,
            )
            if self._audit:
                self._audit.log(AuditEvent(
                    event_type=AuditEventType.QUEUE_EXHAUSTED,
                    action="process",
                    result="failure",
                    risk_level=RiskLevel.MEDIUM,
                    message_id=item_id,
                    details={"attempts": updated.attempts, "last_error": error},
                ))
        return updated

    async def process_next(self) -> WebhookResult | None:
        """Send the first ready item, if any. Returns its result."""
        if self._processing:
            return None
        self._processing = True
        try:
            now = _now_ms()
            item = next((i for i in self._db.list_items() if i.is_ready(now)), None)
            if item is None:
                return None

            config = self._config_provider() if self._config_provider else None
            try:
                result = await self._dispatcher.send(item.payload, config)
            except Exception as exc:
                logger.exception("Unexpected error delivering queued message %s", item.id)
                self.record_failure(item.id, str(exc) or "Network error", now)
                return None

            if result.success:
                self._db.delete(item.id)
            else:
                self.record_failure(item.id, result.error or "Unknown error", now)
            return result
        finally:
            self._processing = False

    def retry(self, item_id: str) -> None:
        """Make an item (usually an exhausted one) ready again right away."""
        if not self._db.update(item_id, attempts=0, next_retry=_now_ms(), last_error=None):
            raise QueueItemNotFoundError(item_id)

    def remove(self, item_id: str) -> None:
        if not self._db.delete(item_id):
            raise QueueItemNotFoundError(item_id)

    def clear(self) -> None:
        self._db.clear()

    def items(self) -> list[QueuedMessage]:
        return self._db.list_items()

    def failed(self) -> list[QueuedMessage]:
        return [i for i in self._db.list_items() if i.is_exhausted]

    def pending(self) -> list[QueuedMessage]:
        return [i for i in self._db.list_items() if not i.is_exhausted]


class QueueWorker:
    """Background task that drains the queue one item per tick."""

    def __init__(self, queue: MessageQueue, interval_ms: int = 1000) -> None:
        self._queue = queue
        self._interval = interval_ms / 1000
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self._queue.process_next()
            except Exception:
                logger.exception("Queue processing failed")
            await asyncio.sleep(self._interval)
