"""In-process dispatch queue so request handlers never wait on webhook targets."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from uuid import UUID

import structlog
from aiohttp import ClientSession, web

from backend_common.db.pool import get_pool
from webhook_service.dispatcher import WebhookDispatcher
from webhook_service.domain.webhooks import WebhookPayload
from webhook_service.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.settings import settings

logger = structlog.get_logger(__name__)

_WEBHOOK_SESSION_KEY = "webhook_http_session"
_WEBHOOK_DISPATCHER_KEY = "webhook_dispatcher"
_WEBHOOK_QUEUE_KEY = "webhook_dispatch_queue"


@dataclass(frozen=True)
class DispatchJob:
    user_id: UUID
    event: str
    payload: WebhookPayload


class WebhookDispatchQueue:
    """Bounded FIFO of dispatch jobs drained by a fixed set of consumer tasks.

    Jobs still queued or in flight when :meth:`stop` is called are dropped;
    nothing is recorded for them.
    """

    def __init__(self, dispatcher: WebhookDispatcher, *, max_size: int = 1000, workers: int = 4):
        self._dispatcher = dispatcher
        self._queue: asyncio.Queue[DispatchJob] = asyncio.Queue(maxsize=max_size)
        self._worker_count = max(1, workers)
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def qsize(self) -> int:
        return self._queue.qsize()

    def enqueue(self, user_id: UUID, event: str, payload: WebhookPayload) -> bool:
        """Queue a dispatch without waiting; ``False`` when the queue is full."""
        try:
            self._queue.put_nowait(DispatchJob(user_id, event, payload))
        except asyncio.QueueFull:
            logger.warning(
                "webhook dispatch queue full, event dropped",
                user_id=str(user_id),
                event_type=event,
                max_size=self._queue.maxsize,
            )
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"webhook-dispatch-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("webhook dispatch queue started", workers=self._worker_count)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("webhook dispatch queue stopped", dropped=self._queue.qsize())

    async def _consume(self, worker_id: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._dispatcher.dispatch(job.user_id, job.event, job.payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "webhook dispatch job failed",
                    worker=worker_id,
                    user_id=str(job.user_id),
                    event_type=job.event,
                )
            finally:
                self._queue.task_done()


async def start_webhook_dispatcher(app: web.Application) -> None:
    """``on_startup`` hook: HTTP session, dispatcher and queue consumers."""
    pool = await get_pool()
    session = ClientSession()
    dispatcher = WebhookDispatcher.from_settings(
        session,
        WebhookSubscriptionRepository(pool),
        WebhookDeliveryRepository(pool),
        settings,
    )
    queue = WebhookDispatchQueue(
        dispatcher,
        max_size=settings.webhook_queue_max_size,
        workers=settings.webhook_queue_workers,
    )
    await queue.start()
    app[_WEBHOOK_SESSION_KEY] = session
    app[_WEBHOOK_DISPATCHER_KEY] = dispatcher
    app[_WEBHOOK_QUEUE_KEY] = queue


async def stop_webhook_dispatcher(app: web.Application) -> None:
    queue = app.get(_WEBHOOK_QUEUE_KEY)
    if queue is not None:
        await queue.stop()
    session = app.get(_WEBHOOK_SESSION_KEY)
    if session is not None:
        await session.close()


def get_dispatcher(app: web.Application) -> WebhookDispatcher:
    return app[_WEBHOOK_DISPATCHER_KEY]


def get_dispatch_queue(app: web.Application) -> WebhookDispatchQueue:
    return app[_WEBHOOK_QUEUE_KEY]
