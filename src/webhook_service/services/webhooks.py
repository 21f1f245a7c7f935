"""Webhook domain service (subscriptions, delivery history, emitting events)."""
from __future__ import annotations

from typing import Any, List, Protocol
from uuid import UUID

from pydantic import BaseModel

from webhook_service.core.exceptions import QueueFullError
from webhook_service.domain.enums import WebhookEvent
from webhook_service.domain.webhooks import (
    WebhookDelivery,
    WebhookDeliveryCreate,
    WebhookPayload,
    WebhookSubscription,
    build_payload,
)
from webhook_service.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.signatures import generate_webhook_secret


class SingleDelivery(Protocol):
    async def deliver(
        self, subscription: WebhookSubscription, event: str, payload: WebhookPayload
    ) -> WebhookDeliveryCreate: ...


class DispatchSink(Protocol):
    def enqueue(self, user_id: UUID, event: str, payload: WebhookPayload) -> bool: ...


class WebhookService:
    def __init__(
        self,
        subscription_repository: WebhookSubscriptionRepository,
        delivery_repository: WebhookDeliveryRepository,
        dispatcher: SingleDelivery,
        queue: DispatchSink,
        *,
        default_retry_count: int = 3,
        default_timeout_seconds: float = 10.0,
    ):
        self._subscriptions = subscription_repository
        self._deliveries = delivery_repository
        self._dispatcher = dispatcher
        self._queue = queue
        self._default_retry_count = default_retry_count
        self._default_timeout_seconds = default_timeout_seconds

    async def create_subscription(
        self,
        *,
        user_id: UUID,
        name: str,
        url: str,
        events: list[str] | None = None,
        headers: dict[str, str] | None = None,
        retry_count: int | None = None,
        timeout_seconds: float | None = None,
    ) -> WebhookSubscription:
        """Create a subscription with a freshly generated signing secret."""
        return await self._subscriptions.create(
            user_id=user_id,
            name=name,
            url=url,
            events=events or [WebhookEvent.GENERATION_COMPLETED.value],
            secret=generate_webhook_secret(),
            headers=headers or {},
            retry_count=retry_count or self._default_retry_count,
            timeout_seconds=timeout_seconds or self._default_timeout_seconds,
        )

    async def list_subscriptions(
        self, user_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[WebhookSubscription], int]:
        return await self._subscriptions.list_by_user(user_id, limit=limit, offset=offset)

    async def delete_subscription(self, user_id: UUID, webhook_id: UUID) -> None:
        await self._subscriptions.delete(user_id, webhook_id)

    async def set_active(
        self, user_id: UUID, webhook_id: UUID, is_active: bool
    ) -> WebhookSubscription:
        return await self._subscriptions.set_active(user_id, webhook_id, is_active)

    async def list_deliveries(
        self,
        user_id: UUID,
        webhook_id: UUID,
        *,
        success: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[WebhookDelivery], int]:
        # ownership check; raises NotFoundError for other users' webhooks
        await self._subscriptions.get(user_id, webhook_id)
        return await self._deliveries.list_by_webhook(
            webhook_id, success=success, limit=limit, offset=offset
        )

    def emit(self, *, user_id: UUID, event: str, data: dict[str, Any] | BaseModel) -> WebhookPayload:
        """Stamp the event and hand it to the background queue."""
        payload = build_payload(event, data)
        if not self._queue.enqueue(user_id, event, payload):
            raise QueueFullError("Webhook dispatch queue is full")
        return payload

    async def ping(self, user_id: UUID, webhook_id: UUID) -> WebhookDeliveryCreate:
        """Deliver a ``webhook.ping`` to one subscription right away, active or not."""
        subscription = await self._subscriptions.get(user_id, webhook_id)
        event = WebhookEvent.PING.value
        payload = build_payload(
            event,
            {"webhook_id": str(subscription.id), "name": subscription.name, "events": subscription.events},
        )
        return await self._dispatcher.deliver(subscription, event, payload)
