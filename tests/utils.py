"""Test helpers: subscription factory and in-memory stores."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.webhooks import (
    WebhookDelivery,
    WebhookDeliveryCreate,
    WebhookSubscription,
)


def make_subscription(**overrides: Any) -> WebhookSubscription:
    now = datetime.now(timezone.utc)
    values: dict[str, Any] = {
        "id": uuid4(),
        "user_id": uuid4(),
        "name": "CI server",
        "url": "http://127.0.0.1:9/hook",
        "secret": None,
        "events": ["generation.completed"],
        "headers": {},
        "is_active": True,
        "retry_count": 3,
        "timeout_seconds": 5.0,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return WebhookSubscription.model_validate(values)


class InMemorySubscriptionRepository:
    """Implements the subscription repository API over a dict."""

    def __init__(self, *subscriptions: WebhookSubscription):
        self.items: dict[UUID, WebhookSubscription] = {s.id: s for s in subscriptions}
        self.counter_updates: list[tuple[UUID, int | None, bool]] = []
        self.fail_lookup = False
        self.fail_counters = False

    def add(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self.items[subscription.id] = subscription
        return subscription

    async def create(self, *, user_id: UUID, **fields: Any) -> WebhookSubscription:
        return self.add(make_subscription(user_id=user_id, **fields))

    async def get(self, user_id: UUID, webhook_id: UUID) -> WebhookSubscription:
        sub = self.items.get(webhook_id)
        if sub is None or sub.user_id != user_id:
            raise NotFoundError("Webhook not found")
        return sub

    async def list_by_user(
        self, user_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[WebhookSubscription], int]:
        owned = [s for s in self.items.values() if s.user_id == user_id]
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return owned[offset : offset + limit], len(owned)

    async def delete(self, user_id: UUID, webhook_id: UUID) -> None:
        await self.get(user_id, webhook_id)
        del self.items[webhook_id]

    async def set_active(
        self, user_id: UUID, webhook_id: UUID, is_active: bool
    ) -> WebhookSubscription:
        sub = await self.get(user_id, webhook_id)
        return self.add(sub.model_copy(update={"is_active": is_active}))

    async def list_active_matching(
        self, user_id: UUID, event_type: str
    ) -> list[WebhookSubscription]:
        if self.fail_lookup:
            raise ConnectionError("store unavailable")
        return [
            s
            for s in self.items.values()
            if s.user_id == user_id and s.is_active and event_type in s.events
        ]

    async def increment_delivery_counters(
        self, webhook_id: UUID, *, status_code: int | None, success: bool
    ) -> None:
        if self.fail_counters:
            raise ConnectionError("store unavailable")
        self.counter_updates.append((webhook_id, status_code, success))
        sub = self.items[webhook_id]
        self.items[webhook_id] = sub.model_copy(
            update={
                "last_triggered_at": datetime.now(timezone.utc),
                "last_status_code": status_code,
                "total_deliveries": sub.total_deliveries + 1,
                "failed_deliveries": sub.failed_deliveries + (0 if success else 1),
            }
        )


class InMemoryDeliveryRepository:
    def __init__(self) -> None:
        self.records: list[WebhookDelivery] = []
        self.fail_append = False

    async def append(self, delivery: WebhookDeliveryCreate) -> WebhookDelivery:
        if self.fail_append:
            raise ConnectionError("store unavailable")
        record = WebhookDelivery(
            id=uuid4(), created_at=datetime.now(timezone.utc), **delivery.model_dump()
        )
        self.records.append(record)
        return record

    async def list_by_webhook(
        self,
        webhook_id: UUID,
        *,
        success: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        matching = [
            r
            for r in reversed(self.records)
            if r.webhook_id == webhook_id and (success is None or r.success == success)
        ]
        return matching[offset : offset + limit], len(matching)


class RecordingSleep:
    """Stands in for ``asyncio.sleep``; remembers requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_headers(user_id: UUID | None = None) -> dict[str, str]:
    """Headers the API gateway adds in front of this service."""
    return {"X-User-Id": str(user_id or uuid4())}
