"""Webhook repositories (subscriptions + delivery log)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.webhooks import (
    WebhookDelivery,
    WebhookDeliveryCreate,
    WebhookSubscription,
)
from webhook_service.repositories.base import BaseRepository


class WebhookSubscriptionRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @classmethod
    def _to_model(cls, record: Record) -> WebhookSubscription:
        payload = cls._decode_json_fields(dict(record), "headers")
        payload.pop("total_count", None)
        return WebhookSubscription.model_validate(payload)

    async def create(
        self,
        *,
        user_id: UUID,
        name: str,
        url: str,
        events: list[str],
        secret: str | None,
        headers: dict[str, str],
        retry_count: int,
        timeout_seconds: float,
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            INSERT INTO webhooks (
                user_id, name, url, secret, events, headers, retry_count, timeout_seconds
            )
            VALUES ($1, $2, $3, $4, $5::text[], $6::jsonb, $7, $8)
            RETURNING *
            """,
            user_id,
            name,
            url,
            secret,
            events,
            json.dumps(headers),
            retry_count,
            timeout_seconds,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, user_id: UUID, webhook_id: UUID) -> WebhookSubscription:
        record = await self._fetchrow(
            "SELECT * FROM webhooks WHERE user_id = $1 AND id = $2",
            user_id,
            webhook_id,
        )
        if record is None:
            raise NotFoundError("Webhook not found")
        return self._to_model(record)

    async def list_by_user(
        self, user_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookSubscription], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhooks
            WHERE user_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        items: List[WebhookSubscription] = []
        total: int | None = None
        for rec in records:
            if total is None:
                total = int(rec["total_count"])
            items.append(self._to_model(rec))
        if total is None:
            total = await self._count_by_user(user_id)
        return items, total

    async def _count_by_user(self, user_id: UUID) -> int:
        record = await self._fetchrow(
            "SELECT COUNT(*) AS total FROM webhooks WHERE user_id = $1",
            user_id,
        )
        return int(record["total"]) if record else 0

    async def delete(self, user_id: UUID, webhook_id: UUID) -> None:
        record = await self._fetchrow(
            """
            DELETE FROM webhooks
            WHERE user_id = $1 AND id = $2
            RETURNING id
            """,
            user_id,
            webhook_id,
        )
        if record is None:
            raise NotFoundError("Webhook not found")

    async def set_active(
        self, user_id: UUID, webhook_id: UUID, is_active: bool
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            UPDATE webhooks
            SET is_active = $3,
                updated_at = now()
            WHERE user_id = $1 AND id = $2
            RETURNING *
            """,
            user_id,
            webhook_id,
            is_active,
        )
        if record is None:
            raise NotFoundError("Webhook not found")
        return self._to_model(record)

    async def list_active_matching(
        self, user_id: UUID, event_type: str
    ) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhooks
            WHERE user_id = $1
              AND is_active = true
              AND $2 = ANY(events)
            ORDER BY created_at ASC
            """,
            user_id,
            event_type,
        )
        return [self._to_model(r) for r in records]

    async def increment_delivery_counters(
        self,
        webhook_id: UUID,
        *,
        status_code: int | None,
        success: bool,
    ) -> None:
        # Single statement so concurrent dispatches never lose an increment.
        await self._execute(
            """
            UPDATE webhooks
            SET last_triggered_at = now(),
                last_status_code = $2,
                total_deliveries = total_deliveries + 1,
                failed_deliveries = failed_deliveries + CASE WHEN $3 THEN 0 ELSE 1 END,
                updated_at = now()
            WHERE id = $1
            """,
            webhook_id,
            status_code,
            success,
        )


class WebhookDeliveryRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @classmethod
    def _to_model(cls, record: Record) -> WebhookDelivery:
        payload = cls._decode_json_fields(dict(record), "payload")
        payload.pop("total_count", None)
        return WebhookDelivery.model_validate(payload)

    async def append(self, delivery: WebhookDeliveryCreate) -> WebhookDelivery:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                webhook_id,
                event_type,
                delivery_id,
                payload,
                response_status,
                response_body,
                response_time_ms,
                attempts,
                success,
                error_message
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10)
            RETURNING *
            """,
            delivery.webhook_id,
            delivery.event_type,
            delivery.delivery_id,
            json.dumps(delivery.payload, ensure_ascii=False),
            delivery.response_status,
            delivery.response_body,
            delivery.response_time_ms,
            delivery.attempts,
            delivery.success,
            delivery.error_message,
        )
        assert record is not None
        return self._to_model(record)

    async def list_by_webhook(
        self,
        webhook_id: UUID,
        *,
        success: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        where = ["webhook_id = $1"]
        values: list[object] = [webhook_id]
        idx = 2
        if success is not None:
            where.append(f"success = ${idx}")
            values.append(success)
            idx += 1
        where_sql = " AND ".join(where)
        query = f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE {where_sql}
            ORDER BY created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
        """
        values.extend([limit, offset])
        records = await self._fetch(query, *values)
        items: List[WebhookDelivery] = []
        total: int | None = None
        for rec in records:
            if total is None:
                total = int(rec["total_count"])
            items.append(self._to_model(rec))
        if total is None:
            count = await self._fetchrow(
                f"SELECT COUNT(*) AS total FROM webhook_deliveries WHERE {where_sql}",
                *values[:-2],
            )
            total = int(count["total"]) if count else 0
        return items, total

    async def delete_older_than(self, created_before: datetime) -> int:
        """Purge delivery records older than *created_before*. Returns count."""
        result = await self._execute(
            "DELETE FROM webhook_deliveries WHERE created_at < $1",
            created_before,
        )
        return self._affected_rows(result)
