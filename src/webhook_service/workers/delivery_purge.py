"""Worker: purge old webhook delivery records."""
from __future__ import annotations

from datetime import datetime, timedelta

from backend_common.db.pool import get_pool

from webhook_service.repositories.webhooks import WebhookDeliveryRepository
from webhook_service.settings import settings


async def webhook_delivery_purge(now: datetime) -> str | None:
    """Delete delivery records older than ``webhook_delivery_retention_days``."""
    pool = await get_pool()
    cutoff = now - timedelta(days=settings.webhook_delivery_retention_days)
    purged = await WebhookDeliveryRepository(pool).delete_older_than(cutoff)
    return f"purged={purged}" if purged else None
