"""Repository package exports."""

from webhook_service.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)

__all__ = [
    "WebhookSubscriptionRepository",
    "WebhookDeliveryRepository",
]
