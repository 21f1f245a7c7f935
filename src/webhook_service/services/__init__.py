"""Domain services exports."""

from webhook_service.services.webhooks import WebhookService

__all__ = [
    "WebhookService",
]
