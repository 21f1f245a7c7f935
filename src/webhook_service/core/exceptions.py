"""Common exceptions for domain and repository layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for service layer."""


class RepositoryError(WebhookServiceError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class InvalidStatusTransitionError(WebhookServiceError):
    """Raised when a delivery attempts an unsupported state change."""


class QueueFullError(WebhookServiceError):
    """Raised when the dispatch queue cannot accept more work."""
