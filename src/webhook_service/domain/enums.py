"""Domain enums."""
from __future__ import annotations

from enum import Enum


class WebhookEvent(str, Enum):
    """Events a subscription can listen to."""

    GENERATION_COMPLETED = "generation.completed"
    PING = "webhook.ping"


class DeliveryState(str, Enum):
    """States of a single dispatch's attempt loop."""

    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRY = "retry"
    DELIVERED = "delivered"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.DELIVERED, DeliveryState.EXHAUSTED)


SUBSCRIBABLE_EVENTS: frozenset[str] = frozenset({WebhookEvent.GENERATION_COMPLETED.value})
