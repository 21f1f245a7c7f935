"""Webhook domain primitives."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class WebhookSubscription(BaseModel):
    id: UUID
    user_id: UUID
    name: str
    url: str
    secret: str | None = None
    events: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    retry_count: int = Field(default=3, ge=1)
    timeout_seconds: float = Field(default=10.0, gt=0)
    last_triggered_at: datetime | None = None
    last_status_code: int | None = None
    total_deliveries: int = 0
    failed_deliveries: int = 0
    created_at: datetime
    updated_at: datetime

    def public_dump(self) -> dict[str, Any]:
        """JSON view without the shared secret."""
        payload = self.model_dump(mode="json", exclude={"secret"})
        payload["has_secret"] = self.secret is not None
        return payload


class WebhookDeliveryCreate(BaseModel):
    """Outcome of one dispatch, written once when the attempt loop ends."""

    webhook_id: UUID
    event_type: str
    delivery_id: UUID
    payload: dict[str, Any]
    response_status: int | None = None
    response_body: str | None = None
    response_time_ms: int = 0
    attempts: int = 0
    success: bool
    error_message: str | None = None


class WebhookDelivery(WebhookDeliveryCreate):
    id: UUID
    created_at: datetime


class GeneratedTestCase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    preconditions: str = ""
    steps: list[str] = Field(default_factory=list)
    expected_result: str = Field(default="", alias="expectedResult")
    priority: str = "medium"
    type: str = "functional"


class GenerationCompletedData(BaseModel):
    """``data`` block of a ``generation.completed`` event."""

    model_config = ConfigDict(populate_by_name=True)

    requirement: str
    context: str | None = None
    test_cases: list[GeneratedTestCase] = Field(default_factory=list, alias="testCases")
    gherkin: str = ""
    summary: str = ""


class WebhookPayload(BaseModel):
    event: str
    timestamp: str
    data: dict[str, Any] = Field(default_factory=dict)


def utc_timestamp(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and ``Z`` suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_payload(
    event: str, data: dict[str, Any] | BaseModel, *, now: datetime | None = None
) -> WebhookPayload:
    """Build the body of an event, stamping it with the current time."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True, exclude_none=True)
    return WebhookPayload(event=event, timestamp=utc_timestamp(now), data=data)
