"""Request DTOs for the HTTP API."""
from __future__ import annotations

from typing import Any

from pydantic import AnyHttpUrl, BaseModel, Field, StrictBool, field_validator, model_validator

from webhook_service.domain.enums import SUBSCRIBABLE_EVENTS, WebhookEvent
from webhook_service.domain.webhooks import GenerationCompletedData


# Framing headers are computed by the HTTP client from the body.
FORBIDDEN_HEADERS = frozenset({"content-length", "host", "transfer-encoding", "connection"})


def _normalize_events(values: list[str]) -> list[str]:
    events = [e.strip() for e in values if e and e.strip()]
    events = list(dict.fromkeys(events))
    if not events:
        raise ValueError("events must be a non-empty list")
    unknown = [e for e in events if e not in SUBSCRIBABLE_EVENTS]
    if unknown:
        raise ValueError(f"Unknown event(s): {', '.join(unknown)}")
    return events


class WebhookCreateDTO(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    url: AnyHttpUrl
    events: list[str] = Field(default_factory=lambda: [WebhookEvent.GENERATION_COMPLETED.value])
    headers: dict[str, str] = Field(default_factory=dict)
    retry_count: int | None = Field(default=None, ge=1, le=10)
    timeout_seconds: float | None = Field(default=None, gt=0, le=60)

    @field_validator("events")
    @classmethod
    def _check_events(cls, value: list[str]) -> list[str]:
        return _normalize_events(value)

    @field_validator("headers")
    @classmethod
    def _check_headers(cls, value: dict[str, str]) -> dict[str, str]:
        for name, header_value in value.items():
            if not name or any(ch in name for ch in " :\r\n\t"):
                raise ValueError(f"Invalid header name: {name!r}")
            if name.lower() in FORBIDDEN_HEADERS:
                raise ValueError(f"Header {name!r} cannot be overridden")
            if "\r" in header_value or "\n" in header_value:
                raise ValueError(f"Invalid value for header {name!r}")
        return value


class WebhookToggleDTO(BaseModel):
    is_active: StrictBool


class EventEmitDTO(BaseModel):
    event: str
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event")
    @classmethod
    def _check_event(cls, value: str) -> str:
        return _normalize_events([value])[0]

    @model_validator(mode="after")
    def _check_data(self) -> "EventEmitDTO":
        if self.event == WebhookEvent.GENERATION_COMPLETED.value:
            parsed = GenerationCompletedData.model_validate(self.data)
            self.data = parsed.model_dump(mode="json", by_alias=True, exclude_none=True)
        return self
