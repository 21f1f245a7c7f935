"""Webhook dispatcher: signed, retried, timeout-bounded HTTP delivery."""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence
from uuid import UUID, uuid4

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout

from webhook_service.domain.dto import FORBIDDEN_HEADERS
from webhook_service.domain.enums import DeliveryState
from webhook_service.domain.state_machine import DeliveryStateMachine
from webhook_service.domain.webhooks import (
    WebhookDeliveryCreate,
    WebhookPayload,
    WebhookSubscription,
)
from webhook_service.otel import get_tracer
from webhook_service.signatures import signature_header_value

logger = structlog.get_logger(__name__)

RESPONSE_BODY_LIMIT = 1000
ERROR_BODY_LIMIT = 200


class SubscriptionStore(Protocol):
    async def list_active_matching(
        self, user_id: UUID, event_type: str
    ) -> Sequence[WebhookSubscription]: ...

    async def increment_delivery_counters(
        self, webhook_id: UUID, *, status_code: int | None, success: bool
    ) -> None: ...


class DeliveryStore(Protocol):
    async def append(self, delivery: WebhookDeliveryCreate) -> Any: ...


@dataclass(frozen=True)
class RetryPolicy:
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    retry_client_errors: bool = True

    def backoff_seconds(self, attempt: int) -> float:
        # attempt is 1-based: 2s, 4s, 8s ... with the default base
        return min(self.backoff_max_seconds, self.backoff_base_seconds * 2**attempt)

    def is_retryable_status(self, status: int) -> bool:
        if self.retry_client_errors or not 400 <= status < 500:
            return True
        return status in (408, 429)


@dataclass(frozen=True)
class AttemptResult:
    status: int | None
    body: str | None
    error: str | None
    elapsed_ms: int

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300


def serialize_payload(payload: WebhookPayload | Mapping[str, Any]) -> bytes:
    """Compact JSON body; computed once per dispatch so the signature is reproducible."""
    if isinstance(payload, WebhookPayload):
        payload = payload.model_dump(mode="json")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class WebhookDispatcher:
    """Delivers an event to every active subscription of a user.

    ``dispatch`` never raises for delivery or store failures: they end up in
    the delivery record and the logs. Only cancellation propagates.
    """

    def __init__(
        self,
        session: ClientSession,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryStore,
        *,
        policy: RetryPolicy | None = None,
        user_agent: str = "TestCraft-Webhook/1.0",
        header_prefix: str = "X-TestCraft",
        max_concurrency: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timer: Callable[[], float] = time.monotonic,
        delivery_id_factory: Callable[[], UUID] = uuid4,
    ):
        self._session = session
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._policy = policy or RetryPolicy()
        self._user_agent = user_agent
        self._header_prefix = header_prefix
        self._max_concurrency = max(1, max_concurrency)
        self._sleep = sleep
        self._timer = timer
        self._new_delivery_id = delivery_id_factory
        self._tracer = get_tracer(__name__)

    @classmethod
    def from_settings(
        cls,
        session: ClientSession,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryStore,
        settings: Any,
    ) -> "WebhookDispatcher":
        return cls(
            session,
            subscriptions,
            deliveries,
            policy=RetryPolicy(
                backoff_base_seconds=settings.webhook_backoff_base_seconds,
                backoff_max_seconds=settings.webhook_backoff_max_seconds,
                retry_client_errors=settings.webhook_retry_client_errors,
            ),
            user_agent=settings.webhook_user_agent,
            header_prefix=settings.webhook_header_prefix,
            max_concurrency=settings.webhook_dispatch_max_concurrency,
        )

    @property
    def signature_header(self) -> str:
        return f"{self._header_prefix}-Signature"

    @property
    def event_header(self) -> str:
        return f"{self._header_prefix}-Event"

    @property
    def delivery_header(self) -> str:
        return f"{self._header_prefix}-Delivery"

    @property
    def timestamp_header(self) -> str:
        return f"{self._header_prefix}-Timestamp"

    async def dispatch(
        self, user_id: UUID, event: str, payload: WebhookPayload
    ) -> list[WebhookDeliveryCreate]:
        """Deliver ``payload`` to each matching subscription; returns one record per subscription."""
        try:
            subscriptions = await self._subscriptions.list_active_matching(user_id, event)
        except Exception:
            logger.exception("webhook lookup failed", user_id=str(user_id), event_type=event)
            return []

        targets = [s for s in subscriptions if s.is_active and event in s.events]
        if not targets:
            return []

        body = serialize_payload(payload)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def bounded(subscription: WebhookSubscription) -> WebhookDeliveryCreate:
            async with semaphore:
                return await self.deliver(subscription, event, payload, body=body)

        results = await asyncio.gather(*(bounded(s) for s in targets), return_exceptions=True)
        records: list[WebhookDeliveryCreate] = []
        for subscription, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(
                    "webhook delivery crashed",
                    webhook_id=str(subscription.id),
                    event_type=event,
                    exc_info=result,
                )
                continue
            records.append(result)
        return records

    async def deliver(
        self,
        subscription: WebhookSubscription,
        event: str,
        payload: WebhookPayload,
        *,
        body: bytes | None = None,
    ) -> WebhookDeliveryCreate:
        """Run the attempt loop for one subscription, then persist its outcome."""
        if body is None:
            body = serialize_payload(payload)
        delivery_id = self._new_delivery_id()
        headers = self.build_headers(subscription, event, delivery_id, payload.timestamp, body)
        log = logger.bind(
            webhook_id=str(subscription.id), delivery_id=str(delivery_id), event=event
        )

        machine = DeliveryStateMachine(max_attempts=subscription.retry_count)
        status: int | None = None
        response_body: str | None = None
        response_time_ms = 0
        last_error: str | None = None

        while not machine.done:
            attempt = machine.begin_attempt()
            result = await self._attempt(subscription, headers, body, attempt)
            response_time_ms = result.elapsed_ms
            if result.status is not None:
                status = result.status
                response_body = result.body
            if result.ok:
                machine.succeed()
                last_error = None
                break

            last_error = result.error
            retryable = result.status is None or self._policy.is_retryable_status(result.status)
            state = machine.fail(retryable=retryable)
            log.warning(
                "webhook attempt failed",
                attempt=attempt,
                max_attempts=machine.max_attempts,
                status_code=result.status,
                error=result.error,
            )
            if state is DeliveryState.RETRY:
                await self._sleep(self._policy.backoff_seconds(attempt))

        success = machine.state is DeliveryState.DELIVERED
        record = WebhookDeliveryCreate(
            webhook_id=subscription.id,
            event_type=event,
            delivery_id=delivery_id,
            payload=payload.model_dump(mode="json"),
            response_status=status,
            response_body=response_body[:RESPONSE_BODY_LIMIT] if response_body is not None else None,
            response_time_ms=response_time_ms,
            attempts=machine.attempts,
            success=success,
            error_message=last_error,
        )
        if success:
            log.info("webhook delivered", attempts=machine.attempts, status_code=status)
        else:
            log.warning(
                "webhook delivery exhausted",
                attempts=machine.attempts,
                status_code=status,
                error=last_error,
            )
        await self._record(subscription, record)
        return record

    def build_headers(
        self,
        subscription: WebhookSubscription,
        event: str,
        delivery_id: UUID,
        timestamp: str,
        body: bytes,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            self.event_header: event,
            self.delivery_header: str(delivery_id),
            self.timestamp_header: timestamp,
        }
        reserved = {self.signature_header.lower(), self.event_header.lower(), *FORBIDDEN_HEADERS}
        for name, value in subscription.headers.items():
            if name.lower() in reserved:
                continue
            for existing in [k for k in headers if k.lower() == name.lower()]:
                del headers[existing]
            headers[name] = value
        if subscription.secret:
            headers[self.signature_header] = signature_header_value(body, subscription.secret)
        return headers

    async def _attempt(
        self,
        subscription: WebhookSubscription,
        headers: dict[str, str],
        body: bytes,
        attempt: int,
    ) -> AttemptResult:
        started = self._timer()

        def elapsed_ms() -> int:
            return int(round((self._timer() - started) * 1000))

        with self._tracer.start_as_current_span("webhook.deliver") as span:
            span.set_attribute("webhook.id", str(subscription.id))
            span.set_attribute("webhook.attempt", attempt)
            try:
                async with self._session.post(
                    subscription.url,
                    data=body,
                    headers=headers,
                    timeout=ClientTimeout(total=subscription.timeout_seconds),
                ) as resp:
                    text = await resp.text(errors="replace")
                    span.set_attribute("http.status_code", resp.status)
                    error = None
                    if not 200 <= resp.status < 300:
                        error = f"HTTP {resp.status}: {text[:ERROR_BODY_LIMIT]}"
                    return AttemptResult(resp.status, text, error, elapsed_ms())
            except asyncio.TimeoutError:
                return AttemptResult(
                    None,
                    None,
                    f"Request timed out after {subscription.timeout_seconds:g}s",
                    elapsed_ms(),
                )
            except ClientError as exc:
                return AttemptResult(None, None, str(exc) or type(exc).__name__, elapsed_ms())
            except ValueError as exc:
                # malformed URL or header values rejected before sending
                return AttemptResult(None, None, f"Invalid request: {exc}", elapsed_ms())

    async def _record(
        self, subscription: WebhookSubscription, record: WebhookDeliveryCreate
    ) -> None:
        try:
            await self._deliveries.append(record)
        except Exception:
            logger.exception(
                "failed to persist webhook delivery",
                webhook_id=str(subscription.id),
                delivery_id=str(record.delivery_id),
            )
        try:
            await self._subscriptions.increment_delivery_counters(
                subscription.id, status_code=record.response_status, success=record.success
            )
        except Exception:
            logger.exception(
                "failed to update webhook counters", webhook_id=str(subscription.id)
            )
