"""Shared dependency providers for aiohttp handlers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar
from uuid import UUID

from aiohttp import web

from backend_common.db.pool import get_pool
from webhook_service.dispatch_queue import get_dispatch_queue, get_dispatcher
from webhook_service.repositories import (
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.services import WebhookService
from webhook_service.settings import settings

TService = TypeVar("TService")

_WEBHOOK_SERVICE_KEY = "webhook_service"

USER_ID_HEADER = "X-User-Id"


@dataclass
class UserContext:
    user_id: UUID


async def require_current_user(request: web.Request) -> UserContext:
    """Identity comes from the API gateway; this service never checks credentials."""
    user_header = request.headers.get(USER_ID_HEADER)
    if user_header is None:
        raise web.HTTPUnauthorized(reason=f"Header {USER_ID_HEADER} is required")
    try:
        user_id = UUID(user_header)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {USER_ID_HEADER}") from exc
    return UserContext(user_id=user_id)


async def _get_or_create_service(
    request: web.Request,
    cache_key: str,
    builder: Callable[[web.Request], Awaitable[TService]],
) -> TService:
    service = request.get(cache_key)
    if service is None:
        service = await builder(request)
        request[cache_key] = service
    return service


async def get_webhook_service(request: web.Request) -> WebhookService:
    async def builder(req: web.Request) -> WebhookService:
        pool = await get_pool()
        return WebhookService(
            WebhookSubscriptionRepository(pool),
            WebhookDeliveryRepository(pool),
            get_dispatcher(req.app),
            get_dispatch_queue(req.app),
            default_retry_count=settings.webhook_default_retry_count,
            default_timeout_seconds=settings.webhook_default_timeout_seconds,
        )

    return await _get_or_create_service(request, _WEBHOOK_SERVICE_KEY, builder)
