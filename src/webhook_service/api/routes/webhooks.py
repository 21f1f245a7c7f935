"""Webhook subscription endpoints."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import (
    paginated_response,
    pagination_params,
    parse_bool,
    parse_uuid,
    read_dto,
)
from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.dto import WebhookCreateDTO, WebhookToggleDTO
from webhook_service.services.dependencies import get_webhook_service, require_current_user

routes = web.RouteTableDef()


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    user = await require_current_user(request)
    service = await get_webhook_service(request)
    limit, offset = pagination_params(request)
    items, total = await service.list_subscriptions(user.user_id, limit=limit, offset=offset)
    payload = paginated_response(
        [item.public_dump() for item in items],
        limit=limit,
        offset=offset,
        key="webhooks",
        total=total,
    )
    return web.json_response(payload)


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    user = await require_current_user(request)
    dto = await read_dto(request, WebhookCreateDTO)
    service = await get_webhook_service(request)
    sub = await service.create_subscription(
        user_id=user.user_id,
        name=dto.name,
        url=str(dto.url),
        events=dto.events,
        headers=dto.headers,
        retry_count=dto.retry_count,
        timeout_seconds=dto.timeout_seconds,
    )
    # the secret is only ever shown on creation
    return web.json_response(sub.model_dump(mode="json"), status=201)


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def toggle_webhook(request: web.Request):
    user = await require_current_user(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    dto = await read_dto(request, WebhookToggleDTO)
    service = await get_webhook_service(request)
    try:
        sub = await service.set_active(user.user_id, webhook_id, dto.is_active)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(sub.public_dump())


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    user = await require_current_user(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        await service.delete_subscription(user.user_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.Response(status=204)


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_deliveries(request: web.Request):
    user = await require_current_user(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    success = parse_bool(request.rel_url.query.get("success"), "success")
    limit, offset = pagination_params(request)
    service = await get_webhook_service(request)
    try:
        items, total = await service.list_deliveries(
            user.user_id, webhook_id, success=success, limit=limit, offset=offset
        )
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    payload = paginated_response(
        [item.model_dump(mode="json") for item in items],
        limit=limit,
        offset=offset,
        key="deliveries",
        total=total,
    )
    return web.json_response(payload)


@routes.post("/api/v1/webhooks/{webhook_id}/ping")
async def ping_webhook(request: web.Request):
    user = await require_current_user(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    try:
        record = await service.ping(user.user_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(record.model_dump(mode="json"))
