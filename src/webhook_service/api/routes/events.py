"""Event intake: business actions report events here and get an immediate 202."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import read_dto
from webhook_service.core.exceptions import QueueFullError
from webhook_service.domain.dto import EventEmitDTO
from webhook_service.services.dependencies import get_webhook_service, require_current_user

routes = web.RouteTableDef()


@routes.post("/api/v1/events")
async def emit_event(request: web.Request):
    user = await require_current_user(request)
    dto = await read_dto(request, EventEmitDTO)
    service = await get_webhook_service(request)
    try:
        payload = service.emit(user_id=user.user_id, event=dto.event, data=dto.data)
    except QueueFullError as exc:
        raise web.HTTPServiceUnavailable(text=str(exc)) from exc
    return web.json_response(
        {"status": "queued", "event": payload.event, "timestamp": payload.timestamp},
        status=202,
    )
