from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from backend_common.aiohttp_app import add_healthcheck, create_base_app
from webhook_service.api.router import setup_routes
from webhook_service.dispatcher import WebhookDispatcher
from webhook_service.services import WebhookService
from webhook_service.settings import settings

from tests.utils import (
    InMemoryDeliveryRepository,
    InMemorySubscriptionRepository,
    make_headers,
    make_subscription,
)


class FakeQueue:
    def __init__(self, accept: bool = True):
        self.accept = accept
        self.jobs: list[tuple] = []

    def enqueue(self, user_id, event, payload) -> bool:
        if not self.accept:
            return False
        self.jobs.append((user_id, event, payload))
        return True


@pytest.fixture
def subscriptions():
    return InMemorySubscriptionRepository()


@pytest.fixture
def deliveries():
    return InMemoryDeliveryRepository()


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def service(http_session, subscriptions, deliveries, queue, fake_sleep):
    dispatcher = WebhookDispatcher(http_session, subscriptions, deliveries, sleep=fake_sleep)
    return WebhookService(subscriptions, deliveries, dispatcher, queue)


@pytest.fixture
async def service_client(aiohttp_client, service):
    app, _cors = create_base_app(settings)
    add_healthcheck(app, settings)
    setup_routes(app)
    provider = AsyncMock(return_value=service)
    with patch("webhook_service.api.routes.webhooks.get_webhook_service", provider), patch(
        "webhook_service.api.routes.events.get_webhook_service", provider
    ):
        yield await aiohttp_client(app)


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.mark.asyncio
async def test_create_webhook_returns_secret_once(service_client, user_id):
    headers = make_headers(user_id)
    resp = await service_client.post(
        "/api/v1/webhooks",
        json={"name": "CI", "url": "https://ci.example.com/hooks/testcraft"},
        headers=headers,
    )
    assert resp.status == 201
    created = await resp.json()
    assert created["url"] == "https://ci.example.com/hooks/testcraft"
    assert created["events"] == ["generation.completed"]
    assert created["is_active"] is True
    assert created["retry_count"] == settings.webhook_default_retry_count
    assert len(created["secret"]) == 64

    resp = await service_client.get("/api/v1/webhooks", headers=headers)
    assert resp.status == 200
    listing = await resp.json()
    assert listing["total"] == 1
    assert listing["webhooks"][0]["id"] == created["id"]
    assert listing["webhooks"][0]["has_secret"] is True
    assert "secret" not in listing["webhooks"][0]


@pytest.mark.asyncio
async def test_list_only_shows_own_webhooks(service_client, subscriptions, user_id):
    subscriptions.add(make_subscription(user_id=user_id))
    subscriptions.add(make_subscription(user_id=uuid.uuid4()))

    resp = await service_client.get("/api/v1/webhooks", headers=make_headers(user_id))
    body = await resp.json()

    assert body["total"] == 1
    assert body["page"] == 1
    assert body["page_size"] == 50


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"url": "https://example.com/hook"},
        {"name": "x", "url": "ftp://example.com/hook"},
        {"name": "x", "url": "https://example.com/hook", "events": ["test_case.deleted"]},
        {"name": "x", "url": "https://example.com/hook", "events": []},
        {"name": "x", "url": "https://example.com/hook", "retry_count": 0},
        {"name": "x", "url": "https://example.com/hook", "headers": {"X-Bad": "a\r\nb"}},
        {"name": "x", "url": "https://example.com/hook", "headers": {"Content-Length": "1"}},
        {"name": "x", "url": "https://example.com/hook", "headers": {"host": "evil.example"}},
        {"name": "x", "url": "https://example.com/hook", "headers": {"Transfer-Encoding": "chunked"}},
    ],
)
async def test_create_webhook_validation(service_client, subscriptions, body):
    resp = await service_client.post("/api/v1/webhooks", json=body, headers=make_headers())
    assert resp.status == 400
    assert subscriptions.items == {}


@pytest.mark.asyncio
async def test_invalid_json_body(service_client):
    resp = await service_client.post(
        "/api/v1/webhooks", data="not json", headers=make_headers()
    )
    assert resp.status == 400


@pytest.mark.asyncio
async def test_missing_user_header_is_unauthorized(service_client):
    resp = await service_client.get("/api/v1/webhooks")
    assert resp.status == 401

    resp = await service_client.get("/api/v1/webhooks", headers={"X-User-Id": "nope"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_toggle_webhook(service_client, subscriptions, user_id):
    sub = subscriptions.add(make_subscription(user_id=user_id))

    resp = await service_client.patch(
        f"/api/v1/webhooks/{sub.id}", json={"is_active": False}, headers=make_headers(user_id)
    )
    assert resp.status == 200
    assert (await resp.json())["is_active"] is False
    assert subscriptions.items[sub.id].is_active is False

    resp = await service_client.patch(
        f"/api/v1/webhooks/{sub.id}", json={"is_active": "no"}, headers=make_headers(user_id)
    )
    assert resp.status == 400


@pytest.mark.asyncio
async def test_other_users_webhook_is_not_found(service_client, subscriptions):
    sub = subscriptions.add(make_subscription(user_id=uuid.uuid4()))
    headers = make_headers()

    resp = await service_client.patch(
        f"/api/v1/webhooks/{sub.id}", json={"is_active": False}, headers=headers
    )
    assert resp.status == 404
    resp = await service_client.delete(f"/api/v1/webhooks/{sub.id}", headers=headers)
    assert resp.status == 404
    resp = await service_client.get(f"/api/v1/webhooks/{sub.id}/deliveries", headers=headers)
    assert resp.status == 404
    resp = await service_client.post(f"/api/v1/webhooks/{sub.id}/ping", headers=headers)
    assert resp.status == 404
    assert sub.id in subscriptions.items


@pytest.mark.asyncio
async def test_delete_webhook(service_client, subscriptions, user_id):
    sub = subscriptions.add(make_subscription(user_id=user_id))

    resp = await service_client.delete(f"/api/v1/webhooks/{sub.id}", headers=make_headers(user_id))

    assert resp.status == 204
    assert subscriptions.items == {}


@pytest.mark.asyncio
async def test_malformed_webhook_id(service_client):
    resp = await service_client.delete("/api/v1/webhooks/not-a-uuid", headers=make_headers())
    assert resp.status == 400


@pytest.mark.asyncio
async def test_ping_delivers_and_records(service_client, subscriptions, deliveries, receiver, user_id):
    sub = subscriptions.add(
        make_subscription(user_id=user_id, url=receiver.url, secret="abc", is_active=False)
    )

    resp = await service_client.post(f"/api/v1/webhooks/{sub.id}/ping", headers=make_headers(user_id))

    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is True
    assert body["event_type"] == "webhook.ping"
    assert len(receiver.requests) == 1
    assert receiver.requests[0].headers["X-TestCraft-Event"] == "webhook.ping"

    resp = await service_client.get(
        f"/api/v1/webhooks/{sub.id}/deliveries", headers=make_headers(user_id)
    )
    history = await resp.json()
    assert history["total"] == 1
    assert history["deliveries"][0]["delivery_id"] == body["delivery_id"]


@pytest.mark.asyncio
async def test_deliveries_filter_by_success(service_client, subscriptions, deliveries, receiver, user_id):
    sub = subscriptions.add(make_subscription(user_id=user_id, url=receiver.url, retry_count=1))
    headers = make_headers(user_id)
    await service_client.post(f"/api/v1/webhooks/{sub.id}/ping", headers=headers)
    receiver.reply(500)
    await service_client.post(f"/api/v1/webhooks/{sub.id}/ping", headers=headers)

    resp = await service_client.get(
        f"/api/v1/webhooks/{sub.id}/deliveries?success=false", headers=headers
    )
    body = await resp.json()
    assert body["total"] == 1
    assert body["deliveries"][0]["response_status"] == 500

    resp = await service_client.get(
        f"/api/v1/webhooks/{sub.id}/deliveries?success=maybe", headers=headers
    )
    assert resp.status == 400


@pytest.mark.asyncio
async def test_emit_event_is_queued(service_client, queue, user_id):
    resp = await service_client.post(
        "/api/v1/events",
        json={
            "event": "generation.completed",
            "data": {
                "requirement": "Users can reset their password",
                "testCases": [{"id": "TC-1", "title": "Reset link", "expectedResult": "Email sent"}],
                "summary": "1 test case",
            },
        },
        headers=make_headers(user_id),
    )

    assert resp.status == 202
    body = await resp.json()
    assert body["status"] == "queued"
    assert body["event"] == "generation.completed"
    assert body["timestamp"].endswith("Z")

    assert len(queue.jobs) == 1
    queued_user, event, payload = queue.jobs[0]
    assert queued_user == user_id
    assert event == "generation.completed"
    assert payload.timestamp == body["timestamp"]
    assert payload.data["testCases"][0]["expectedResult"] == "Email sent"


@pytest.mark.asyncio
async def test_emit_rejects_unknown_event_and_bad_data(service_client, queue):
    resp = await service_client.post(
        "/api/v1/events", json={"event": "test_case.deleted", "data": {}}, headers=make_headers()
    )
    assert resp.status == 400

    resp = await service_client.post(
        "/api/v1/events", json={"event": "generation.completed", "data": {}}, headers=make_headers()
    )
    assert resp.status == 400
    assert queue.jobs == []


@pytest.mark.asyncio
async def test_emit_when_queue_full(service_client, queue):
    queue.accept = False

    resp = await service_client.post(
        "/api/v1/events",
        json={"event": "generation.completed", "data": {"requirement": "r"}},
        headers=make_headers(),
    )

    assert resp.status == 503


@pytest.mark.asyncio
async def test_responses_carry_trace_headers(service_client):
    trace_id = str(uuid.uuid4())
    resp = await service_client.get("/health", headers={"X-Trace-Id": trace_id})
    assert resp.headers["X-Trace-Id"] == trace_id
    assert "X-Request-Id" in resp.headers
