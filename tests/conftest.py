"""Shared fixtures: a scriptable local webhook receiver and an HTTP session."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Mapping

import pytest
from aiohttp import ClientSession, web

from tests.utils import RecordingSleep


@dataclass
class ReceivedRequest:
    headers: Mapping[str, str]
    body: bytes


@dataclass
class WebhookReceiver:
    """Local HTTP endpoint replaying a script of responses.

    Each entry of ``script`` is a status code, or a float meaning "sleep that
    many seconds, then answer 200". Once exhausted the last entry repeats.
    """

    url: str
    script: list[int | float] = field(default_factory=lambda: [200])
    requests: list[ReceivedRequest] = field(default_factory=list)

    def reply(self, *script: int | float) -> None:
        self.script = list(script)


@pytest.fixture
async def receiver(aiohttp_server) -> WebhookReceiver:
    state = WebhookReceiver(url="")

    async def handler(request: web.Request) -> web.Response:
        raw = await request.read()
        index = len(state.requests)
        state.requests.append(ReceivedRequest(request.headers.copy(), raw))
        step = state.script[min(index, len(state.script) - 1)]
        if isinstance(step, float):
            await asyncio.sleep(step)
            return web.Response(status=200, text="late")
        return web.Response(status=step, text=f"status {step}")

    app = web.Application()
    app.router.add_post("/hook", handler)
    server = await aiohttp_server(app)
    state.url = str(server.make_url("/hook"))
    return state


@pytest.fixture
async def http_session():
    session = ClientSession()
    yield session
    await session.close()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()
