"""Shared test fixtures for the bridge."""

from __future__ import annotations

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from ollama_bridge.app import create_app
from ollama_bridge.config import BridgeConfig

BACKEND_URL = "http://openai.test"
AUTH = {"Authorization": "Bearer testtoken"}


def sse(*events: dict | str) -> bytes:
    """Encode events as an SSE body; strings are sent as raw data payloads."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


def delta_event(delta: dict, model: str = "m", finish_reason: str | None = None) -> dict:
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "created": 1694268190,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def config() -> BridgeConfig:
    return BridgeConfig(openai_base_url=BACKEND_URL)


@pytest.fixture
def backend():
    """A scriptable upstream: set ``backend.handler`` and inspect ``backend.requests``."""

    class Backend:
        def __init__(self):
            self.requests: list[httpx.Request] = []
            self.handler = lambda request: httpx.Response(500)

        def __call__(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.handler(request)

    return Backend()


@pytest.fixture
def make_client(config, backend):
    """Build a TestClient for the bridge with its upstream routed to ``backend``."""
    clients = []

    def _make(cfg: BridgeConfig | None = None) -> TestClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
        client = TestClient(create_app(cfg or config, client=http_client))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def proxy_client(make_client):
    return make_client()
