"""Shared fixtures: an isolated environment and mock HTTP servers."""

import json
from collections.abc import Callable

import httpx
import pytest

_ENV_VARS = (
    "OPENAI_API_KEY",
    "OPEN_ROUTER_API_KEY",
    "XAI_API_KEY",
    "GEMINI_API_KEY",
    "PROVIDER_INFO_FILEPATH",
    "LLMQ_PROVIDER",
    "LLMQ_MODEL",
)

OPENAI_KEY = "sk-test-" + "a" * 40
GEMINI_KEY = "AIza-test-" + "b" * 40


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """No real keys and no stray .env file leak into Settings."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Mock HTTP server
# ---------------------------------------------------------------------------


class RecordingServer:
    """httpx.MockTransport handler that records every request it answers."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self._handler = handler
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._handler(request)
        if hasattr(response, "__await__"):
            response = await response
        return response

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def mock_server():
    """Factory: ``client, server = mock_server(handler)``."""

    def _make(handler):
        server = RecordingServer(handler)
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        return client, server

    return _make


async def chunked(*parts: bytes):
    """Async byte source delivering ``parts`` as separate chunks."""
    for part in parts:
        yield part
