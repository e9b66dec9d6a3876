"""
Pytest configuration and fixtures for unit tests.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable

import httpx
import pytest

from mocolamma.core.config import TimeoutSettings
from mocolamma.core.state import StateStore
from mocolamma.services.ollama_client import OllamaClient


# =============================================================================
# Helpers
# =============================================================================


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ndjson(*objects: dict) -> bytes:
    """Encode objects as newline-delimited JSON."""
    return b"".join(json.dumps(obj).encode() + b"\n" for obj in objects)


async def byte_stream(*chunks: bytes, hang: bool = False, delay: float = 0.0):
    """Async body yielding raw chunks, optionally never finishing."""
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        yield chunk
    if hang:
        await asyncio.Event().wait()


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


MODELS_PAYLOAD = {
    "models": [
        {
            "name": "llama3:latest",
            "model": "llama3:latest",
            "modified_at": "2024-05-01T12:00:00.123456Z",
            "size": 4661224676,
            "digest": "365c0bd3c000",
            "details": {"format": "gguf", "family": "llama", "parameter_size": "8.0B"},
        },
        {
            "name": "qwen2.5:7b",
            "model": "qwen2.5:7b",
            "modified_at": "2024-06-01T08:30:00Z",
            "size": 4683087332,
            "digest": "845dbda0ea48",
        },
    ]
}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Fake monotonic clock starting at zero."""
    return FakeClock()


@pytest.fixture
def state() -> StateStore:
    """Fresh state store."""
    return StateStore()


@pytest.fixture
def routes() -> dict:
    """
    Route table for the mock transport.

    Keys are (method, path); values are handlers taking the request and
    returning an httpx.Response (sync or async). The /api/tags route is
    preset so model list refreshes succeed.
    """
    return {("GET", "/api/tags"): lambda request: httpx.Response(200, json=MODELS_PAYLOAD)}


@pytest.fixture
def requests_log() -> list[httpx.Request]:
    """Every request seen by the mock transport."""
    return []


@pytest.fixture
def transport(routes, requests_log) -> httpx.MockTransport:
    """Mock transport dispatching on the route table."""

    async def handler(request: httpx.Request) -> httpx.Response:
        requests_log.append(request)
        route = routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        response = route(request)
        if isinstance(response, Awaitable):
            response = await response
        return response

    return httpx.MockTransport(handler)


@pytest.fixture
async def client(transport, state):
    """OllamaClient talking to the mock transport."""
    ollama = OllamaClient(
        host="localhost:11434",
        state=state,
        timeout_settings=TimeoutSettings(),
        transport=transport,
    )
    yield ollama
    await ollama.close()
