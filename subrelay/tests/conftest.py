"""Pytest configuration and fixtures for relay tests."""

import inspect
from typing import AsyncIterator, Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

from subrelay.config import Settings, get_settings
from subrelay.main import create_app
from subrelay.proxy.routes import get_upstream_client


class RawBodyStream(httpx.AsyncByteStream):
    """Async body stream yielding one pre-encoded chunk."""

    def __init__(self, body: bytes):
        self.body = body

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self.body:
            yield self.body


def upstream_response(
    status_code: int = 200,
    body: bytes = b"",
    headers=None,
) -> httpx.Response:
    """
    Scripted upstream response whose raw body is still unread.

    ``httpx.Response(content=...)`` decodes and consumes its body on
    construction, so the body is handed over as a stream instead.
    """
    return httpx.Response(
        status_code,
        headers=headers or {},
        stream=RawBodyStream(body),
    )


class UpstreamServer:
    """Scripted subscription source served through httpx.MockTransport."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.bodies: List[bytes] = []
        self.handler: Callable = lambda request: upstream_response(200, b"")

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(await request.aread())
        self.requests.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    @property
    def call_count(self) -> int:
        return len(self.requests)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings with a short upstream deadline"""
    return Settings(
        UPSTREAM_TIMEOUT_SECONDS=0.5,
        DEFAULT_USER_AGENT="ClashMeta/1.18 (subrelay)",
        DEFAULT_ACCEPT_ENCODING="gzip",
        PROTOCOL_HEADER_NAME="X-Node-Protocols",
    )


@pytest.fixture
def upstream() -> UpstreamServer:
    """Scripted upstream; set ``upstream.handler`` per test"""
    return UpstreamServer()


@pytest.fixture
def upstream_client(upstream) -> httpx.AsyncClient:
    """Upstream client routed to the scripted server"""
    return httpx.AsyncClient(
        transport=httpx.MockTransport(upstream),
        follow_redirects=True,
    )


@pytest.fixture
def app(test_settings, upstream_client):
    """Create test FastAPI application"""
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_upstream_client] = lambda: upstream_client
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Create test client"""
    return TestClient(app)


@pytest.fixture
def make_response():
    """Factory for scripted upstream responses"""
    return upstream_response
