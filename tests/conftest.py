"""
Test Configuration and Fixtures

Shared fixtures for the client transport, the relay and the HTTP surface.
Nothing here talks to a real network: upstreams are httpx.MockTransport
stubs and the relay is driven in-process.
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FORMAT", "text")

from flowchat.config import Settings  # noqa: E402
from flowchat.relay.profiles import AuthKind, ConnectionProfile, Credentials  # noqa: E402
from flowchat.relay.proxy import RelayProxy  # noqa: E402
from flowchat.relay.store import InMemoryConfigurationStore  # noqa: E402
from tests.support.upstream import UpstreamStub  # noqa: E402

BEARER_TOKEN = "tok_live_9f8e7d6c5b4a"
ENDPOINT_URL = "https://hooks.example.com/webhook/chat"


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Client and relay wired together in-process")
    config.addinivalue_line("markers", "api: API endpoint tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")


def pytest_collection_modifyitems(config, items):
    """
    Auto-assign tier markers so we can run:
    - pytest -m unit
    - pytest -m integration

    Convention:
    - tests/integration/** => integration
    - everything else      => unit
    """
    for item in items:
        path = str(getattr(item, "fspath", ""))
        if item.get_closest_marker("integration") or item.get_closest_marker("unit"):
            continue
        if "/tests/integration/" in path or "\\tests\\integration\\" in path:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# SETTINGS AND PROFILES
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        public_base_url="http://test/api/v1",
        instances_file=None,
    )


@pytest.fixture
def bearer_profile() -> ConnectionProfile:
    return ConnectionProfile(
        instance_id="inst_bearer",
        endpoint_url=ENDPOINT_URL,
        auth_kind=AuthKind.BEARER,
        credentials=Credentials(token=BEARER_TOKEN),
        timeout_seconds=5,
    )


@pytest.fixture
def open_profile() -> ConnectionProfile:
    return ConnectionProfile(
        instance_id="inst_open",
        endpoint_url="https://hooks.example.com/webhook/open",
        streaming_enabled=False,
    )


@pytest.fixture
def profile_store(bearer_profile, open_profile) -> InMemoryConfigurationStore:
    return InMemoryConfigurationStore(
        [
            bearer_profile,
            open_profile,
            ConnectionProfile(instance_id="inst_disabled", endpoint_url=ENDPOINT_URL, enabled=False),
            ConnectionProfile(instance_id="inst_unconfigured"),
        ]
    )


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def relay_proxy(profile_store, settings, upstream) -> RelayProxy:
    return RelayProxy(profile_store, settings, transport=upstream.transport)


# =============================================================================
# APPLICATION FIXTURES
# =============================================================================


@pytest.fixture
def app(relay_proxy):
    """FastAPI application with the relay wired to the in-memory store and stub upstream."""
    from flowchat.api.main import app as fastapi_app
    from flowchat.api.routes.relay import get_relay_proxy

    fastapi_app.dependency_overrides[get_relay_proxy] = lambda: relay_proxy

    yield fastapi_app

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
